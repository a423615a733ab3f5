import pytest

from exporchestra.broker import ToolBroker
from exporchestra.runtime import Runtime
from exporchestra.store import InMemoryArtifactStore


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    # Never read or write the real ~/.config/exporchestra
    home = tmp_path / "exporchestra_home"
    monkeypatch.setenv("EXPORCHESTRA_HOME", str(home))
    return home


@pytest.fixture
def store():
    return InMemoryArtifactStore()


@pytest.fixture
def broker(store):
    return ToolBroker.create_default(store)


@pytest.fixture
def sleeps():
    """Delays requested by the runtime between attempts."""
    return []


@pytest.fixture
def runtime(store, broker, sleeps):
    return Runtime(store=store, broker=broker, sleep=sleeps.append)


@pytest.fixture
def event_intent():
    return {"eventName": "Launch Party", "date": "2026-05-01"}
