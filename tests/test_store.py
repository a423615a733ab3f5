"""Tests for artifact stores (in-memory and file-based)."""

import json
import threading

import pytest

from exporchestra.schemas import CanonicalStatus
from exporchestra.store import FileArtifactStore, InMemoryArtifactStore, generate_ulid


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryArtifactStore()
    return FileArtifactStore(tmp_path / "store")


class TestGenerateUlid:
    """Tests for ULID generation."""

    def test_length_and_alphabet(self):
        ulid = generate_ulid()
        assert len(ulid) == 26
        assert not set(ulid) & set("ILOU")

    def test_unique(self):
        assert len({generate_ulid() for _ in range(100)}) == 100


class TestArtifactStore:
    """Behaviour shared by every store."""

    def test_create_and_get(self, any_store):
        ref = any_store.create("event", {"name": "Launch"}, name="Launch",
                               status=CanonicalStatus.PUBLISHED, raw_status="live")
        assert ref.artifact_id.startswith("event_")
        assert ref.status == CanonicalStatus.PUBLISHED
        record = any_store.get(ref.artifact_id)
        assert record["payload"] == {"name": "Launch"}
        assert record["raw_status"] == "live"
        assert any_store.get("event_missing") is None

    def test_find_by_name(self, any_store):
        ref = any_store.create("product", {}, name="VIP")
        assert any_store.find_by_name("product", "VIP").artifact_id == ref.artifact_id
        assert any_store.find_by_name("ticket", "VIP") is None
        assert any_store.find_by_name("product", "General") is None

    def test_stamp_and_find_by_signature(self, any_store):
        ref = any_store.create("form", {}, name="Signup")
        assert any_store.find_by_signature("sig-1") is None
        stamped = any_store.stamp_signature(ref.artifact_id, "sig-1")
        assert stamped.signature == "sig-1"
        found = any_store.find_by_signature("sig-1")
        assert found.artifact_id == ref.artifact_id
        assert found.signature == "sig-1"
        assert any_store.get(ref.artifact_id)["signatures"] == ["sig-1"]

    def test_stamp_is_idempotent(self, any_store):
        ref = any_store.create("form", {})
        any_store.stamp_signature(ref.artifact_id, "sig-1")
        any_store.stamp_signature(ref.artifact_id, "sig-1")
        assert any_store.get(ref.artifact_id)["signatures"] == ["sig-1"]

    def test_stamp_missing_artifact(self, any_store):
        with pytest.raises(KeyError):
            any_store.stamp_signature("form_missing", "sig-1")

    def test_list_artifacts(self, any_store):
        any_store.create("event", {}, name="A")
        any_store.create("form", {}, name="B")
        assert sorted(r.name for r in any_store.list_artifacts()) == ["A", "B"]
        assert [r.name for r in any_store.list_artifacts("form")] == ["B"]

    def test_guard_serializes_same_signature(self, any_store):
        created = []

        def check_and_create():
            with any_store.guard("sig-race"):
                if any_store.find_by_signature("sig-race") is None:
                    ref = any_store.create("event", {})
                    any_store.stamp_signature(ref.artifact_id, "sig-race")
                    created.append(ref)

        threads = [threading.Thread(target=check_and_create) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(created) == 1
        assert len(any_store.list_artifacts()) == 1
        assert any_store._locks == {}

    def test_guard_releases_lock_entries(self, any_store):
        with any_store.guard("sig-a"):
            assert list(any_store._locks) == ["sig-a"]
            with any_store.guard("sig-b"):
                assert sorted(any_store._locks) == ["sig-a", "sig-b"]
        assert any_store._locks == {}

    def test_guard_releases_on_error(self, any_store):
        with pytest.raises(RuntimeError):
            with any_store.guard("sig-a"):
                raise RuntimeError("boom")
        assert any_store._locks == {}
        # The signature can be guarded again
        with any_store.guard("sig-a"):
            pass


class TestInMemoryArtifactStore:
    """In-memory specifics."""

    def test_count_and_clear(self):
        store = InMemoryArtifactStore()
        store.create("event", {})
        store.create("form", {})
        assert store.count() == 2
        assert store.count("form") == 1
        store.clear()
        assert store.count() == 0


class TestFileArtifactStore:
    """File layout specifics."""

    def test_layout(self, tmp_path):
        store = FileArtifactStore(tmp_path / "store")
        ref = store.create("event", {"name": "Launch"})
        store.stamp_signature(ref.artifact_id, "abc")

        artifact_file = tmp_path / "store" / "artifacts" / f"{ref.artifact_id}.json"
        signature_file = tmp_path / "store" / "signatures" / "abc.json"
        assert json.loads(artifact_file.read_text())["payload"] == {"name": "Launch"}
        assert json.loads(signature_file.read_text()) == {"artifact_id": ref.artifact_id}

    def test_persists_across_instances(self, tmp_path):
        ref = FileArtifactStore(tmp_path / "store").create("form", {}, name="Signup")
        reopened = FileArtifactStore(tmp_path / "store")
        assert reopened.find_by_name("form", "Signup").artifact_id == ref.artifact_id
