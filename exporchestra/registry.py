"""
PlaybookRegistry - lookup of playbook adapters by id.

The registry provides:
- Registration of code adapters (EventPlaybook)
- Loading declarative playbooks from YAML/JSON files in a directory tree
- Normalized lookup (trimmed, lower-cased ids)
- Content-addressable hashes of playbook contracts
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Optional

import yaml

from exporchestra.errors import ConfigError, UnknownPlaybookError
from exporchestra.playbooks import DeclarativePlaybook, EventPlaybook, PlaybookAdapter
from exporchestra.schemas import PlaybookContract, normalize_playbook_id

logger = logging.getLogger(__name__)

# Declarative playbooks shipped with the package
BUILTIN_PLAYBOOKS_DIR = Path(__file__).parent / "playbooks" / "definitions"

PLAYBOOK_SUFFIXES = (".yaml", ".yml", ".json")


class PlaybookLoadError(ConfigError):
    """Raised when a playbook definition file is invalid."""
    pass


class PlaybookRegistry:
    """
    Registry of playbook adapters.

    Usage:
        registry = PlaybookRegistry()
        registry.register(EventPlaybook())
        registry.load_directory(Path("~/.config/exporchestra/playbooks"))

        adapter = registry.get(" Event ")   # normalized lookup

        # Or with the built-in playbooks
        registry = PlaybookRegistry.create_default()
    """

    def __init__(self) -> None:
        self._adapters: dict[str, PlaybookAdapter] = {}

    def register(self, adapter: PlaybookAdapter) -> None:
        """
        Register an adapter under its normalized playbook id.

        A later registration replaces an earlier one with the same id.
        """
        playbook_id = normalize_playbook_id(adapter.playbook_id)
        if playbook_id in self._adapters:
            logger.info(f"Replacing playbook '{playbook_id}'")
        self._adapters[playbook_id] = adapter

    def get(self, playbook_id: str) -> PlaybookAdapter:
        """
        Get the adapter for a playbook id.

        Raises:
            UnknownPlaybookError: If no adapter is registered for the id
        """
        key = normalize_playbook_id(playbook_id or "")
        if key not in self._adapters:
            raise UnknownPlaybookError(playbook_id, self.list_playbooks())
        return self._adapters[key]

    def has(self, playbook_id: str) -> bool:
        return normalize_playbook_id(playbook_id or "") in self._adapters

    def list_playbooks(self) -> list[str]:
        """Sorted list of registered playbook ids."""
        return sorted(self._adapters.keys())

    def contracts(self) -> list[PlaybookContract]:
        return [self._adapters[pid].contract for pid in self.list_playbooks()]

    def load_file(self, path: Path | str) -> DeclarativePlaybook:
        """
        Load and register one declarative playbook file.

        Raises:
            PlaybookLoadError: If the file cannot be parsed or is invalid
        """
        path = Path(path)
        try:
            with open(path) as f:
                data = json.load(f) if path.suffix == ".json" else yaml.safe_load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise PlaybookLoadError(f"Invalid playbook file {path}: {e}") from e

        if not isinstance(data, dict):
            raise PlaybookLoadError(f"Invalid playbook file {path}: expected a mapping")
        data.setdefault("playbook_id", path.stem)

        try:
            playbook = DeclarativePlaybook.from_dict(data, source=str(path))
        except (KeyError, ValueError) as e:
            raise PlaybookLoadError(f"Invalid playbook in {path}: {e}") from e

        if playbook.playbook_id != normalize_playbook_id(path.stem):
            raise PlaybookLoadError(
                f"Playbook ID mismatch: file is '{path.name}' but playbook_id is "
                f"'{playbook.playbook_id}'"
            )

        self.register(playbook)
        return playbook

    def load_directory(self, directory: Path | str) -> list[str]:
        """
        Load every playbook file under a directory tree.

        Returns:
            Ids of the loaded playbooks
        """
        directory = Path(directory).expanduser()
        if not directory.exists():
            return []
        loaded = []
        for path in sorted(directory.glob("**/*")):
            if path.suffix in PLAYBOOK_SUFFIXES and path.is_file():
                loaded.append(self.load_file(path).playbook_id)
        logger.debug(f"Loaded {len(loaded)} playbooks from {directory}")
        return loaded

    @staticmethod
    def compute_hash(contract: PlaybookContract) -> str:
        """
        Compute SHA256 hash of a contract for content addressing.

        Uses canonical JSON serialization (sorted keys, no whitespace).
        """
        canonical = json.dumps(contract.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    @classmethod
    def create_default(cls, playbooks_dir: Optional[Path | str] = None) -> "PlaybookRegistry":
        """
        Create a registry with the event playbook and the built-in declarative ones.

        Args:
            playbooks_dir: Extra directory of declarative playbooks (loaded last,
                so its files override built-ins with the same id)
        """
        registry = cls()
        registry.register(EventPlaybook())
        registry.load_directory(BUILTIN_PLAYBOOKS_DIR)
        if playbooks_dir is not None:
            registry.load_directory(playbooks_dir)
        return registry
