"""
ArtifactStore - the persistence boundary for artifacts.

The runtime never persists artifacts itself. It talks to a store that can:
- find an artifact by step signature (idempotent replay)
- find an artifact by (artifact_type, name) (name-collision checks)
- create an artifact
- stamp an existing artifact with a signature (adoption / post-create binding)
- provide a per-signature guard for atomic check-and-create

Storage backends:
- In-memory (for testing and embedding)
- File-based (for development and the CLI)
"""

import json
import random
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from exporchestra.schemas import ArtifactReference, CanonicalStatus


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(ALPHABET) for _ in range(16))

    return timestamp_part + random_part


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_reference(record: dict[str, Any], signature: Optional[str] = None) -> ArtifactReference:
    return ArtifactReference(
        artifact_id=record["artifact_id"],
        artifact_type=record["artifact_type"],
        name=record.get("name"),
        status=CanonicalStatus(record.get("status", "draft")),
        signature=signature,
    )


class ArtifactStore(ABC):
    """
    Abstract base class for artifact storage.

    Implementations must make check-and-create atomic per signature:
    callers hold guard(signature) while they look up and create, so two
    racing callers for one signature produce exactly one artifact.
    """

    def __init__(self) -> None:
        # signature -> [lock, holders and waiters]
        self._locks: dict[str, list[Any]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def guard(self, signature: str) -> Iterator[None]:
        """
        Hold the per-signature lock for the duration of the block.

        Locks are reference counted: an entry exists only while some caller
        holds or waits for it, so the lock table does not grow with the
        number of signatures ever seen.
        """
        with self._locks_guard:
            entry = self._locks.setdefault(signature, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[signature]

    @abstractmethod
    def find_by_signature(self, signature: str) -> Optional[ArtifactReference]:
        """
        Find the artifact stamped with a signature.

        Args:
            signature: Step signature

        Returns:
            ArtifactReference carrying the signature, or None
        """
        pass

    @abstractmethod
    def find_by_name(self, artifact_type: str, name: str) -> Optional[ArtifactReference]:
        """
        Find the first artifact of a type with a given name.

        Args:
            artifact_type: Registered artifact type
            name: Artifact name

        Returns:
            ArtifactReference (signature unset), or None
        """
        pass

    @abstractmethod
    def create(
        self,
        artifact_type: str,
        payload: dict[str, Any],
        name: Optional[str] = None,
        status: CanonicalStatus = CanonicalStatus.DRAFT,
        raw_status: Optional[str] = None,
    ) -> ArtifactReference:
        """
        Persist a new artifact.

        Args:
            artifact_type: Registered artifact type
            payload: Artifact body
            name: Artifact name
            status: Canonical lifecycle status
            raw_status: Type-specific status the artifact was created with

        Returns:
            ArtifactReference for the new artifact
        """
        pass

    @abstractmethod
    def stamp_signature(self, artifact_id: str, signature: str) -> ArtifactReference:
        """
        Bind a signature to an existing artifact.

        Raises:
            KeyError: If the artifact does not exist
        """
        pass

    @abstractmethod
    def get(self, artifact_id: str) -> Optional[dict[str, Any]]:
        """Return the full stored record of an artifact, or None."""
        pass

    @abstractmethod
    def list_artifacts(self, artifact_type: Optional[str] = None) -> list[ArtifactReference]:
        """List artifacts in creation order, optionally filtered by type."""
        pass

    @staticmethod
    def _new_record(
        artifact_type: str,
        payload: dict[str, Any],
        name: Optional[str],
        status: CanonicalStatus,
        raw_status: Optional[str],
    ) -> dict[str, Any]:
        return {
            "artifact_id": f"{artifact_type}_{generate_ulid()}",
            "artifact_type": artifact_type,
            "name": name,
            "status": CanonicalStatus.from_string(status).value,
            "raw_status": raw_status or CanonicalStatus.from_string(status).value,
            "payload": payload,
            "signatures": [],
            "created_at": _utcnow().isoformat(),
        }


class InMemoryArtifactStore(ArtifactStore):
    """
    In-memory implementation of ArtifactStore.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        super().__init__()
        self._records: dict[str, dict[str, Any]] = {}
        self._by_signature: dict[str, str] = {}
        self._data_lock = threading.Lock()

    def find_by_signature(self, signature: str) -> Optional[ArtifactReference]:
        with self._data_lock:
            artifact_id = self._by_signature.get(signature)
            if artifact_id is None:
                return None
            return _to_reference(self._records[artifact_id], signature)

    def find_by_name(self, artifact_type: str, name: str) -> Optional[ArtifactReference]:
        with self._data_lock:
            for record in self._records.values():
                if record["artifact_type"] == artifact_type and record.get("name") == name:
                    return _to_reference(record)
        return None

    def create(
        self,
        artifact_type: str,
        payload: dict[str, Any],
        name: Optional[str] = None,
        status: CanonicalStatus = CanonicalStatus.DRAFT,
        raw_status: Optional[str] = None,
    ) -> ArtifactReference:
        record = self._new_record(artifact_type, payload, name, status, raw_status)
        with self._data_lock:
            self._records[record["artifact_id"]] = record
        return _to_reference(record)

    def stamp_signature(self, artifact_id: str, signature: str) -> ArtifactReference:
        with self._data_lock:
            record = self._records.get(artifact_id)
            if record is None:
                raise KeyError(f"Artifact not found: {artifact_id}")
            if signature not in record["signatures"]:
                record["signatures"].append(signature)
            self._by_signature[signature] = artifact_id
            return _to_reference(record, signature)

    def get(self, artifact_id: str) -> Optional[dict[str, Any]]:
        with self._data_lock:
            record = self._records.get(artifact_id)
            return dict(record) if record is not None else None

    def list_artifacts(self, artifact_type: Optional[str] = None) -> list[ArtifactReference]:
        with self._data_lock:
            return [
                _to_reference(r) for r in self._records.values()
                if artifact_type is None or r["artifact_type"] == artifact_type
            ]

    def count(self, artifact_type: Optional[str] = None) -> int:
        """Number of stored artifacts (for testing)."""
        return len(self.list_artifacts(artifact_type))

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._data_lock:
            self._records.clear()
            self._by_signature.clear()


class FileArtifactStore(ArtifactStore):
    """
    File-based implementation of ArtifactStore for development.

    Stores artifacts as JSON files in a directory tree:
        store_dir/
            artifacts/
                {artifact_id}.json
            signatures/
                {signature}.json     -> {"artifact_id": ...}

    Atomicity holds within one process (per-signature locks).
    """

    def __init__(self, store_dir: Path | str):
        super().__init__()
        self._store_dir = Path(store_dir).expanduser()
        self._io_lock = threading.Lock()
        self._ensure_dirs()

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    def _ensure_dirs(self) -> None:
        """Create the directory structure if needed."""
        for subdir in ["artifacts", "signatures"]:
            (self._store_dir / subdir).mkdir(parents=True, exist_ok=True)

    def _artifact_path(self, artifact_id: str) -> Path:
        return self._store_dir / "artifacts" / f"{artifact_id}.json"

    def _signature_path(self, signature: str) -> Path:
        return self._store_dir / "signatures" / f"{signature}.json"

    def _read(self, path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        with open(path) as f:
            return json.load(f)

    def _write(self, path: Path, data: dict[str, Any]) -> None:
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(path)

    def _records(self) -> list[dict[str, Any]]:
        records = []
        for path in (self._store_dir / "artifacts").glob("*.json"):
            with open(path) as f:
                records.append(json.load(f))
        records.sort(key=lambda r: (r.get("created_at", ""), r["artifact_id"]))
        return records

    def find_by_signature(self, signature: str) -> Optional[ArtifactReference]:
        with self._io_lock:
            pointer = self._read(self._signature_path(signature))
            if pointer is None:
                return None
            record = self._read(self._artifact_path(pointer["artifact_id"]))
        if record is None:
            return None
        return _to_reference(record, signature)

    def find_by_name(self, artifact_type: str, name: str) -> Optional[ArtifactReference]:
        with self._io_lock:
            records = self._records()
        for record in records:
            if record["artifact_type"] == artifact_type and record.get("name") == name:
                return _to_reference(record)
        return None

    def create(
        self,
        artifact_type: str,
        payload: dict[str, Any],
        name: Optional[str] = None,
        status: CanonicalStatus = CanonicalStatus.DRAFT,
        raw_status: Optional[str] = None,
    ) -> ArtifactReference:
        record = self._new_record(artifact_type, payload, name, status, raw_status)
        with self._io_lock:
            self._write(self._artifact_path(record["artifact_id"]), record)
        return _to_reference(record)

    def stamp_signature(self, artifact_id: str, signature: str) -> ArtifactReference:
        with self._io_lock:
            path = self._artifact_path(artifact_id)
            record = self._read(path)
            if record is None:
                raise KeyError(f"Artifact not found: {artifact_id}")
            if signature not in record["signatures"]:
                record["signatures"].append(signature)
                self._write(path, record)
            self._write(self._signature_path(signature), {"artifact_id": artifact_id})
        return _to_reference(record, signature)

    def get(self, artifact_id: str) -> Optional[dict[str, Any]]:
        with self._io_lock:
            return self._read(self._artifact_path(artifact_id))

    def list_artifacts(self, artifact_type: Optional[str] = None) -> list[ArtifactReference]:
        with self._io_lock:
            records = self._records()
        return [
            _to_reference(r) for r in records
            if artifact_type is None or r["artifact_type"] == artifact_type
        ]
