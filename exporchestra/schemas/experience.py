"""
Experience schema - one orchestration request.

An Experience is created when a caller asks for a playbook to run. The
experience_id is the idempotency root: every step signature derives from it,
so retrying with the same id replays instead of duplicating artifacts.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def canonical_json(value: Any) -> str:
    """
    Canonical JSON encoding: sorted keys, compact separators.

    Non-JSON values (dates, enums) are encoded with str().
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def payload_digest(value: Any) -> str:
    """SHA256 hex digest of the canonical JSON of a value."""
    return hashlib.sha256(canonical_json(value).encode()).hexdigest()


def normalize_playbook_id(playbook_id: str) -> str:
    return playbook_id.strip().lower()


@dataclass(frozen=True)
class Experience:
    """
    A single orchestration request.

    Immutable once execution starts.

    Attributes:
        experience_id: Caller-supplied or generated id (idempotency root)
        playbook_id: Normalized playbook id
        raw_intent: Opaque intent payload
        created_at: When the experience was created
        payload_digest: SHA256 of the canonical raw intent
    """
    experience_id: str
    playbook_id: str
    raw_intent: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    payload_digest: str = ""

    def __post_init__(self):
        if not self.experience_id or not self.experience_id.strip():
            raise ValueError("experience_id must be non-empty")
        object.__setattr__(self, "playbook_id", normalize_playbook_id(self.playbook_id))
        if not self.payload_digest:
            object.__setattr__(self, "payload_digest", payload_digest(self.raw_intent))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "experience_id": self.experience_id,
            "playbook_id": self.playbook_id,
            "raw_intent": self.raw_intent,
            "created_at": self.created_at.isoformat(),
            "payload_digest": self.payload_digest,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Experience":
        """Deserialize from dictionary."""
        return cls(
            experience_id=data["experience_id"],
            playbook_id=data["playbook_id"],
            raw_intent=data.get("raw_intent", {}),
            created_at=datetime.fromisoformat(data["created_at"]),
            payload_digest=data.get("payload_digest", ""),
        )
