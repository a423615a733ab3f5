"""
ArtifactReference schema - a pointer into the artifact store.

The runtime records references but never owns the artifact's lifecycle.
"""

from dataclasses import dataclass
from typing import Any, Optional

from .status import CanonicalStatus


@dataclass(frozen=True)
class ArtifactReference:
    """
    Pointer to a persisted artifact.

    Attributes:
        artifact_id: Store-assigned identifier
        artifact_type: Registered artifact type
        name: Artifact name (used for name-collision lookups)
        status: Canonical lifecycle status
        signature: Step signature that produced or adopted the artifact
        informational: True when recorded after the experience was cancelled
    """
    artifact_id: str
    artifact_type: str
    name: Optional[str] = None
    status: CanonicalStatus = CanonicalStatus.DRAFT
    signature: Optional[str] = None
    informational: bool = False

    def __post_init__(self):
        object.__setattr__(self, "status", CanonicalStatus.from_string(self.status))

    def as_informational(self) -> "ArtifactReference":
        return ArtifactReference(
            artifact_id=self.artifact_id,
            artifact_type=self.artifact_type,
            name=self.name,
            status=self.status,
            signature=self.signature,
            informational=True,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "artifact_id": self.artifact_id,
            "artifact_type": self.artifact_type,
            "status": self.status.value,
        }
        if self.name is not None:
            result["name"] = self.name
        if self.signature is not None:
            result["signature"] = self.signature
        if self.informational:
            result["informational"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArtifactReference":
        """Deserialize from dictionary."""
        return cls(
            artifact_id=data["artifact_id"],
            artifact_type=data["artifact_type"],
            name=data.get("name"),
            status=CanonicalStatus(data.get("status", "draft")),
            signature=data.get("signature"),
            informational=data.get("informational", False),
        )
