"""
Bundle schemas - the terminal output of one experience.

ArtifactBundle is assembled once, after every step reached a terminal
status, and is immutable afterwards. It always carries the full step log,
so a caller can see exactly which artifacts exist and why others do not.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .artifact import ArtifactReference
from .status import ExperienceStatus, StepStatus
from .step import StepLogEntry


@dataclass(frozen=True)
class BundleArtifact:
    """One artifact entry in a bundle: which step produced which reference."""
    step_id: str
    artifact_type: str
    artifact_ref: ArtifactReference
    step_status: StepStatus = StepStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "artifact_type": self.artifact_type,
            "artifact_ref": self.artifact_ref.artifact_id,
            "name": self.artifact_ref.name,
            "status": self.step_status.value,
            "lifecycle_status": self.artifact_ref.status.value,
            **({"informational": True} if self.artifact_ref.informational else {}),
        }


@dataclass(frozen=True)
class ArtifactBundle:
    """
    Terminal output of an experience.

    Attributes:
        experience_id: The experience this bundle belongs to
        playbook_id: Playbook that produced the recipe
        contract_version: Contract registry version in force
        payload_digest: SHA256 of the raw intent
        status: complete, partial or failed
        artifacts: Artifacts produced by succeeded steps, in recipe order
        step_log: One entry per step, in recipe order
        cancelled: Whether the experience was cancelled mid-flight
        started_at: When execution started
        completed_at: When the bundle was assembled
        experience_name: Human name of the experience, when the playbook provides one
        detected_item_count: Auxiliary items found in the intent
        unsupported_items: Items the playbook cannot create (type, name, reason)
        fail_fast: Whether pending steps were skipped after a required step failed
    """
    experience_id: str
    playbook_id: str
    contract_version: str
    payload_digest: str
    status: ExperienceStatus
    artifacts: tuple[BundleArtifact, ...] = field(default_factory=tuple)
    step_log: tuple[StepLogEntry, ...] = field(default_factory=tuple)
    cancelled: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    experience_name: Optional[str] = None
    detected_item_count: int = 0
    unsupported_items: tuple[dict[str, Any], ...] = field(default_factory=tuple)
    fail_fast: bool = False

    def get_step(self, step_id: str) -> Optional[StepLogEntry]:
        """Get the log entry for a specific step."""
        for entry in self.step_log:
            if entry.step_id == step_id:
                return entry
        return None

    def artifact_for(self, step_id: str) -> Optional[ArtifactReference]:
        """Artifact reference produced by a step, if any."""
        for artifact in self.artifacts:
            if artifact.step_id == step_id:
                return artifact.artifact_ref
        return None

    def steps_with_status(self, status: StepStatus) -> tuple[StepLogEntry, ...]:
        return tuple(e for e in self.step_log if e.status == status)

    @property
    def artifact_ids(self) -> dict[str, str]:
        """Map step_id -> artifact_id for every produced artifact."""
        return {a.step_id: a.artifact_ref.artifact_id for a in self.artifacts}

    @property
    def summary(self) -> dict[str, int]:
        """Counts of created, reused, skipped, failed and blocked steps."""
        counts = {"created": 0, "reused": 0, "skipped": 0, "failed": 0, "blocked": 0}
        for entry in self.step_log:
            if entry.status == StepStatus.SUCCEEDED:
                counts["created" if entry.created else "reused"] += 1
            elif entry.status.value in counts:
                counts[entry.status.value] += 1
        return counts

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "experience_id": self.experience_id,
            "playbook_id": self.playbook_id,
            "contract_version": self.contract_version,
            "payload_digest": self.payload_digest,
            "status": self.status.value,
            "experience_name": self.experience_name,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "step_log": [e.to_dict() for e in self.step_log],
            "summary": self.summary,
            "detected_item_count": self.detected_item_count,
            "unsupported_items": [dict(i) for i in self.unsupported_items],
        }
        if self.fail_fast:
            result["fail_fast"] = True
        if self.cancelled:
            result["cancelled"] = True
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        return result
