"""
Step schemas - runtime state of one step and its log entry.

Step is the mutable runtime record owned by the Runtime Engine. It follows
a fixed state machine:

    pending -> running -> succeeded | failed | skipped
    pending -> skipped | blocked

StepLogEntry is the frozen snapshot of a terminal Step that goes into the
bundle's step log.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .artifact import ArtifactReference
from .recipe import StepSpec
from .status import Resolution, RetryStrategy, StepStatus


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


_TRANSITIONS: dict[StepStatus, tuple[StepStatus, ...]] = {
    StepStatus.PENDING: (StepStatus.RUNNING, StepStatus.SKIPPED, StepStatus.BLOCKED),
    StepStatus.RUNNING: (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED),
}


class InvalidTransition(ValueError):
    """Raised when a step is moved outside its state machine."""
    pass


@dataclass(frozen=True)
class StepLogEntry:
    """
    Terminal record of a step, as reported in the bundle.

    Attributes:
        step_id: Identifier of the step
        artifact_type: Artifact type of the step
        status: Terminal status
        attempts: Number of attempts made (0 for steps that never ran)
        duplicate_resolution: Duplicate resolution that applied
        signature: Idempotency key of the step
        required: Whether the step was required
        retryable: Whether the step was retryable
        retry_strategy: Retry strategy of the step
        created: True when this run created the artifact
        artifact_id: Artifact produced or adopted (succeeded steps)
        artifact_name: Artifact name
        failure_reason: Human-actionable reason for skipped/failed/blocked steps
        error_type: Error class name for failed steps
        started_at: When the first attempt started
        completed_at: When the step reached its terminal status
    """
    step_id: str
    artifact_type: str
    status: StepStatus
    attempts: int = 0
    duplicate_resolution: Resolution = Resolution.NONE
    signature: Optional[str] = None
    required: bool = True
    retryable: bool = True
    retry_strategy: RetryStrategy = RetryStrategy.NONE
    created: bool = False
    artifact_id: Optional[str] = None
    artifact_name: Optional[str] = None
    failure_reason: Optional[str] = None
    error_type: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.status.is_terminal:
            raise ValueError(f"Step log entries must be terminal, got '{self.status.value}'")
        if self.status == StepStatus.SUCCEEDED and self.artifact_id is None:
            raise ValueError("succeeded steps must reference an artifact")

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "step_id": self.step_id,
            "artifact_type": self.artifact_type,
            "status": self.status.value,
            "attempts": self.attempts,
            "duplicate_resolution": self.duplicate_resolution.value,
            "required": self.required,
            "retryable": self.retryable,
            "retry_strategy": self.retry_strategy.value,
        }
        if self.signature is not None:
            result["signature"] = self.signature
        if self.status == StepStatus.SUCCEEDED:
            result["created"] = self.created
        if self.artifact_id is not None:
            result["artifact_id"] = self.artifact_id
        if self.artifact_name is not None:
            result["artifact_name"] = self.artifact_name
        if self.failure_reason is not None:
            result["failure_reason"] = self.failure_reason
        if self.error_type is not None:
            result["error_type"] = self.error_type
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        return result


@dataclass
class Step:
    """
    Runtime state of a step within one experience.

    Mutated only by the Runtime Engine, one worker at a time.

    Attributes:
        spec: The recipe entry this step executes
        idempotency_key: Signature derived from experience id, step id and inputs
        status: Current status
        attempts: Attempts made so far
        resolution: Duplicate resolution that applied
        created: True when this run created the artifact
        artifact: Artifact produced or adopted
        failure_reason: Reason recorded for non-succeeded terminal states
        error_type: Error class name for failures
        resolved_inputs: Inputs after @steps.* references were resolved
        started_at: When the first attempt started
        completed_at: When the step reached a terminal status
    """
    spec: StepSpec
    idempotency_key: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    resolution: Resolution = Resolution.NONE
    created: bool = False
    artifact: Optional[ArtifactReference] = None
    failure_reason: Optional[str] = None
    error_type: Optional[str] = None
    resolved_inputs: dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def step_id(self) -> str:
        return self.spec.step_id

    @property
    def artifact_type(self) -> str:
        return self.spec.artifact_type

    def _transition(self, new_status: StepStatus) -> None:
        allowed = _TRANSITIONS.get(self.status, ())
        if new_status not in allowed:
            raise InvalidTransition(
                f"Step '{self.step_id}': cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        if new_status.is_terminal:
            self.completed_at = _utcnow()

    def start(self) -> None:
        """pending -> running."""
        self._transition(StepStatus.RUNNING)
        self.started_at = _utcnow()

    def succeed(self, artifact: ArtifactReference, resolution: Resolution, created: bool) -> None:
        """running -> succeeded."""
        self.artifact = artifact
        self.resolution = resolution
        self.created = created
        self._transition(StepStatus.SUCCEEDED)

    def fail(self, reason: str, error_type: Optional[str] = None) -> None:
        """running -> failed."""
        self.failure_reason = reason
        self.error_type = error_type
        self._transition(StepStatus.FAILED)

    def skip(self, reason: str) -> None:
        """pending|running -> skipped."""
        self.failure_reason = reason
        self._transition(StepStatus.SKIPPED)

    def block(self, reason: str) -> None:
        """pending -> blocked."""
        self.failure_reason = reason
        self._transition(StepStatus.BLOCKED)

    def to_log_entry(self) -> StepLogEntry:
        """Snapshot a terminal step for the bundle."""
        return StepLogEntry(
            step_id=self.step_id,
            artifact_type=self.artifact_type,
            status=self.status,
            attempts=self.attempts,
            duplicate_resolution=self.resolution,
            signature=self.idempotency_key,
            required=self.spec.required,
            retryable=self.spec.retryable,
            retry_strategy=self.spec.retry_strategy,
            created=self.created,
            artifact_id=self.artifact.artifact_id if self.artifact else None,
            artifact_name=self.artifact.name if self.artifact else self.spec.artifact_name,
            failure_reason=self.failure_reason,
            error_type=self.error_type,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )
