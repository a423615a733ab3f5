"""
Error classes for exporchestra.

Two families:

Experience-level errors abort an experience before any step runs:
- IntentValidationError: bad/missing required intent fields
- InvalidRecipeError: playbook bug (cyclic or malformed recipe)
- UnknownStatusMapping: artifact type or status missing from the contract registry
- UnknownPlaybookError: playbook id not registered

Step-level errors are recorded on the step and only block its dependents:
- NameCollisionError: duplicate policy says fail
- ToolError: tool broker failure, transient or permanent
- AuthorizationDenied: billing gate refusal (never retried)
- PublishGuardrailError: a publish guardrail did not hold
- StepTimeoutError: attempt exceeded its timeout (transient)

Retry classification follows TransientError / PermanentError:
the runtime retries TransientError (and transient ToolError) according
to the step's retry strategy and fails immediately on anything else.
"""

from typing import Any, Optional


class ExporchestraError(Exception):
    """Base exception for exporchestra."""
    pass


class TransientError(ExporchestraError):
    """
    Transient error - safe to retry.

    Examples:
    - Rate limit exceeded
    - Network timeout
    - Store temporarily unavailable
    """
    pass


class PermanentError(ExporchestraError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid input/parameters
    - Resource not found
    - Authorization failed
    """
    pass


class ConfigError(ExporchestraError):
    """Configuration validation error."""
    pass


# =============================================================================
# Experience-level errors
# =============================================================================


class ExperienceError(PermanentError):
    """
    Raised when an experience cannot start.

    Carries the experience_id so the caller can retry with the same id.
    """

    def __init__(self, message: str, experience_id: Optional[str] = None):
        self.experience_id = experience_id
        super().__init__(message)


class UnknownPlaybookError(ExperienceError):
    """Raised when a playbook id is not registered."""

    def __init__(self, playbook_id: str, available: list[str], experience_id: Optional[str] = None):
        self.playbook_id = playbook_id
        self.available = available
        super().__init__(
            f"Unsupported playbook '{playbook_id}'. Available: {', '.join(available) or '(none)'}",
            experience_id=experience_id,
        )


class FieldIssue:
    """One missing or invalid intent field."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FieldIssue):
            return NotImplemented
        return self.field == other.field and self.message == other.message

    def __repr__(self) -> str:
        return f"FieldIssue({self.field!r}, {self.message!r})"


class IntentValidationError(ExperienceError):
    """
    Raised when a raw intent fails playbook validation.

    Lists every issue, not just the first, so a caller can fix
    everything in one round trip.
    """

    def __init__(self, issues: list[FieldIssue], experience_id: Optional[str] = None):
        self.issues = list(issues)
        detail = "; ".join(f"{i.field}: {i.message}" for i in self.issues)
        super().__init__(f"Intent validation failed: {detail}", experience_id=experience_id)

    @property
    def fields(self) -> list[str]:
        return [i.field for i in self.issues]


class InvalidRecipeError(ExperienceError):
    """Raised when a playbook produces a cyclic or malformed recipe."""
    pass


class UnknownStatusMapping(ExperienceError):
    """Raised when an artifact type or raw status is not in the contract registry."""

    def __init__(self, artifact_type: str, raw_status: Optional[str] = None):
        self.artifact_type = artifact_type
        self.raw_status = raw_status
        if raw_status is None:
            message = f"Artifact type '{artifact_type}' is not registered in the contract registry"
        else:
            message = (
                f"Status '{raw_status}' of artifact type '{artifact_type}' "
                f"has no canonical mapping"
            )
        super().__init__(message)


# =============================================================================
# Step-level errors
# =============================================================================


class StepError(ExporchestraError):
    """Base for errors recorded on a single step."""

    retryable = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": str(self)}


class NameCollisionError(StepError):
    """Raised when an artifact with the same name exists and the policy says fail."""

    def __init__(self, artifact_type: str, name: str, existing_id: str):
        self.artifact_type = artifact_type
        self.name = name
        self.existing_id = existing_id
        super().__init__(
            f"Duplicate {artifact_type} name '{name}' (existing artifact {existing_id}); "
            f"rename it or allow name reuse, then retry"
        )


class ToolError(StepError):
    """
    Raised by the tool broker when a side-effecting operation fails.

    transient=True marks the failure as safe to retry.
    """

    def __init__(self, message: str, transient: bool = False):
        self.transient = transient
        super().__init__(message)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


class AuthorizationDenied(StepError):
    """Raised when the billing gate refuses a step."""

    def __init__(self, artifact_type: str, reason: str):
        self.artifact_type = artifact_type
        self.reason = reason
        super().__init__(f"Not authorized to create {artifact_type}: {reason}")


class PublishGuardrailError(StepError):
    """Raised when a step would publish an artifact while a guardrail does not hold."""

    def __init__(self, guardrail: str, detail: str):
        self.guardrail = guardrail
        super().__init__(f"Publish guardrail '{guardrail}' not satisfied: {detail}")


class StepTimeoutError(StepError):
    """Raised when a step attempt exceeds its timeout."""

    retryable = True

    def __init__(self, step_id: str, timeout_s: float):
        self.step_id = step_id
        self.timeout_s = timeout_s
        super().__init__(f"Step '{step_id}' attempt timed out after {timeout_s}s")


def is_transient(error: BaseException) -> bool:
    """Return True when an error is safe to retry."""
    if isinstance(error, (TransientError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, StepError):
        return bool(error.retryable)
    return False
