"""
Closed vocabularies for exporchestra.

Every value a playbook may put on a step, and every status the runtime
reports, comes from one of these enums. Free-form strings are parsed with
from_string(), which raises on anything outside the set.
"""

from enum import Enum


class _ClosedEnum(str, Enum):
    """str-valued enum with strict parsing."""

    @classmethod
    def from_string(cls, value: "str | _ClosedEnum") -> "_ClosedEnum":
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value == value:
                return member
        allowed = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown {cls.__name__}: {value!r} (allowed: {allowed})")


class CanonicalStatus(_ClosedEnum):
    """Lifecycle status every artifact type maps onto."""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class StepStatus(_ClosedEnum):
    """Status of a step within an experience."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)

    @property
    def blocks_dependents(self) -> bool:
        return self in (StepStatus.FAILED, StepStatus.BLOCKED)


class ExperienceStatus(_ClosedEnum):
    """Overall outcome of an experience."""
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class RetryStrategy(_ClosedEnum):
    """How a retryable step waits between attempts."""
    NONE = "none"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class DuplicateResolution(_ClosedEnum):
    """
    Policy for a step whose artifact already exists.

    signature_replay: reuse an artifact created for the same signature;
                      a different artifact with the same name is a failure
    name_reuse: additionally adopt an existing artifact with the same name
    fail: any name collision fails the step
    """
    SIGNATURE_REPLAY = "signature_replay"
    NAME_REUSE = "name_reuse"
    FAIL = "fail"


class Resolution(_ClosedEnum):
    """
    Duplicate resolution that actually applied to a step (reported in the step log).

    NONE means the step created its artifact or never reached the store.
    """
    NONE = "none"
    SIGNATURE_REPLAY = "signature_replay"
    NAME_REUSE = "name_reuse"
