"""
Recipe schemas - the step list a playbook produces for one experience.

A StepRecipe is an ordered tuple of StepSpecs. Order is significant: it is
the tie-break the runtime uses among ready steps and between steps that
would produce colliding artifact names.

Step inputs reference outputs of other steps with StepRef markers
(artifact_id, name, status, artifact_type of the referenced artifact).
Text that mixes literal characters and references is a StepText. Only
these markers are resolved by the runtime, just before the step runs;
plain strings are never treated as references, whatever they contain.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .status import DuplicateResolution, RetryStrategy


class RecipeError(ValueError):
    """Raised when a StepSpec or StepRecipe is malformed."""
    pass


@dataclass(frozen=True)
class StepRef:
    """
    Reference to a field of the artifact another step produced.

    Attributes:
        step_id: Referenced step (must be a predecessor of the referencing step)
        field_name: artifact_id, artifact_type, name or status
    """
    step_id: str
    field_name: str = "artifact_id"

    def __str__(self) -> str:
        return f"@steps.{self.step_id}.{self.field_name}"


@dataclass(frozen=True)
class StepText:
    """Text built from literal strings and StepRefs, joined after resolution."""
    parts: tuple[Any, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "parts", tuple(self.parts))

    @property
    def refs(self) -> list[StepRef]:
        return [p for p in self.parts if isinstance(p, StepRef)]

    def __str__(self) -> str:
        return "".join(str(p) for p in self.parts)


def plain_inputs(value: Any) -> Any:
    """Inputs with StepRef/StepText markers written back as @steps.* text."""
    if isinstance(value, (StepRef, StepText)):
        return str(value)
    if isinstance(value, dict):
        return {k: plain_inputs(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain_inputs(v) for v in value]
    return value


@dataclass(frozen=True)
class StepSpec:
    """
    A single step of a recipe.

    Attributes:
        step_id: Unique identifier within the recipe (e.g. "event", "product:1")
        artifact_type: Artifact type the step produces (must be registered)
        inputs: Payload for the tool broker, may contain StepRef/StepText markers
        depends_on: Hard dependencies; failure of any blocks this step
        after: Soft ordering; waits for these, tolerates their failure
        artifact_name: Human name of the artifact, used for name-collision checks
        target_status: Raw lifecycle status the artifact is created with
        retryable: Whether transient failures are retried
        retry_strategy: none, fixed or exponential backoff
        max_attempts: Upper bound on attempts for retryable steps
        duplicate_resolution: Policy when the artifact already exists
        required: Whether failure of this step fails the experience
        skip_reason: When set, the step is an explicit skip and never executes
        timeout_s: Per-attempt timeout (None uses the runtime default)
        cost: Credits passed to the billing gate
    """
    step_id: str
    artifact_type: str
    inputs: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = field(default_factory=tuple)
    after: tuple[str, ...] = field(default_factory=tuple)
    artifact_name: Optional[str] = None
    target_status: str = "draft"
    retryable: bool = True
    retry_strategy: RetryStrategy = RetryStrategy.FIXED
    max_attempts: int = 3
    duplicate_resolution: DuplicateResolution = DuplicateResolution.SIGNATURE_REPLAY
    required: bool = True
    skip_reason: Optional[str] = None
    timeout_s: Optional[float] = None
    cost: int = 0

    def __post_init__(self):
        if not self.step_id:
            raise RecipeError("step_id must be non-empty")
        if not self.artifact_type:
            raise RecipeError(f"Step '{self.step_id}': artifact_type must be non-empty")
        if self.max_attempts < 1:
            raise RecipeError(f"Step '{self.step_id}': max_attempts must be >= 1")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise RecipeError(f"Step '{self.step_id}': timeout_s must be positive")
        if self.cost < 0:
            raise RecipeError(f"Step '{self.step_id}': cost must be >= 0")
        if self.is_skip and (self.retryable or self.required):
            raise RecipeError(
                f"Step '{self.step_id}': skip steps must be non-retryable and optional"
            )
        # Normalize enum fields given as plain strings
        object.__setattr__(self, "retry_strategy", RetryStrategy.from_string(self.retry_strategy))
        object.__setattr__(
            self, "duplicate_resolution", DuplicateResolution.from_string(self.duplicate_resolution)
        )
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        object.__setattr__(self, "after", tuple(self.after))

    @property
    def is_skip(self) -> bool:
        return bool(self.skip_reason)

    @property
    def attempt_limit(self) -> int:
        """Number of attempts the runtime may make for this step."""
        if not self.retryable or self.retry_strategy == RetryStrategy.NONE:
            return 1
        return self.max_attempts

    @property
    def predecessors(self) -> tuple[str, ...]:
        """All steps that must be terminal before this one starts."""
        return self.depends_on + tuple(s for s in self.after if s not in self.depends_on)

    @classmethod
    def skip(cls, step_id: str, artifact_type: str, reason: str, artifact_name: Optional[str] = None) -> "StepSpec":
        """Build an explicit skip step with a human-actionable reason."""
        return cls(
            step_id=step_id,
            artifact_type=artifact_type,
            artifact_name=artifact_name,
            retryable=False,
            retry_strategy=RetryStrategy.NONE,
            max_attempts=1,
            required=False,
            skip_reason=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        return {
            "step_id": self.step_id,
            "artifact_type": self.artifact_type,
            "inputs": plain_inputs(self.inputs),
            **({"depends_on": list(self.depends_on)} if self.depends_on else {}),
            **({"after": list(self.after)} if self.after else {}),
            **({"artifact_name": self.artifact_name} if self.artifact_name else {}),
            "target_status": self.target_status,
            "retryable": self.retryable,
            "retry_strategy": self.retry_strategy.value,
            "max_attempts": self.max_attempts,
            "duplicate_resolution": self.duplicate_resolution.value,
            "required": self.required,
            **({"skip_reason": self.skip_reason} if self.skip_reason else {}),
            **({"timeout_s": self.timeout_s} if self.timeout_s is not None else {}),
            **({"cost": self.cost} if self.cost else {}),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepSpec":
        """Deserialize from dictionary."""
        skip_reason = data.get("skip_reason")
        return cls(
            step_id=data["step_id"],
            artifact_type=data["artifact_type"],
            inputs=data.get("inputs", {}),
            depends_on=tuple(data.get("depends_on", ())),
            after=tuple(data.get("after", ())),
            artifact_name=data.get("artifact_name"),
            target_status=data.get("target_status", "draft"),
            retryable=data.get("retryable", not skip_reason),
            retry_strategy=data.get("retry_strategy", "none" if skip_reason else "fixed"),
            max_attempts=data.get("max_attempts", 1 if skip_reason else 3),
            duplicate_resolution=data.get("duplicate_resolution", "signature_replay"),
            required=data.get("required", not skip_reason),
            skip_reason=skip_reason,
            timeout_s=data.get("timeout_s"),
            cost=data.get("cost", 0),
        )


@dataclass(frozen=True)
class StepRecipe:
    """
    Ordered list of steps for one experience.

    Attributes:
        steps: Steps in declared order
    """
    steps: tuple[StepSpec, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))
        step_ids = [s.step_id for s in self.steps]
        if len(step_ids) != len(set(step_ids)):
            duplicates = sorted({sid for sid in step_ids if step_ids.count(sid) > 1})
            raise RecipeError(f"Duplicate step IDs: {duplicates}")

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def step_ids(self) -> list[str]:
        return [s.step_id for s in self.steps]

    def get_step(self, step_id: str) -> Optional[StepSpec]:
        """Get a step by ID."""
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def index_of(self, step_id: str) -> int:
        """Declared position of a step."""
        return self.step_ids.index(step_id)

    def to_dict(self) -> dict[str, Any]:
        return {"steps": [s.to_dict() for s in self.steps]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepRecipe":
        return cls(steps=tuple(StepSpec.from_dict(s) for s in data.get("steps", [])))
