"""
exporchestra.schemas - Shared types for the orchestration runtime.

Lifecycle:

Experience -> (PlaybookContract) -> StepRecipe -> Step -> StepLogEntry -> ArtifactBundle

1. Experience: one request (experience_id is the idempotency root)
2. PlaybookContract: static playbook definition (intent schema, guardrails)
3. StepRecipe: ordered StepSpecs derived by a playbook adapter
4. Step: runtime state of a StepSpec, mutated only by the runtime
5. StepLogEntry: frozen terminal snapshot of a Step
6. ArtifactBundle: immutable output with artifact references and step log
"""

from .status import (
    CanonicalStatus,
    StepStatus,
    ExperienceStatus,
    RetryStrategy,
    DuplicateResolution,
    Resolution,
)
from .recipe import (
    StepRef,
    StepText,
    StepSpec,
    StepRecipe,
    RecipeError,
    plain_inputs,
)
from .contract import (
    FieldRule,
    IntentSchema,
    PublishGuardrail,
    PlaybookContract,
)
from .experience import (
    Experience,
    canonical_json,
    payload_digest,
    normalize_playbook_id,
)
from .artifact import (
    ArtifactReference,
)
from .step import (
    Step,
    StepLogEntry,
    InvalidTransition,
)
from .bundle import (
    BundleArtifact,
    ArtifactBundle,
)

__all__ = [
    # Vocabularies
    "CanonicalStatus",
    "StepStatus",
    "ExperienceStatus",
    "RetryStrategy",
    "DuplicateResolution",
    "Resolution",
    # Recipe
    "StepRef",
    "StepText",
    "plain_inputs",
    "StepSpec",
    "StepRecipe",
    "RecipeError",
    # Contract
    "FieldRule",
    "IntentSchema",
    "PublishGuardrail",
    "PlaybookContract",
    # Experience
    "Experience",
    "canonical_json",
    "payload_digest",
    "normalize_playbook_id",
    # Artifacts
    "ArtifactReference",
    # Steps
    "Step",
    "StepLogEntry",
    "InvalidTransition",
    # Bundle
    "BundleArtifact",
    "ArtifactBundle",
]
