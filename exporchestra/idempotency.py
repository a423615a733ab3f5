"""
Idempotency Index - decides whether a step may create its artifact.

Every step gets a signature derived from (experience_id, step_id, inputs).
Before any side effect the runtime asks the index to resolve the step:

- Reuse(ref): an artifact already carries this signature (replay)
- NameCollision(ref): no signature match, but an artifact with the same
  (artifact_type, artifact_name) exists
- ProceedNew: nothing matches, the step may create

Resolution must happen inside guard(signature) so that check-and-create
is atomic: of two racing callers exactly one creates and the other
observes Reuse.
"""

import hashlib
from dataclasses import dataclass
from typing import Any, ContextManager, Optional, Union

from exporchestra.schemas import ArtifactReference, canonical_json
from exporchestra.store import ArtifactStore


def compute_signature(experience_id: str, step_id: str, inputs: dict[str, Any]) -> str:
    """
    Compute the signature (idempotency key) of a step.

    SHA256 over the canonical JSON of experience id, step id and the
    resolved inputs. Deterministic for fixed arguments, independent of
    dict ordering.
    """
    material = canonical_json({
        "experience_id": experience_id,
        "step_id": step_id,
        "inputs": inputs,
    })
    return hashlib.sha256(material.encode()).hexdigest()


@dataclass(frozen=True)
class Reuse:
    """An artifact already carries the step's signature."""
    artifact: ArtifactReference


@dataclass(frozen=True)
class NameCollision:
    """A different artifact with the same type and name exists."""
    artifact: ArtifactReference


@dataclass(frozen=True)
class ProceedNew:
    """No existing artifact matches; the step may create one."""
    pass


IndexResolution = Union[Reuse, NameCollision, ProceedNew]


class IdempotencyIndex:
    """
    Signature and name lookups over an ArtifactStore.

    The index holds no state of its own; the store is the source of truth.
    """

    def __init__(self, store: ArtifactStore):
        self._store = store

    @property
    def store(self) -> ArtifactStore:
        return self._store

    def guard(self, signature: str) -> ContextManager[None]:
        """Atomic check-and-create section for a signature."""
        return self._store.guard(signature)

    def resolve(
        self,
        signature: str,
        artifact_type: str,
        artifact_name: Optional[str] = None,
    ) -> IndexResolution:
        """
        Resolve a step against existing artifacts.

        Signature lookup first, then (artifact_type, artifact_name) lookup
        when the step names its artifact.
        """
        existing = self._store.find_by_signature(signature)
        if existing is not None:
            return Reuse(existing)
        if artifact_name:
            named = self._store.find_by_name(artifact_type, artifact_name)
            if named is not None:
                return NameCollision(named)
        return ProceedNew()

    def adopt(self, artifact: ArtifactReference, signature: str) -> ArtifactReference:
        """Stamp an existing artifact with a signature (name_reuse)."""
        return self._store.stamp_signature(artifact.artifact_id, signature)
