"""
Contract Registry - the canonical lifecycle vocabulary.

Every artifact type historically grew its own status strings ("active",
"on_sale", "live", ...). The registry maps each registered artifact type's
raw statuses onto the small canonical set (draft, published, archived).

Rules:
- normalize_status() is mandatory wherever a raw status crosses into the runtime
- An unregistered artifact type, or a raw status missing from its table,
  raises UnknownStatusMapping. There is no pass-through.
- New artifact types register a mapping (with_artifact_type) instead of
  inventing new canonical literals.

The registry is immutable; the default instance is built once at import
time from STATUS_TABLE.
"""

from types import MappingProxyType
from typing import Mapping, Optional

from exporchestra.errors import UnknownStatusMapping
from exporchestra.schemas import CanonicalStatus

CONTRACT_VERSION = "1.0"

_D = CanonicalStatus.DRAFT
_P = CanonicalStatus.PUBLISHED
_A = CanonicalStatus.ARCHIVED

# artifact_type -> raw status -> canonical status
STATUS_TABLE: dict[str, dict[str, CanonicalStatus]] = {
    "event": {
        "draft": _D,
        "scheduled": _D,
        "published": _P,
        "live": _P,
        "completed": _A,
        "cancelled": _A,
        "archived": _A,
    },
    "product": {
        "draft": _D,
        "active": _P,
        "published": _P,
        "sold_out": _P,
        "inactive": _A,
        "archived": _A,
    },
    "ticket": {
        "draft": _D,
        "on_sale": _P,
        "published": _P,
        "sold_out": _P,
        "closed": _A,
        "archived": _A,
    },
    "form": {
        "draft": _D,
        "inactive": _D,
        "published": _P,
        "archived": _A,
    },
    "checkout": {
        "draft": _D,
        "active": _P,
        "published": _P,
        "disabled": _A,
        "archived": _A,
    },
    "page": {
        "draft": _D,
        "published": _P,
        "unpublished": _D,
        "archived": _A,
    },
}


class ContractRegistry:
    """
    Immutable mapping of artifact types to canonical lifecycle statuses.

    Usage:
        registry = ContractRegistry.default()
        registry.normalize_status("on_sale", "ticket")   # CanonicalStatus.PUBLISHED

        extended = registry.with_artifact_type("webinar", {"draft": "draft", "live": "published"})
    """

    def __init__(
        self,
        table: Mapping[str, Mapping[str, CanonicalStatus]],
        version: str = CONTRACT_VERSION,
    ):
        frozen: dict[str, Mapping[str, CanonicalStatus]] = {}
        for artifact_type, mapping in table.items():
            frozen[artifact_type] = MappingProxyType({
                raw: CanonicalStatus.from_string(canonical)
                for raw, canonical in mapping.items()
            })
        self._table = MappingProxyType(frozen)
        self._version = version

    @classmethod
    def default(cls) -> "ContractRegistry":
        return DEFAULT_REGISTRY

    @property
    def version(self) -> str:
        return self._version

    @property
    def artifact_types(self) -> list[str]:
        return sorted(self._table.keys())

    def is_registered(self, artifact_type: str) -> bool:
        return artifact_type in self._table

    def ensure_artifact_type(self, artifact_type: str) -> None:
        """Raise UnknownStatusMapping if the artifact type is not registered."""
        if artifact_type not in self._table:
            raise UnknownStatusMapping(artifact_type)

    def raw_statuses(self, artifact_type: str) -> list[str]:
        """Raw statuses registered for an artifact type."""
        self.ensure_artifact_type(artifact_type)
        return sorted(self._table[artifact_type].keys())

    def normalize_status(self, raw_status: str, artifact_type: str) -> CanonicalStatus:
        """
        Map a raw status of an artifact type onto the canonical set.

        Matching is case-insensitive. Canonical literals get no special
        treatment: "published" is valid only if the type's table lists it.

        Raises:
            UnknownStatusMapping: If the type or the raw status is not registered
        """
        self.ensure_artifact_type(artifact_type)
        key = (raw_status or "").strip().lower()
        mapping = self._table[artifact_type]
        if key not in mapping:
            raise UnknownStatusMapping(artifact_type, raw_status)
        return mapping[key]

    def with_artifact_type(
        self,
        artifact_type: str,
        mapping: Mapping[str, "CanonicalStatus | str"],
    ) -> "ContractRegistry":
        """Return a new registry with one more artifact type registered."""
        if not mapping:
            raise ValueError(f"Artifact type '{artifact_type}' needs at least one status mapping")
        table: dict[str, Mapping[str, CanonicalStatus]] = dict(self._table)
        table[artifact_type] = {
            raw.strip().lower(): CanonicalStatus.from_string(canonical)
            for raw, canonical in mapping.items()
        }
        return ContractRegistry(table, version=self._version)

    def to_dict(self) -> dict[str, dict[str, str]]:
        return {
            artifact_type: {raw: canonical.value for raw, canonical in mapping.items()}
            for artifact_type, mapping in self._table.items()
        }


DEFAULT_REGISTRY = ContractRegistry(STATUS_TABLE)


def canonical_statuses() -> list[str]:
    """The finite set of canonical lifecycle statuses."""
    return [s.value for s in CanonicalStatus]


def normalize_status(
    raw_status: str,
    artifact_type: str,
    registry: Optional[ContractRegistry] = None,
) -> CanonicalStatus:
    """Normalize a raw status using the given (or default) registry."""
    return (registry or DEFAULT_REGISTRY).normalize_status(raw_status, artifact_type)
