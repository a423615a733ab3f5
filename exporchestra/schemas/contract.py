"""
PlaybookContract schema - the static definition of a playbook.

A PlaybookContract captures what a playbook accepts (intent_schema),
what it builds (step_recipe, for declarative playbooks) and when it may
publish (publish_guardrails). Contracts are loaded at startup and are
read-only at runtime.
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from .recipe import StepRecipe

FieldType = Literal["string", "date", "integer", "number", "boolean", "list", "object"]

FIELD_TYPES = ("string", "date", "integer", "number", "boolean", "list", "object")


@dataclass(frozen=True)
class FieldRule:
    """
    Validation rule for one intent field.

    Attributes:
        name: Field name in the raw intent
        type: Expected value type
        required: Whether the field must be present and non-empty
        min_value: Lower bound for integer/number fields
        pattern: Regex for string fields
        choices: Allowed values
        default: Value used when the field is absent
    """
    name: str
    type: FieldType = "string"
    required: bool = False
    min_value: Optional[float] = None
    pattern: Optional[str] = None
    choices: Optional[tuple[Any, ...]] = None
    default: Any = None

    def __post_init__(self):
        if self.type not in FIELD_TYPES:
            raise ValueError(f"Field '{self.name}': unknown type '{self.type}'")

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "FieldRule":
        choices = data.get("choices")
        return cls(
            name=name,
            type=data.get("type", "string"),
            required=data.get("required", False),
            min_value=data.get("min_value"),
            pattern=data.get("pattern"),
            choices=tuple(choices) if choices is not None else None,
            default=data.get("default"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type, "required": self.required}
        if self.min_value is not None:
            result["min_value"] = self.min_value
        if self.pattern is not None:
            result["pattern"] = self.pattern
        if self.choices is not None:
            result["choices"] = list(self.choices)
        if self.default is not None:
            result["default"] = self.default
        return result


@dataclass(frozen=True)
class IntentSchema:
    """Validation rules for a playbook's raw intent."""
    fields: tuple[FieldRule, ...] = field(default_factory=tuple)

    @property
    def required_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.required]

    def get(self, name: str) -> Optional[FieldRule]:
        for rule in self.fields:
            if rule.name == name:
                return rule
        return None

    def to_dict(self) -> dict[str, Any]:
        return {rule.name: rule.to_dict() for rule in self.fields}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IntentSchema":
        return cls(fields=tuple(FieldRule.from_dict(name, spec or {}) for name, spec in data.items()))


@dataclass(frozen=True)
class PublishGuardrail:
    """
    Condition that must hold before a step may publish an artifact.

    Step patterns are step ids; entries ending in ":*" match every step
    with that prefix.

    Attributes:
        name: Guardrail identifier
        applies_to: Steps the guardrail governs (empty: every publishing step)
        requires_succeeded: Steps that must have succeeded first
        description: Human explanation shown when the guardrail fails
    """
    name: str
    applies_to: tuple[str, ...] = field(default_factory=tuple)
    requires_succeeded: tuple[str, ...] = field(default_factory=tuple)
    description: str = ""

    def __post_init__(self):
        object.__setattr__(self, "applies_to", tuple(self.applies_to))
        object.__setattr__(self, "requires_succeeded", tuple(self.requires_succeeded))

    @staticmethod
    def _expand(patterns: tuple[str, ...], step_ids: list[str]) -> list[str]:
        matched: list[str] = []
        for pattern in patterns:
            if pattern.endswith(":*"):
                prefix = pattern[:-1]
                matched.extend(s for s in step_ids if s.startswith(prefix))
            elif pattern in step_ids:
                matched.append(pattern)
        return matched

    def governs(self, step_id: str) -> bool:
        """Whether the guardrail applies to a publishing step."""
        if not self.applies_to:
            return True
        return bool(self._expand(self.applies_to, [step_id]))

    def matching(self, step_ids: list[str]) -> list[str]:
        """Expand requires_succeeded patterns against concrete step ids."""
        return self._expand(self.requires_succeeded, step_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            **({"applies_to": list(self.applies_to)} if self.applies_to else {}),
            "requires_succeeded": list(self.requires_succeeded),
            **({"description": self.description} if self.description else {}),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PublishGuardrail":
        return cls(
            name=data["name"],
            applies_to=tuple(data.get("applies_to", ())),
            requires_succeeded=tuple(data.get("requires_succeeded", ())),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class PlaybookContract:
    """
    Static definition of a playbook.

    Attributes:
        playbook_id: Normalized playbook identifier
        version: Semantic version of the playbook
        description: One-line summary
        intent_schema: Validation rules for the raw intent
        step_recipe: Step templates (declarative playbooks only)
        publish_guardrails: Conditions checked before publishing
    """
    playbook_id: str
    version: str
    description: str = ""
    intent_schema: IntentSchema = field(default_factory=IntentSchema)
    step_recipe: StepRecipe = field(default_factory=StepRecipe)
    publish_guardrails: tuple[PublishGuardrail, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "playbook_id": self.playbook_id,
            "version": self.version,
            **({"description": self.description} if self.description else {}),
            "intent_schema": self.intent_schema.to_dict(),
            **({"steps": self.step_recipe.to_dict()["steps"]} if len(self.step_recipe) else {}),
            **({"publish_guardrails": [g.to_dict() for g in self.publish_guardrails]}
               if self.publish_guardrails else {}),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlaybookContract":
        return cls(
            playbook_id=data["playbook_id"].strip().lower(),
            version=str(data["version"]),
            description=data.get("description", ""),
            intent_schema=IntentSchema.from_dict(data.get("intent_schema", {})),
            step_recipe=StepRecipe.from_dict({"steps": data.get("steps", [])}),
            publish_guardrails=tuple(
                PublishGuardrail.from_dict(g) for g in data.get("publish_guardrails", [])
            ),
        )
