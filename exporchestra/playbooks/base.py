"""
Playbook adapter interface and shared intent validation.

A playbook adapter turns a raw intent into a StepRecipe. It owns the
business rules of its playbook (which artifacts, in which order, under
which names); the runtime owns execution.

validate_intent() applies an IntentSchema and reports every problem at
once, so a caller can fix the whole intent in one round trip.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping, Optional

from exporchestra.errors import FieldIssue, IntentValidationError
from exporchestra.schemas import IntentSchema, PlaybookContract, StepRecipe


@dataclass(frozen=True)
class PlaybookInput:
    """
    Validated intent of one experience.

    Attributes:
        playbook_id: Playbook the intent was validated for
        values: Validated fields with defaults applied; unknown fields pass through
        experience_name: Human name of the experience (None when the playbook has none)
        detected_item_count: Auxiliary items found in the intent
        unsupported_items: Items the playbook will not create, as {type, name, reason}
    """
    playbook_id: str
    values: dict[str, Any] = field(default_factory=dict)
    experience_name: Optional[str] = None
    detected_item_count: int = 0
    unsupported_items: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    def get(self, name: str, default: Any = None) -> Any:
        value = self.values.get(name)
        return default if value is None else value

    def __getitem__(self, name: str) -> Any:
        return self.values[name]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _check_type(rule_type: str, value: Any) -> str | None:
    """Return an error message when value does not match rule_type."""
    if rule_type == "string":
        return None if isinstance(value, str) else "must be a string"
    if rule_type == "date":
        if not isinstance(value, str):
            return "must be an ISO date (YYYY-MM-DD)"
        try:
            date.fromisoformat(value)
        except ValueError:
            return "must be an ISO date (YYYY-MM-DD)"
        if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
            return "must be an ISO date (YYYY-MM-DD)"
        return None
    if rule_type == "integer":
        if isinstance(value, bool) or not isinstance(value, int):
            return "must be an integer"
        return None
    if rule_type == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return "must be a number"
        return None
    if rule_type == "boolean":
        return None if isinstance(value, bool) else "must be true or false"
    if rule_type == "list":
        return None if isinstance(value, list) else "must be a list"
    if rule_type == "object":
        return None if isinstance(value, dict) else "must be an object"
    return f"has unsupported type '{rule_type}'"


def validate_intent(schema: IntentSchema, raw_intent: Any) -> tuple[dict[str, Any], list[FieldIssue]]:
    """
    Validate a raw intent against a schema.

    Args:
        schema: Field rules of the playbook
        raw_intent: Caller-supplied intent mapping

    Returns:
        (values, issues): validated values with defaults applied, and
        every FieldIssue found. Callers raise IntentValidationError when
        issues is non-empty so they can add playbook-specific issues first.
    """
    if not isinstance(raw_intent, Mapping):
        return {}, [FieldIssue("(intent)", "must be an object")]

    values: dict[str, Any] = dict(raw_intent)
    issues: list[FieldIssue] = []

    for rule in schema.fields:
        value = raw_intent.get(rule.name)
        if _is_empty(value):
            if rule.required:
                issues.append(FieldIssue(rule.name, "is required"))
            elif rule.default is not None:
                values[rule.name] = rule.default
            else:
                values.pop(rule.name, None)
            continue

        if isinstance(value, str):
            value = value.strip()
            values[rule.name] = value

        type_error = _check_type(rule.type, value)
        if type_error:
            issues.append(FieldIssue(rule.name, type_error))
            continue
        if rule.min_value is not None and rule.type in ("integer", "number") and value < rule.min_value:
            issues.append(FieldIssue(rule.name, f"must be >= {rule.min_value:g}"))
        if rule.pattern is not None and rule.type == "string" and not re.fullmatch(rule.pattern, value):
            issues.append(FieldIssue(rule.name, f"must match {rule.pattern}"))
        if rule.choices is not None and value not in rule.choices:
            allowed = ", ".join(str(c) for c in rule.choices)
            issues.append(FieldIssue(rule.name, f"must be one of: {allowed}"))

    return values, issues


class PlaybookAdapter(ABC):
    """
    Abstract base class for playbook adapters.

    Subclasses provide a contract and derive(); derive() must be a pure
    function of the raw intent so the same intent always yields the same
    recipe (and therefore the same step signatures).
    """

    @property
    @abstractmethod
    def contract(self) -> PlaybookContract:
        """Static contract of the playbook."""
        pass

    @property
    def playbook_id(self) -> str:
        return self.contract.playbook_id

    @abstractmethod
    def derive(self, raw_intent: Mapping[str, Any]) -> tuple[PlaybookInput, StepRecipe]:
        """
        Validate a raw intent and derive its step recipe.

        Raises:
            IntentValidationError: With every missing or invalid field
        """
        pass

    def validate(self, raw_intent: Mapping[str, Any]) -> PlaybookInput:
        """Validate against the contract's intent schema only."""
        values, issues = validate_intent(self.contract.intent_schema, raw_intent)
        if issues:
            raise IntentValidationError(issues)
        return PlaybookInput(playbook_id=self.playbook_id, values=values)
