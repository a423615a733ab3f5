"""
Declarative playbooks - recipes defined in YAML instead of code.

A declarative playbook file holds a PlaybookContract plus step templates:

    playbook_id: workshop
    version: 1.0.0
    experience_name: "@intent.title workshop"
    intent_schema:
      title: {type: string, required: true}
      signup: {type: boolean, default: true}
    steps:
      - step_id: page
        artifact_type: page
        artifact_name: "@intent.title"
        inputs: {title: "@intent.title"}
      - step_id: form
        artifact_type: form
        if: "@intent.signup"
        skip_reason: Signup form disabled by payload.
        depends_on: [page]
        inputs: {pageId: "@steps.page.artifact_id"}

Template rendering resolves:
- @intent.* references from the validated intent (before the run)
- if conditions, evaluated once; false turns the step into a skip step

@steps.* references in step inputs are parsed into StepRef/StepText
markers when the playbook is built, before any intent value is filled
in, and are left for the runtime to resolve. Intent values are never
read as references.
"""

import re
from typing import Any, Mapping, Optional

from exporchestra.errors import InvalidRecipeError, IntentValidationError
from exporchestra.graph import parse_step_refs
from exporchestra.schemas import PlaybookContract, StepRecipe, StepRef, StepSpec, StepText

from .base import PlaybookAdapter, PlaybookInput, validate_intent

# Reference pattern for @intent.path.to.value
INTENT_REF_PATTERN = re.compile(r"@intent\.([a-zA-Z_][a-zA-Z0-9_.]*)")

_COMPARISONS = [
    ("==", lambda a, b: a == b),
    ("!=", lambda a, b: a != b),
    (">=", lambda a, b: a >= b),
    ("<=", lambda a, b: a <= b),
    (">", lambda a, b: a > b),
    ("<", lambda a, b: a < b),
]


def _lookup(path: str, values: Mapping[str, Any]) -> Any:
    """Navigate a dotted path; missing parts resolve to None."""
    value: Any = values
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return None
    return value


def _render(value: Any, values: Mapping[str, Any]) -> Any:
    """Recursively resolve @intent.* references in a template value."""
    if isinstance(value, StepRef):
        return value
    if isinstance(value, StepText):
        parts = (_render(p, values) for p in value.parts)
        return StepText(tuple("" if p is None else p for p in parts))
    if isinstance(value, str):
        match = INTENT_REF_PATTERN.fullmatch(value)
        if match:
            return _lookup(match.group(1), values)

        def substitute(m: re.Match) -> str:
            resolved = _lookup(m.group(1), values)
            return "" if resolved is None else str(resolved)

        return INTENT_REF_PATTERN.sub(substitute, value)
    elif isinstance(value, dict):
        return {k: _render(v, values) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_render(v, values) for v in value]
    return value


def _parse_literal(s: str) -> Any:
    """Parse a literal value from a condition operand."""
    s = s.strip()
    if (s.startswith("'") and s.endswith("'")) or (s.startswith('"') and s.endswith('"')):
        return s[1:-1]
    if s.lower() == "true":
        return True
    if s.lower() == "false":
        return False
    if s.lower() in ("none", "null"):
        return None
    try:
        if "." in s:
            return float(s)
        return int(s)
    except ValueError:
        return s


def _operand(s: str, values: Mapping[str, Any]) -> Any:
    s = s.strip()
    match = INTENT_REF_PATTERN.fullmatch(s)
    if match:
        return _lookup(match.group(1), values)
    return _parse_literal(s)


def evaluate_condition(condition: Any, values: Mapping[str, Any]) -> bool:
    """
    Evaluate a step's if condition against the validated intent.

    Supports a bare reference ("@intent.signup"), a negation
    ("not @intent.signup"), simple comparisons ("@intent.mode == 'live'")
    and YAML booleans.

    Raises:
        InvalidRecipeError: If the condition cannot be evaluated
    """
    if isinstance(condition, bool):
        return condition
    if not isinstance(condition, str):
        raise InvalidRecipeError(f"Cannot evaluate condition: {condition!r}")

    text = condition.strip()
    if "@steps." in text:
        raise InvalidRecipeError(
            f"if conditions are evaluated before the run; @steps.* references are not allowed: {text}"
        )
    if text.startswith("not "):
        return not evaluate_condition(text[4:], values)
    if INTENT_REF_PATTERN.fullmatch(text):
        return bool(_operand(text, values))

    for op, op_func in _COMPARISONS:
        if op in text:
            left, right = text.split(op, 1)
            try:
                return bool(op_func(_operand(left, values), _operand(right, values)))
            except TypeError as e:
                raise InvalidRecipeError(f"Cannot evaluate condition '{text}': {e}") from e

    raise InvalidRecipeError(f"Cannot evaluate condition: {text}")


class DeclarativePlaybook(PlaybookAdapter):
    """
    Playbook adapter driven by a contract dictionary (usually from YAML).

    Usage:
        playbook = DeclarativePlaybook.from_dict(yaml.safe_load(path.read_text()))
        intent, recipe = playbook.derive({"title": "Intro to Clay"})
    """

    def __init__(
        self,
        contract: PlaybookContract,
        templates: list[dict[str, Any]],
        source: Optional[str] = None,
        experience_name: Optional[str] = None,
    ):
        self._contract = contract
        self._experience_name = experience_name
        self._templates = [dict(t) for t in templates]
        for template in self._templates:
            if "inputs" in template:
                template["inputs"] = parse_step_refs(template["inputs"])
        self._source = source

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: Optional[str] = None) -> "DeclarativePlaybook":
        """
        Build a playbook from its contract dictionary.

        Raises:
            ValueError: If the contract or a step template is malformed
        """
        templates = data.get("steps") or []
        if not isinstance(templates, list) or not templates:
            raise ValueError("Declarative playbook needs a non-empty 'steps' list")
        for template in templates:
            if not isinstance(template, dict):
                raise ValueError(f"Step template must be a mapping, got {type(template).__name__}")
        # Conditional skip_reason only applies when the condition fails
        contract_data = dict(data)
        contract_data["steps"] = [
            {k: v for k, v in t.items() if k != "if" and not ("if" in t and k == "skip_reason")}
            for t in templates
        ]
        contract = PlaybookContract.from_dict(contract_data)
        return cls(contract, templates, source=source, experience_name=data.get("experience_name"))

    @property
    def contract(self) -> PlaybookContract:
        return self._contract

    @property
    def source(self) -> Optional[str]:
        """Path of the file the playbook was loaded from, if any."""
        return self._source

    def derive(self, raw_intent: Mapping[str, Any]) -> tuple[PlaybookInput, StepRecipe]:
        values, issues = validate_intent(self._contract.intent_schema, raw_intent)
        if issues:
            raise IntentValidationError(issues)

        steps: list[StepSpec] = []
        for template in self._templates:
            condition = template.get("if")
            body = {k: v for k, v in template.items() if k != "if"}
            rendered = _render(body, values)
            if condition is not None and not evaluate_condition(condition, values):
                steps.append(StepSpec.skip(
                    rendered["step_id"],
                    rendered["artifact_type"],
                    rendered.get("skip_reason") or f"Condition not met: {condition}",
                    artifact_name=rendered.get("artifact_name"),
                ))
                continue
            # skip_reason only applies when the condition fails
            if condition is not None:
                rendered.pop("skip_reason", None)
            try:
                steps.append(StepSpec.from_dict(rendered))
            except (KeyError, ValueError) as e:
                raise InvalidRecipeError(
                    f"Playbook '{self.playbook_id}' step template is invalid: {e}"
                ) from e

        try:
            recipe = StepRecipe(steps=tuple(steps))
        except ValueError as e:
            raise InvalidRecipeError(str(e)) from e
        experience_name = None
        if self._experience_name is not None:
            experience_name = str(_render(self._experience_name, values))
        return PlaybookInput(playbook_id=self.playbook_id, values=values, experience_name=experience_name), recipe
