"""
Recipe graph - validation, ordering and step reference resolution.

A recipe is valid when:
- every depends_on / after entry names a step of the recipe
- no step depends on itself and the dependency graph is acyclic
- every StepRef names a declared predecessor of the referencing step
  and a known field
- every executable step's artifact type and target status are registered
  in the contract registry

Ordering is Kahn's algorithm with recipe order as the tie-break, so the
result is deterministic for a given recipe.

References are StepRef/StepText markers. Declarative templates spell them
as @steps.<step_id>.<field> and parse_step_refs() turns that text into
markers when the template is loaded, before any intent value is filled in.
Caller-supplied strings are therefore never read as references.
"""

import heapq
import re
from collections import defaultdict
from typing import Any, Mapping, Optional

from exporchestra.contracts import ContractRegistry
from exporchestra.errors import InvalidRecipeError
from exporchestra.schemas import ArtifactReference, StepRecipe, StepRef, StepText

# Template spelling of a reference; step ids may contain ":" and "-"
STEP_REF_PATTERN = re.compile(r"@steps\.([A-Za-z0-9_:\-]+)\.([A-Za-z_][A-Za-z0-9_]*)")

REF_FIELDS = ("artifact_id", "artifact_type", "name", "status")


def parse_step_refs(value: Any) -> Any:
    """
    Turn @steps.* template text into StepRef/StepText markers.

    Only for template text written by a playbook author. A string that is
    exactly one reference becomes a StepRef; a string with embedded
    references becomes a StepText; other strings are returned unchanged.
    """
    if isinstance(value, str):
        match = STEP_REF_PATTERN.fullmatch(value)
        if match:
            return StepRef(match.group(1), match.group(2))
        parts: list[Any] = []
        position = 0
        for m in STEP_REF_PATTERN.finditer(value):
            if m.start() > position:
                parts.append(value[position:m.start()])
            parts.append(StepRef(m.group(1), m.group(2)))
            position = m.end()
        if not parts:
            return value
        if position < len(value):
            parts.append(value[position:])
        return StepText(tuple(parts))
    elif isinstance(value, dict):
        return {k: parse_step_refs(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [parse_step_refs(v) for v in value]
    return value


def find_step_refs(value: Any) -> list[tuple[str, str]]:
    """Collect (step_id, field) pairs of every marker anywhere in a value."""
    refs: list[tuple[str, str]] = []
    if isinstance(value, StepRef):
        refs.append((value.step_id, value.field_name))
    elif isinstance(value, StepText):
        refs.extend((r.step_id, r.field_name) for r in value.refs)
    elif isinstance(value, dict):
        for v in value.values():
            refs.extend(find_step_refs(v))
    elif isinstance(value, (list, tuple)):
        for v in value:
            refs.extend(find_step_refs(v))
    return refs


def topological_order(recipe: StepRecipe) -> list[str]:
    """
    Order step ids so that every step follows its predecessors.

    Raises:
        InvalidRecipeError: If a predecessor is unknown or the graph has a cycle
    """
    known = set(recipe.step_ids)
    position = {step_id: i for i, step_id in enumerate(recipe.step_ids)}
    indegree = {step_id: 0 for step_id in recipe.step_ids}
    edges: dict[str, list[str]] = defaultdict(list)

    for spec in recipe:
        for dep in spec.predecessors:
            if dep == spec.step_id:
                raise InvalidRecipeError(f"Step '{spec.step_id}' depends on itself")
            if dep not in known:
                raise InvalidRecipeError(f"Step '{spec.step_id}' depends on unknown step '{dep}'")
            indegree[spec.step_id] += 1
            edges[dep].append(spec.step_id)

    ready = [position[s] for s in recipe.step_ids if indegree[s] == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        current = recipe.step_ids[heapq.heappop(ready)]
        ordered.append(current)
        for nxt in edges[current]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                heapq.heappush(ready, position[nxt])

    if len(ordered) != len(recipe):
        cyclic = sorted(s for s in recipe.step_ids if indegree[s] > 0)
        raise InvalidRecipeError(f"Recipe contains a dependency cycle among steps: {cyclic}")
    return ordered


def validate_recipe(
    recipe: StepRecipe,
    contracts: ContractRegistry,
) -> list[str]:
    """
    Validate a recipe against the graph rules and the contract registry.

    Returns:
        Step ids in execution order

    Raises:
        InvalidRecipeError: Malformed graph or bad @steps references
        UnknownStatusMapping: Unregistered artifact type or target status
    """
    if len(recipe) == 0:
        raise InvalidRecipeError("Recipe has no steps")

    order = topological_order(recipe)

    for spec in recipe:
        for ref_step, ref_field in find_step_refs(spec.inputs):
            if ref_step not in spec.predecessors:
                raise InvalidRecipeError(
                    f"Step '{spec.step_id}' references @steps.{ref_step} "
                    f"which is not one of its dependencies"
                )
            if ref_field not in REF_FIELDS:
                raise InvalidRecipeError(
                    f"Step '{spec.step_id}' references unknown field '{ref_field}' "
                    f"of step '{ref_step}' (allowed: {', '.join(REF_FIELDS)})"
                )

    for spec in recipe:
        # Skip steps never touch the store, so their type may be unregistered
        if spec.is_skip:
            continue
        contracts.normalize_status(spec.target_status, spec.artifact_type)

    return order


def _ref_value(artifact: Optional[ArtifactReference], ref_field: str) -> Any:
    if artifact is None:
        return None
    if ref_field == "status":
        return artifact.status.value
    return getattr(artifact, ref_field)


def resolve_step_refs(
    value: Any,
    outputs: Mapping[str, Optional[ArtifactReference]],
) -> Any:
    """
    Resolve StepRef/StepText markers using artifacts of finished steps.

    A StepRef is replaced by the referenced value; a StepText is joined
    into a string. References to steps without an artifact resolve to None
    (or "" inside a StepText). Strings are returned as they are.
    """
    if isinstance(value, StepRef):
        return _ref_value(outputs.get(value.step_id), value.field_name)
    elif isinstance(value, StepText):
        pieces = []
        for part in value.parts:
            if isinstance(part, StepRef):
                resolved = _ref_value(outputs.get(part.step_id), part.field_name)
                pieces.append("" if resolved is None else str(resolved))
            else:
                pieces.append(str(part))
        return "".join(pieces)
    elif isinstance(value, dict):
        return {k: resolve_step_refs(v, outputs) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [resolve_step_refs(v, outputs) for v in value]
    else:
        return value
