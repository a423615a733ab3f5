"""
Event playbook - launch an event with tickets, registration form and checkout.

Recipe (in order):

    event
    product:N, ticket:N     one pair per ticket tier (depends on event)
    form                    registration form (optional; skipped when form=false)
    form:N                  extra forms requested as auxiliary items (optional)
    checkout                depends on event and every product/ticket, after forms
    unsupported:N           skip steps for auxiliary items of other types

Without ticketTiers a single "<eventName> Admission" tier is derived from
price/capacity, so {eventName, date} is enough for a complete launch.

Published launches carry a guardrail: checkout may only go live once the
event and its whole catalog (every product and ticket) exist.
"""

from datetime import date
from typing import Any, Mapping

from exporchestra.errors import FieldIssue, IntentValidationError
from exporchestra.schemas import (
    DuplicateResolution,
    FieldRule,
    IntentSchema,
    PlaybookContract,
    PublishGuardrail,
    RetryStrategy,
    StepRecipe,
    StepRef,
    StepSpec,
)

from .base import PlaybookAdapter, PlaybookInput, validate_intent

EVENT_PLAYBOOK_ID = "event"
EVENT_PLAYBOOK_VERSION = "1.0.0"

SUPPORTED_ITEM_TYPES = ("ticket", "product", "form")

DUPLICATE_STRATEGIES = {
    "reuse_existing": DuplicateResolution.NAME_REUSE,
    "fail_on_duplicate": DuplicateResolution.FAIL,
}

EVENT_INTENT_SCHEMA = IntentSchema(fields=(
    FieldRule("eventName", "string", required=True),
    FieldRule("date", "date", required=True),
    FieldRule("endDate", "date"),
    FieldRule("description", "string"),
    FieldRule("location", "string"),
    FieldRule("timezone", "string"),
    FieldRule("capacity", "integer", min_value=1),
    FieldRule("price", "number", min_value=0, default=0),
    FieldRule("currency", "string", pattern=r"[A-Za-z]{3}", default="USD"),
    FieldRule("published", "boolean", default=False),
    FieldRule("form", "boolean", default=True),
    FieldRule("ticketTiers", "list"),
    FieldRule("items", "list"),
    FieldRule(
        "duplicateStrategy", "string",
        choices=tuple(DUPLICATE_STRATEGIES), default="reuse_existing",
    ),
))

CHECKOUT_GUARDRAIL = PublishGuardrail(
    name="checkout_requires_catalog",
    applies_to=("checkout",),
    requires_succeeded=("event", "product:*", "ticket:*"),
    description="Checkout can only be published after the event and all products and tickets exist",
)

EVENT_CONTRACT = PlaybookContract(
    playbook_id=EVENT_PLAYBOOK_ID,
    version=EVENT_PLAYBOOK_VERSION,
    description="Launch an event with ticket tiers, a registration form and a checkout",
    intent_schema=EVENT_INTENT_SCHEMA,
    publish_guardrails=(CHECKOUT_GUARDRAIL,),
)

# Raw statuses per artifact type: (unpublished, published)
_STATUSES = {
    "event": ("draft", "published"),
    "product": ("draft", "active"),
    "ticket": ("draft", "on_sale"),
    "form": ("draft", "published"),
    "checkout": ("draft", "active"),
}


def _status(artifact_type: str, published: bool) -> str:
    return _STATUSES[artifact_type][1 if published else 0]


def _unsupported_reason(item_type: str) -> str:
    return (
        f"Artifact type '{item_type}' is not supported by the event playbook "
        f"(supported: {', '.join(SUPPORTED_ITEM_TYPES)}); create it manually or remove it from the request"
    )


def _check_number(value: Any, field_name: str, issues: list[FieldIssue]) -> None:
    if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0):
        issues.append(FieldIssue(field_name, "must be a number >= 0"))


def _check_capacity(value: Any, field_name: str, issues: list[FieldIssue]) -> None:
    if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
        issues.append(FieldIssue(field_name, "must be a positive integer"))


def _check_tiers(tiers: list[Any], issues: list[FieldIssue]) -> None:
    for i, tier in enumerate(tiers):
        prefix = f"ticketTiers[{i}]"
        if not isinstance(tier, dict):
            issues.append(FieldIssue(prefix, "must be an object"))
            continue
        name = tier.get("name")
        if not isinstance(name, str) or not name.strip():
            issues.append(FieldIssue(f"{prefix}.name", "is required"))
        _check_number(tier.get("price"), f"{prefix}.price", issues)
        _check_capacity(tier.get("capacity"), f"{prefix}.capacity", issues)


def _check_items(items: list[Any], issues: list[FieldIssue]) -> None:
    for i, item in enumerate(items):
        prefix = f"items[{i}]"
        if not isinstance(item, dict):
            issues.append(FieldIssue(prefix, "must be an object"))
            continue
        item_type = item.get("type")
        if not isinstance(item_type, str) or not item_type.strip():
            issues.append(FieldIssue(f"{prefix}.type", "is required"))
        # Items without a name get a derived one
        name = item.get("name")
        if name is not None and (not isinstance(name, str) or not name.strip()):
            issues.append(FieldIssue(f"{prefix}.name", "must be a non-empty string"))
        _check_number(item.get("price"), f"{prefix}.price", issues)
        _check_capacity(item.get("capacity"), f"{prefix}.capacity", issues)


class EventPlaybook(PlaybookAdapter):
    """Reference playbook adapter for event launches."""

    @property
    def contract(self) -> PlaybookContract:
        return EVENT_CONTRACT

    def derive(self, raw_intent: Mapping[str, Any]) -> tuple[PlaybookInput, StepRecipe]:
        values, issues = validate_intent(EVENT_INTENT_SCHEMA, raw_intent)

        start = values.get("date")
        end = values.get("endDate")
        if start and end and not any(i.field in ("date", "endDate") for i in issues):
            if date.fromisoformat(end) < date.fromisoformat(start):
                issues.append(FieldIssue("endDate", "must not be before date"))
        if isinstance(values.get("ticketTiers"), list):
            _check_tiers(values["ticketTiers"], issues)
        if isinstance(values.get("items"), list):
            _check_items(values["items"], issues)
        if issues:
            raise IntentValidationError(issues)

        values["currency"] = values["currency"].upper()
        items = values.get("items", [])
        unsupported = []
        for item in items:
            item_type = item["type"].strip().lower()
            if item_type not in SUPPORTED_ITEM_TYPES:
                unsupported.append({
                    "type": item_type,
                    "name": item.get("name"),
                    "reason": _unsupported_reason(item_type),
                })
        playbook_input = PlaybookInput(
            playbook_id=EVENT_PLAYBOOK_ID,
            values=values,
            experience_name=values["eventName"],
            detected_item_count=len(items),
            unsupported_items=tuple(unsupported),
        )
        return playbook_input, self._build_recipe(playbook_input)

    def _build_recipe(self, intent: PlaybookInput) -> StepRecipe:
        event_name = intent["eventName"]
        published = intent.get("published", False)
        duplicate = DUPLICATE_STRATEGIES[intent.get("duplicateStrategy", "reuse_existing")]

        common = {"duplicate_resolution": duplicate, "cost": 1}
        steps: list[StepSpec] = [
            StepSpec(
                step_id="event",
                artifact_type="event",
                inputs={
                    "name": event_name,
                    "startDate": intent["date"],
                    "endDate": intent.get("endDate"),
                    "description": intent.get("description"),
                    "location": intent.get("location"),
                    "timezone": intent.get("timezone"),
                    "capacity": intent.get("capacity"),
                },
                artifact_name=event_name,
                target_status=_status("event", published),
                retry_strategy=RetryStrategy.EXPONENTIAL,
                **common,
            ),
        ]

        # Tiers: explicit ticketTiers, then ticket/product auxiliary items
        tiers = [dict(t) for t in intent.get("ticketTiers", [])]
        items = intent.get("items", [])
        extra_forms: list[dict[str, Any]] = []
        for item in items:
            item_type = item["type"].strip().lower()
            if item_type in ("ticket", "product"):
                tiers.append({
                    "name": item.get("name") or f"{event_name} Ticket {len(tiers) + 1}",
                    "price": item.get("price"),
                    "capacity": item.get("capacity"),
                })
            elif item_type == "form":
                extra_forms.append(item)
        if not tiers:
            tiers.append({"name": f"{event_name} Admission"})

        catalog: list[str] = []
        for n, tier in enumerate(tiers, start=1):
            tier_name = tier["name"].strip()
            price = tier.get("price")
            capacity = tier.get("capacity")
            product_id = f"product:{n}"
            ticket_id = f"ticket:{n}"
            steps.append(StepSpec(
                step_id=product_id,
                artifact_type="product",
                inputs={
                    "eventId": StepRef("event"),
                    "name": tier_name,
                    "price": intent.get("price", 0) if price is None else price,
                    "currency": intent["currency"],
                    "capacity": intent.get("capacity") if capacity is None else capacity,
                },
                depends_on=("event",),
                artifact_name=tier_name,
                target_status=_status("product", published),
                **common,
            ))
            steps.append(StepSpec(
                step_id=ticket_id,
                artifact_type="ticket",
                inputs={
                    "eventId": StepRef("event"),
                    "productId": StepRef(product_id),
                    "name": f"{tier_name} Ticket",
                },
                depends_on=("event", product_id),
                artifact_name=f"{tier_name} Ticket",
                target_status=_status("ticket", published),
                **common,
            ))
            catalog.extend([product_id, ticket_id])

        forms: list[str] = ["form"]
        if intent.get("form", True):
            steps.append(StepSpec(
                step_id="form",
                artifact_type="form",
                inputs={
                    "eventId": StepRef("event"),
                    "name": f"{event_name} Registration",
                    "fields": ["name", "email"],
                },
                depends_on=("event",),
                artifact_name=f"{event_name} Registration",
                target_status=_status("form", published),
                required=False,
                **common,
            ))
        else:
            steps.append(StepSpec.skip(
                "form", "form", "Form creation disabled by payload.",
                artifact_name=f"{event_name} Registration",
            ))

        for n, item in enumerate(extra_forms, start=1):
            form_name = item.get("name") or f"{event_name} Form {n}"
            step_id = f"form:{n}"
            steps.append(StepSpec(
                step_id=step_id,
                artifact_type="form",
                inputs={"eventId": StepRef("event"), "name": form_name},
                depends_on=("event",),
                artifact_name=form_name,
                target_status=_status("form", published),
                required=False,
                **common,
            ))
            forms.append(step_id)

        steps.append(StepSpec(
            step_id="checkout",
            artifact_type="checkout",
            inputs={
                "eventId": StepRef("event"),
                "productIds": [StepRef(p) for p in catalog if p.startswith("product:")],
                "ticketIds": [StepRef(t) for t in catalog if t.startswith("ticket:")],
                "formId": StepRef("form"),
                "currency": intent["currency"],
                "name": f"{event_name} Checkout",
            },
            depends_on=("event", *catalog),
            after=tuple(forms),
            artifact_name=f"{event_name} Checkout",
            target_status=_status("checkout", published),
            retryable=True,
            retry_strategy=RetryStrategy.FIXED,
            max_attempts=3,
            **common,
        ))

        for n, item in enumerate(intent.unsupported_items, start=1):
            steps.append(StepSpec.skip(
                f"unsupported:{n}", item["type"], item["reason"], artifact_name=item["name"],
            ))

        return StepRecipe(steps=tuple(steps))
