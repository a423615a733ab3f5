"""Tests for the exporchestra runtime.

Covers the end-to-end guarantees:
- idempotent replay and concurrent convergence
- dependency blocking and unsupported-type safety
- name-collision policies
- retries, timeouts, authorization, publish guardrails, cancellation
"""

import logging
import threading
import time

import pytest

from exporchestra.billing import Authorization, BillingGate, CreditBudgetGate
from exporchestra.broker import CreateArtifactHandler, ToolBroker, ToolHandler
from exporchestra.config import ExporchestraConfig
from exporchestra.errors import (
    IntentValidationError,
    InvalidRecipeError,
    ToolError,
    UnknownPlaybookError,
    UnknownStatusMapping,
)
from exporchestra.playbooks import DeclarativePlaybook
from exporchestra.registry import PlaybookRegistry
from exporchestra.runtime import (
    CANCELLED_REASON,
    CancellationToken,
    RetryPolicy,
    Runtime,
    derive_experience_id,
)
from exporchestra.schemas import (
    CanonicalStatus,
    ExperienceStatus,
    Resolution,
    RetryStrategy,
    StepStatus,
)
from exporchestra.store import FileArtifactStore, InMemoryArtifactStore


EVENT_STEPS = ["event", "product:1", "ticket:1", "form", "checkout"]


# =============================================================================
# HELPERS
# =============================================================================


class FlakyHandler(ToolHandler):
    """Fails transiently a number of times, then creates the artifact."""

    def __init__(self, store, failures=1):
        self._inner = CreateArtifactHandler(store)
        self.failures = failures
        self.calls = 0

    def execute(self, request):
        self.calls += 1
        if self.calls <= self.failures:
            raise ToolError("checkout provider unavailable", transient=True)
        return self._inner.execute(request)


class FailingHandler(ToolHandler):
    def __init__(self, message="invalid payload"):
        self.message = message

    def execute(self, request):
        raise ToolError(self.message, transient=False)


class SlowHandler(ToolHandler):
    """Sleeps before creating; only the first `slow_calls` calls are slow."""

    def __init__(self, store, delay, slow_calls=None):
        self._inner = CreateArtifactHandler(store)
        self.delay = delay
        self.slow_calls = slow_calls
        self.calls = 0

    def execute(self, request):
        self.calls += 1
        if self.slow_calls is None or self.calls <= self.slow_calls:
            time.sleep(self.delay)
        return self._inner.execute(request)


class CancellingHandler(ToolHandler):
    """Cancels the experience while its step is running."""

    def __init__(self, store, token):
        self._inner = CreateArtifactHandler(store)
        self._token = token

    def execute(self, request):
        self._token.cancel()
        return self._inner.execute(request)


class DenyTypeGate(BillingGate):
    def __init__(self, denied_type):
        self.denied_type = denied_type

    def authorize(self, artifact_type, cost):
        if artifact_type == self.denied_type:
            return Authorization(allowed=False, reason=f"plan does not include {artifact_type}")
        return Authorization(allowed=True)


def _runtime(store, sleeps=None, playbooks=None, **handlers_and_kwargs):
    handlers = {k: v for k, v in handlers_and_kwargs.items() if isinstance(v, ToolHandler)}
    kwargs = {k: v for k, v in handlers_and_kwargs.items() if not isinstance(v, ToolHandler)}
    broker = ToolBroker.create_default(store)
    for artifact_type, handler in handlers.items():
        broker.register(artifact_type, handler)
    return Runtime(
        playbooks=playbooks,
        store=store,
        broker=broker,
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
        **kwargs,
    )


@pytest.fixture
def shop_playbooks():
    """Registry with a playbook whose checkout only softly follows its product."""
    registry = PlaybookRegistry.create_default()
    registry.register(DeclarativePlaybook.from_dict({
        "playbook_id": "shop",
        "version": "1.0.0",
        "intent_schema": {
            "title": {"type": "string", "required": True},
            "published": {"type": "boolean", "default": False},
        },
        "steps": [
            {
                "step_id": "product:1",
                "artifact_type": "product",
                "artifact_name": "@intent.title",
                "retryable": False,
                "inputs": {"name": "@intent.title"},
            },
            {
                "step_id": "checkout",
                "artifact_type": "checkout",
                "after": ["product:1"],
                "retryable": False,
                "target_status": "active",
                "inputs": {"productId": "@steps.product:1.artifact_id"},
            },
        ],
        "publish_guardrails": [
            {"name": "checkout_requires_product", "applies_to": ["checkout"],
             "requires_succeeded": ["product:*"]},
        ],
    }))
    return registry


# =============================================================================
# EVENT SCENARIO
# =============================================================================


class TestEventScenario:
    """A minimal event intent produces a complete bundle."""

    def test_complete_bundle(self, runtime, store, event_intent):
        bundle = runtime.create_experience("event", event_intent, experience_id="exp-1")

        assert bundle.status == ExperienceStatus.COMPLETE
        assert bundle.experience_id == "exp-1"
        assert [e.step_id for e in bundle.step_log] == EVENT_STEPS
        assert [a.artifact_type for a in bundle.artifacts] == [
            "event", "product", "ticket", "form", "checkout",
        ]
        assert all(e.attempts == 1 and e.created for e in bundle.step_log)
        assert all(e.duplicate_resolution == Resolution.NONE for e in bundle.step_log)
        assert store.count() == 5
        assert store._locks == {}

    def test_refs_are_resolved_into_payloads(self, runtime, store, event_intent):
        bundle = runtime.create_experience("event", event_intent)
        checkout = store.get(bundle.artifact_ids["checkout"])
        assert checkout["payload"]["eventId"] == bundle.artifact_ids["event"]
        assert checkout["payload"]["productIds"] == [bundle.artifact_ids["product:1"]]
        assert checkout["payload"]["ticketIds"] == [bundle.artifact_ids["ticket:1"]]
        assert checkout["payload"]["formId"] == bundle.artifact_ids["form"]

    def test_published_launch(self, runtime, event_intent):
        bundle = runtime.create_experience("event", {**event_intent, "published": True})
        assert bundle.status == ExperienceStatus.COMPLETE
        assert all(a.artifact_ref.status == CanonicalStatus.PUBLISHED for a in bundle.artifacts)

    def test_bundle_metadata(self, runtime, event_intent):
        bundle = runtime.create_experience("event", event_intent)
        data = bundle.to_dict()
        assert data["contract_version"] == runtime.contracts.version
        assert data["payload_digest"]
        assert data["summary"]["created"] == 5
        assert bundle.duration_ms is not None

    def test_generated_experience_id(self, runtime, event_intent):
        bundle = runtime.create_experience("event", event_intent)
        assert len(bundle.experience_id) == 26

    def test_form_disabled_is_partial(self, runtime, store, event_intent):
        bundle = runtime.create_experience("event", {**event_intent, "form": False})
        assert bundle.status == ExperienceStatus.PARTIAL
        form = bundle.get_step("form")
        assert form.status == StepStatus.SKIPPED
        assert form.failure_reason == "Form creation disabled by payload."
        assert form.attempts == 0
        # checkout only follows the form softly
        checkout = bundle.get_step("checkout")
        assert checkout.status == StepStatus.SUCCEEDED
        assert store.get(checkout.artifact_id)["payload"]["formId"] is None

    def test_workshop_playbook(self, runtime):
        bundle = runtime.create_experience("workshop", {"title": "Intro to Clay", "date": "2026-06-01"})
        assert bundle.status == ExperienceStatus.COMPLETE
        assert [a.artifact_type for a in bundle.artifacts] == ["page", "form", "product", "checkout"]
        assert bundle.experience_name == "Intro to Clay"

    def test_experience_details(self, runtime, event_intent):
        bundle = runtime.create_experience(
            "event", {**event_intent, "items": [{"type": "ticket"}, {"type": "webinar", "name": "Replay"}]}
        )
        assert bundle.experience_name == "Launch Party"
        assert bundle.detected_item_count == 2
        assert [(i["type"], i["name"]) for i in bundle.unsupported_items] == [("webinar", "Replay")]
        assert not bundle.fail_fast

    def test_event_name_is_never_a_reference(self, runtime, store):
        bundle = runtime.create_experience(
            "event", {"eventName": "Meetup @steps.event.name", "date": "2026-05-01"}
        )
        assert bundle.status == ExperienceStatus.COMPLETE
        assert store.get(bundle.artifact_ids["event"])["payload"]["name"] == "Meetup @steps.event.name"
        form = store.get(bundle.artifact_ids["form"])
        assert form["payload"]["name"] == "Meetup @steps.event.name Registration"

    def test_tier_name_is_never_a_reference(self, runtime, store, event_intent):
        bundle = runtime.create_experience(
            "event", {**event_intent, "ticketTiers": [{"name": "@steps.event.artifact_id"}]}
        )
        assert bundle.status == ExperienceStatus.COMPLETE
        product = store.get(bundle.artifact_ids["product:1"])
        assert product["payload"]["name"] == "@steps.event.artifact_id"
        assert product["payload"]["eventId"] == bundle.artifact_ids["event"]
        assert store.get(bundle.artifact_ids["ticket:1"])["payload"]["name"] == "@steps.event.artifact_id Ticket"

    def test_logs_carry_stage(self, runtime, event_intent, caplog):
        with caplog.at_level(logging.DEBUG, logger="exporchestra"):
            runtime.create_experience("event", event_intent)
        stages = {r.event: r.stage for r in caplog.records if r.name == "exporchestra.runtime"}
        assert stages["experience_start"] == "execute"
        assert stages["step_succeeded"] == "execute"
        assert stages["experience_finish"] == "assemble"


# =============================================================================
# IDEMPOTENCY
# =============================================================================


class TestIdempotentReplay:
    """Re-running an experience never duplicates artifacts."""

    def test_replay_reuses_every_artifact(self, runtime, store, event_intent):
        first = runtime.create_experience("event", event_intent, experience_id="exp-1")
        second = runtime.create_experience("event", event_intent, experience_id="exp-1")

        assert second.status == ExperienceStatus.COMPLETE
        assert store.count() == 5
        assert second.artifact_ids == first.artifact_ids
        for entry in second.step_log:
            assert entry.duplicate_resolution == Resolution.SIGNATURE_REPLAY
            assert not entry.created
        assert second.summary["reused"] == 5

    def test_replay_after_partial_failure(self, store, event_intent):
        failing = _runtime(store, checkout=FailingHandler("provider down"))
        first = failing.create_experience("event", event_intent, experience_id="exp-1")
        assert first.status == ExperienceStatus.FAILED
        assert store.count() == 4

        healthy = _runtime(store)
        second = healthy.create_experience("event", event_intent, experience_id="exp-1")
        assert second.status == ExperienceStatus.COMPLETE
        assert store.count() == 5
        assert second.get_step("event").duplicate_resolution == Resolution.SIGNATURE_REPLAY
        assert second.get_step("checkout").created

    def test_new_experience_id_reuses_by_name(self, runtime, store, event_intent):
        # The event playbook reuses artifacts with the same name by default
        runtime.create_experience("event", event_intent, experience_id="exp-1")
        bundle = runtime.create_experience("event", event_intent, experience_id="exp-2")
        assert store.count() == 5
        assert bundle.get_step("event").duplicate_resolution == Resolution.NAME_REUSE

    def test_file_store_replay(self, tmp_path, event_intent):
        first = _runtime(FileArtifactStore(tmp_path / "store"))
        first.create_experience("event", event_intent, experience_id="exp-1")

        second = _runtime(FileArtifactStore(tmp_path / "store"))
        bundle = second.create_experience("event", event_intent, experience_id="exp-1")
        assert len(second.store.list_artifacts()) == 5
        assert bundle.summary["reused"] == 5


class TestConcurrentConvergence:
    """Racing callers with one experience_id produce one artifact per step."""

    def test_n_callers(self, event_intent):
        store = InMemoryArtifactStore()
        runtime = _runtime(store, max_fan_out=2)
        callers = 6
        bundles = []
        barrier = threading.Barrier(callers)

        def call():
            barrier.wait()
            bundles.append(runtime.create_experience("event", event_intent, experience_id="exp-race"))

        threads = [threading.Thread(target=call) for _ in range(callers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(bundles) == callers
        assert store.count() == 5
        assert all(b.status == ExperienceStatus.COMPLETE for b in bundles)
        assert len({tuple(sorted(b.artifact_ids.items())) for b in bundles}) == 1
        for step_id in EVENT_STEPS:
            entries = [b.get_step(step_id) for b in bundles]
            assert sum(e.created for e in entries) == 1
            replays = [e for e in entries if e.duplicate_resolution == Resolution.SIGNATURE_REPLAY]
            assert len(replays) == callers - 1


class TestDeriveExperienceId:
    """Tests for deterministic experience ids."""

    def test_same_request_same_id(self, event_intent):
        a = derive_experience_id("Event", event_intent)
        b = derive_experience_id("event", dict(reversed(list(event_intent.items()))))
        assert a == b
        assert a.startswith("event:")

    def test_scope(self, event_intent):
        assert derive_experience_id("event", event_intent, scope="conv-9").startswith("event:conv-9:")

    def test_different_payload(self, event_intent):
        assert derive_experience_id("event", event_intent) != derive_experience_id(
            "event", {**event_intent, "price": 10}
        )


# =============================================================================
# FAILURE HANDLING
# =============================================================================


class TestDependencyBlocking:
    """A failed step blocks its dependents and nothing else."""

    def test_failed_product_blocks_ticket_and_checkout(self, store, event_intent):
        runtime = _runtime(store, product=FailingHandler())
        bundle = runtime.create_experience("event", event_intent)

        assert bundle.status == ExperienceStatus.FAILED
        product = bundle.get_step("product:1")
        assert product.status == StepStatus.FAILED
        assert product.error_type == "ToolError"
        assert product.attempts == 1

        for step_id in ("ticket:1", "checkout"):
            entry = bundle.get_step(step_id)
            assert entry.status == StepStatus.BLOCKED
            assert entry.attempts == 0
            assert entry.failure_reason == "Dependency 'product:1' failed"

        assert bundle.get_step("event").status == StepStatus.SUCCEEDED
        assert bundle.get_step("form").status == StepStatus.SUCCEEDED
        assert store.count("ticket") == 0
        assert store.count("checkout") == 0

    def test_blocked_chain_reason(self, store, event_intent):
        runtime = _runtime(store, event=FailingHandler())
        bundle = runtime.create_experience("event", event_intent)
        assert bundle.get_step("ticket:1").failure_reason == "Dependency 'event' failed"
        assert bundle.summary == {"created": 0, "reused": 0, "skipped": 0, "failed": 1, "blocked": 4}
        assert store.count() == 0

    def test_skipped_soft_dependency_still_runs(self, runtime):
        bundle = runtime.create_experience(
            "workshop", {"title": "Intro to Clay", "date": "2026-06-01", "signup": False}
        )
        assert bundle.get_step("form").status == StepStatus.SKIPPED
        assert bundle.get_step("checkout").status == StepStatus.SUCCEEDED
        assert bundle.status == ExperienceStatus.PARTIAL

    def test_skipped_hard_dependency_skips_dependent(self, store):
        registry = PlaybookRegistry()
        registry.register(DeclarativePlaybook.from_dict({
            "playbook_id": "survey",
            "version": "1",
            "intent_schema": {"enabled": {"type": "boolean", "default": False}},
            "steps": [
                {"step_id": "form", "artifact_type": "form", "if": "@intent.enabled",
                 "skip_reason": "Survey disabled."},
                {"step_id": "page", "artifact_type": "page", "depends_on": ["form"],
                 "inputs": {"formId": "@steps.form.artifact_id"}},
            ],
        }))
        runtime = _runtime(store, playbooks=registry)
        bundle = runtime.create_experience("survey", {})

        page = bundle.get_step("page")
        assert page.status == StepStatus.SKIPPED
        assert page.failure_reason == "Dependency 'form' was skipped: Survey disabled."
        assert bundle.status == ExperienceStatus.FAILED
        assert store.count() == 0


class TestFailFast:
    """With fail_fast, nothing new starts after a required step fails."""

    def test_pending_steps_skipped(self, store, event_intent):
        runtime = _runtime(store, max_fan_out=1, product=FailingHandler())
        bundle = runtime.create_experience("event", event_intent, fail_fast=True)

        assert bundle.status == ExperienceStatus.FAILED
        assert bundle.fail_fast
        assert bundle.get_step("product:1").status == StepStatus.FAILED
        assert bundle.get_step("ticket:1").status == StepStatus.BLOCKED
        for step_id in ("form", "checkout"):
            entry = bundle.get_step(step_id)
            assert entry.status == StepStatus.SKIPPED
            assert entry.attempts == 0
            assert entry.failure_reason == "Skipped after required step 'product:1' failed (fail fast)"
        assert store.count() == 1

    def test_off_by_default(self, store, event_intent):
        runtime = _runtime(store, max_fan_out=1, product=FailingHandler())
        bundle = runtime.create_experience("event", event_intent)
        assert not bundle.fail_fast
        assert bundle.get_step("form").status == StepStatus.SUCCEEDED
        assert bundle.get_step("checkout").status == StepStatus.BLOCKED

    def test_runtime_default(self, store, event_intent):
        runtime = _runtime(store, max_fan_out=1, fail_fast=True, product=FailingHandler())
        assert runtime.create_experience("event", event_intent).fail_fast
        # Per-run override
        bundle = runtime.create_experience("event", event_intent, experience_id="exp-2", fail_fast=False)
        assert not bundle.fail_fast

    def test_optional_failure_does_not_stop(self, store, event_intent):
        runtime = _runtime(store, max_fan_out=1, form=FailingHandler())
        bundle = runtime.create_experience("event", event_intent, fail_fast=True)
        assert not bundle.fail_fast
        assert bundle.get_step("form").status == StepStatus.FAILED
        assert bundle.get_step("checkout").status == StepStatus.SUCCEEDED
        assert bundle.status == ExperienceStatus.PARTIAL

    def test_explicit_skips_keep_their_reason(self, store, event_intent):
        runtime = _runtime(store, max_fan_out=1, event=FailingHandler())
        bundle = runtime.create_experience(
            "event", {**event_intent, "items": [{"type": "webinar"}]}, fail_fast=True
        )
        assert "not supported" in bundle.get_step("unsupported:1").failure_reason
        assert bundle.get_step("product:1").status == StepStatus.BLOCKED


class TestUnsupportedTypes:
    """Unsupported auxiliary items never touch the store."""

    def test_partial_with_one_skipped(self, runtime, store, event_intent):
        bundle = runtime.create_experience(
            "event", {**event_intent, "items": [{"type": "webinar", "name": "Replay"}]}
        )
        assert bundle.status == ExperienceStatus.PARTIAL
        skipped = bundle.steps_with_status(StepStatus.SKIPPED)
        assert [e.step_id for e in skipped] == ["unsupported:1"]
        assert "not supported" in skipped[0].failure_reason
        assert skipped[0].attempts == 0
        assert len(bundle.artifacts) == 5
        assert store.count() == 5


class TestNameCollision:
    """Duplicate name policies."""

    @pytest.fixture
    def existing_product(self, store):
        return store.create("product", {}, name="Launch Party Admission")

    def test_fail_policy(self, runtime, store, event_intent, existing_product):
        bundle = runtime.create_experience("event", {**event_intent, "duplicateStrategy": "fail_on_duplicate"})

        assert bundle.status == ExperienceStatus.FAILED
        product = bundle.get_step("product:1")
        assert product.status == StepStatus.FAILED
        assert product.error_type == "NameCollisionError"
        assert existing_product.artifact_id in product.failure_reason
        assert bundle.get_step("ticket:1").status == StepStatus.BLOCKED
        assert bundle.get_step("checkout").status == StepStatus.BLOCKED
        assert store.count("product") == 1

    def test_name_reuse_policy(self, runtime, store, event_intent, existing_product):
        bundle = runtime.create_experience("event", event_intent)

        assert bundle.status == ExperienceStatus.COMPLETE
        product = bundle.get_step("product:1")
        assert product.duplicate_resolution == Resolution.NAME_REUSE
        assert product.artifact_id == existing_product.artifact_id
        assert not product.created
        assert store.count("product") == 1
        assert store.get(existing_product.artifact_id)["signatures"] == [product.signature]

    def test_signature_replay_policy_treats_collision_as_failure(self, runtime, store, shop_playbooks):
        store.create("product", {}, name="Mug")
        runtime = _runtime(store, playbooks=shop_playbooks)
        bundle = runtime.create_experience("shop", {"title": "Mug"})
        assert bundle.get_step("product:1").error_type == "NameCollisionError"

    def test_same_name_steps_run_in_recipe_order(self, runtime, store, event_intent):
        intent = {
            **event_intent,
            "ticketTiers": [{"name": "General"}],
            "items": [{"type": "product", "name": "General"}],
        }
        bundle = runtime.create_experience("event", intent)
        assert bundle.get_step("product:1").created
        second = bundle.get_step("product:2")
        assert second.duplicate_resolution == Resolution.NAME_REUSE
        assert second.artifact_id == bundle.get_step("product:1").artifact_id
        assert store.count("product") == 1


# =============================================================================
# RETRIES AND TIMEOUTS
# =============================================================================


class TestRetries:
    """Transient failures are retried per strategy."""

    def test_checkout_succeeds_on_second_attempt(self, store, event_intent):
        sleeps = []
        flaky = FlakyHandler(store, failures=1)
        runtime = _runtime(store, sleeps, checkout=flaky)
        bundle = runtime.create_experience("event", event_intent)

        assert bundle.status == ExperienceStatus.COMPLETE
        checkout = bundle.get_step("checkout")
        assert checkout.status == StepStatus.SUCCEEDED
        assert checkout.attempts == 2
        assert checkout.retry_strategy == RetryStrategy.FIXED
        assert flaky.calls == 2
        assert sleeps == [0.5]
        assert store.count("checkout") == 1

    def test_gives_up_after_max_attempts(self, store, event_intent):
        flaky = FlakyHandler(store, failures=10)
        runtime = _runtime(store, checkout=flaky)
        bundle = runtime.create_experience("event", event_intent)

        checkout = bundle.get_step("checkout")
        assert checkout.status == StepStatus.FAILED
        assert checkout.attempts == 3
        assert "gave up after 3 attempts" in checkout.failure_reason
        assert bundle.status == ExperienceStatus.FAILED

    def test_runtime_max_attempts_caps_steps(self, store, event_intent):
        flaky = FlakyHandler(store, failures=10)
        runtime = _runtime(store, checkout=flaky, max_attempts=2)
        bundle = runtime.create_experience("event", event_intent)
        assert bundle.get_step("checkout").attempts == 2

    def test_non_retryable_step_fails_once(self, store, shop_playbooks):
        flaky = FlakyHandler(store, failures=1)
        runtime = _runtime(store, playbooks=shop_playbooks, product=flaky)
        bundle = runtime.create_experience("shop", {"title": "Mug"})
        assert bundle.get_step("product:1").attempts == 1
        assert bundle.get_step("product:1").status == StepStatus.FAILED

    def test_exponential_backoff(self, store, event_intent):
        sleeps = []
        flaky = FlakyHandler(store, failures=2)
        runtime = _runtime(store, sleeps, event=flaky)
        bundle = runtime.create_experience("event", event_intent)
        assert bundle.get_step("event").attempts == 3
        assert sleeps == [0.5, 1.0]

    def test_retry_policy_delays(self):
        policy = RetryPolicy(backoff_base_s=1.0, backoff_max_s=5.0)
        assert policy.delay(RetryStrategy.FIXED, 3) == 1.0
        assert [policy.delay(RetryStrategy.EXPONENTIAL, n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]
        assert policy.delay(RetryStrategy.NONE, 1) == 0.0


class TestTimeouts:
    """Attempts that exceed their timeout are transient failures."""

    def test_timeout_fails_step(self, store, event_intent):
        slow = SlowHandler(store, delay=1.0)
        runtime = _runtime(store, form=slow, step_timeout_s=0.2, max_attempts=1)
        bundle = runtime.create_experience("event", event_intent)

        form = bundle.get_step("form")
        assert form.status == StepStatus.FAILED
        assert form.error_type == "StepTimeoutError"
        assert "timed out" in form.failure_reason
        # form is optional; checkout only follows it softly
        assert bundle.get_step("checkout").status == StepStatus.SUCCEEDED
        assert bundle.status == ExperienceStatus.PARTIAL

    def test_retry_after_timeout_observes_replay(self, store, event_intent):
        slow = SlowHandler(store, delay=0.5, slow_calls=1)
        runtime = _runtime(store, form=slow, step_timeout_s=0.4)
        bundle = runtime.create_experience("event", event_intent)

        form = bundle.get_step("form")
        assert form.status == StepStatus.SUCCEEDED
        assert form.attempts == 2
        assert form.duplicate_resolution == Resolution.SIGNATURE_REPLAY
        assert slow.calls == 1
        assert store.count("form") == 1


# =============================================================================
# AUTHORIZATION AND GUARDRAILS
# =============================================================================


class TestAuthorization:
    """Billing refusals fail the step without retries."""

    def test_denied_checkout(self, store, event_intent):
        runtime = _runtime(store, billing=DenyTypeGate("checkout"))
        bundle = runtime.create_experience("event", event_intent)

        checkout = bundle.get_step("checkout")
        assert checkout.status == StepStatus.FAILED
        assert checkout.error_type == "AuthorizationDenied"
        assert checkout.attempts == 1
        assert "plan does not include checkout" in checkout.failure_reason
        assert store.count("checkout") == 0
        assert bundle.status == ExperienceStatus.FAILED

    def test_empty_budget_creates_nothing(self, store, event_intent):
        runtime = _runtime(store, billing=CreditBudgetGate(0))
        bundle = runtime.create_experience("event", event_intent)
        assert bundle.get_step("event").error_type == "AuthorizationDenied"
        assert "insufficient credits" in bundle.get_step("event").failure_reason
        assert store.count() == 0

    def test_replay_is_not_charged(self, store, event_intent):
        gate = CreditBudgetGate(5)
        runtime = _runtime(store, billing=gate)
        runtime.create_experience("event", event_intent, experience_id="exp-1")
        assert gate.remaining == 0
        bundle = runtime.create_experience("event", event_intent, experience_id="exp-1")
        assert bundle.status == ExperienceStatus.COMPLETE

    def test_retry_is_charged_once(self, store, event_intent):
        gate = CreditBudgetGate(5)
        flaky = FlakyHandler(store, failures=1)
        runtime = _runtime(store, billing=gate, checkout=flaky)
        bundle = runtime.create_experience("event", event_intent)

        assert bundle.status == ExperienceStatus.COMPLETE
        assert bundle.get_step("checkout").attempts == 2
        assert flaky.calls == 2
        assert gate.remaining == 0


class TestPublishGuardrails:
    """Publishing waits for the required steps."""

    def test_guardrail_blocks_publish(self, store, shop_playbooks):
        runtime = _runtime(store, playbooks=shop_playbooks, product=FailingHandler())
        bundle = runtime.create_experience("shop", {"title": "Mug"})

        checkout = bundle.get_step("checkout")
        assert checkout.status == StepStatus.FAILED
        assert checkout.error_type == "PublishGuardrailError"
        assert "checkout_requires_product" in checkout.failure_reason
        assert "product:1" in checkout.failure_reason
        assert store.count("checkout") == 0

    def test_guardrail_satisfied(self, store, shop_playbooks):
        runtime = _runtime(store, playbooks=shop_playbooks)
        bundle = runtime.create_experience("shop", {"title": "Mug"})
        assert bundle.status == ExperienceStatus.COMPLETE
        assert bundle.artifact_for("checkout").status == CanonicalStatus.PUBLISHED


# =============================================================================
# CANCELLATION
# =============================================================================


class TestCancellation:
    """Cancelled experiences stop scheduling and report what exists."""

    def test_cancel_mid_run(self, store, event_intent):
        token = CancellationToken()
        runtime = _runtime(store, product=CancellingHandler(store, token))
        bundle = runtime.create_experience("event", event_intent, cancel_token=token)

        assert bundle.cancelled
        assert bundle.to_dict()["cancelled"] is True
        for step_id in ("ticket:1", "checkout"):
            entry = bundle.get_step(step_id)
            assert entry.status == StepStatus.SKIPPED
            assert entry.failure_reason == CANCELLED_REASON
        product = bundle.artifact_for("product:1")
        assert product is not None
        assert product.informational
        assert bundle.status == ExperienceStatus.FAILED

    def test_cancel_before_start(self, runtime, store, event_intent):
        token = CancellationToken()
        token.cancel()
        bundle = runtime.create_experience("event", event_intent, cancel_token=token)
        assert all(e.failure_reason == CANCELLED_REASON for e in bundle.step_log)
        assert store.count() == 0


# =============================================================================
# EXPERIENCE-LEVEL ERRORS
# =============================================================================


class TestExperienceErrors:
    """Errors that abort before any step runs."""

    def test_invalid_intent(self, runtime, store):
        with pytest.raises(IntentValidationError) as exc_info:
            runtime.create_experience("event", {"date": "tomorrow"}, experience_id="exp-1")
        assert exc_info.value.experience_id == "exp-1"
        assert exc_info.value.fields == ["eventName", "date"]
        assert store.count() == 0

    def test_unknown_playbook(self, runtime):
        with pytest.raises(UnknownPlaybookError) as exc_info:
            runtime.create_experience("webinar", {}, experience_id="exp-1")
        assert exc_info.value.experience_id == "exp-1"

    def test_cyclic_recipe(self, store):
        registry = PlaybookRegistry()
        registry.register(DeclarativePlaybook.from_dict({
            "playbook_id": "loop",
            "version": "1",
            "steps": [
                {"step_id": "a", "artifact_type": "event", "depends_on": ["b"]},
                {"step_id": "b", "artifact_type": "form", "depends_on": ["a"]},
            ],
        }))
        runtime = _runtime(store, playbooks=registry)
        with pytest.raises(InvalidRecipeError) as exc_info:
            runtime.create_experience("loop", {}, experience_id="exp-1")
        assert exc_info.value.experience_id == "exp-1"
        assert store.count() == 0

    def test_unregistered_artifact_type(self, store):
        registry = PlaybookRegistry()
        registry.register(DeclarativePlaybook.from_dict({
            "playbook_id": "webinar",
            "version": "1",
            "steps": [{"step_id": "w", "artifact_type": "webinar"}],
        }))
        runtime = _runtime(store, playbooks=registry)
        with pytest.raises(UnknownStatusMapping):
            runtime.create_experience("webinar", {})

    def test_start_experience_does_not_run(self, runtime, store, event_intent):
        started = []
        experience = runtime.start_experience("Event", event_intent)
        assert experience.playbook_id == "event"
        assert store.count() == 0

        bundle = runtime.run_experience(experience, on_start=started.append)
        assert started == [experience]
        assert bundle.experience_id == experience.experience_id

    def test_plan(self, runtime, event_intent):
        experience = runtime.start_experience("event", event_intent)
        assert runtime.plan(experience).step_ids == EVENT_STEPS


class TestFromConfig:
    """Runtime built from configuration."""

    def test_from_config(self, tmp_path, event_intent):
        config = ExporchestraConfig(store_path=str(tmp_path / "store"), max_fan_out=2, credit_budget=3)
        runtime = Runtime.from_config(config, sleep=lambda s: None)
        assert isinstance(runtime.store, FileArtifactStore)
        bundle = runtime.create_experience("event", event_intent)
        assert bundle.summary["created"] == 3
        assert bundle.status == ExperienceStatus.FAILED

    def test_invalid_fan_out(self):
        with pytest.raises(ValueError):
            Runtime(max_fan_out=0)

    def test_fail_fast_from_config(self, tmp_path, event_intent):
        config = ExporchestraConfig(store_path=str(tmp_path / "store"), max_fan_out=1, fail_fast=True)
        runtime = Runtime.from_config(config, sleep=lambda s: None)
        runtime._broker.register("product", FailingHandler())
        bundle = runtime.create_experience("event", event_intent)
        assert bundle.fail_fast
        assert bundle.get_step("checkout").status == StepStatus.SKIPPED
