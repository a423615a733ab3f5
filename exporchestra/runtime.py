"""
Runtime - executes one experience from intent to ArtifactBundle.

The Runtime implements:
- Intent validation and recipe derivation via the playbook adapter
- Recipe validation (graph rules + contract registry) before any step runs
- Dependency-ordered scheduling on a bounded thread pool
- Per-step idempotency: index resolution inside the signature guard
- Publish guardrails before every create, billing authorization once per step
- Retries of transient failures per step retry strategy
- Attempt timeouts and cooperative cancellation
- Optional fail-fast: pending steps are skipped once a required step fails
- Bundle assembly with a full step log

Execution flow:
1. start_experience(): resolve the playbook, fix the experience_id
2. derive(): validate intent, build the StepRecipe
3. validate_recipe(): reject cyclic/malformed recipes and unknown types
4. For each ready step (recipe order breaks ties):
   a. Skip steps are stamped skipped
   b. Failed/blocked hard dependency -> blocked; skipped -> skipped
   c. Resolve StepRef markers, compute the signature
   d. Attempt inside guard(signature): Reuse | NameCollision | ProceedNew
   e. Retry transient failures, fail on permanent ones
5. Assemble the ArtifactBundle

The runtime holds no state across experiences; the artifact store is the
only shared state.
"""

import logging
import threading
import time
from concurrent.futures import (
    FIRST_COMPLETED,
    Future,
    ThreadPoolExecutor,
    TimeoutError as FutureTimeoutError,
    wait,
)
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from exporchestra.billing import AllowAllGate, BillingGate, CreditBudgetGate
from exporchestra.broker import ToolBroker, ToolRequest
from exporchestra.config import ExporchestraConfig
from exporchestra.contracts import ContractRegistry
from exporchestra.errors import (
    AuthorizationDenied,
    ExperienceError,
    ExporchestraError,
    InvalidRecipeError,
    NameCollisionError,
    PublishGuardrailError,
    StepTimeoutError,
    UnknownPlaybookError,
    is_transient,
)
from exporchestra.graph import resolve_step_refs, validate_recipe
from exporchestra.idempotency import (
    IdempotencyIndex,
    NameCollision,
    Reuse,
    compute_signature,
)
from exporchestra.playbooks import PlaybookInput
from exporchestra.registry import PlaybookRegistry
from exporchestra.schemas import (
    ArtifactBundle,
    ArtifactReference,
    BundleArtifact,
    CanonicalStatus,
    DuplicateResolution,
    Experience,
    ExperienceStatus,
    PublishGuardrail,
    RecipeError,
    Resolution,
    RetryStrategy,
    Step,
    StepRecipe,
    StepStatus,
    normalize_playbook_id,
    payload_digest,
)
from exporchestra.store import ArtifactStore, FileArtifactStore, InMemoryArtifactStore, generate_ulid

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"

# Scheduler poll interval while waiting on running steps (seconds)
_POLL_INTERVAL = 0.05


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def derive_experience_id(
    playbook_id: str,
    raw_intent: Mapping[str, Any],
    scope: Optional[str] = None,
) -> str:
    """
    Derive a deterministic experience id from the request itself.

    Format: "<playbook>:<scope>:<digest>" or "<playbook>:<digest>", where
    digest is the first 16 hex chars of the payload digest. Callers that
    re-send the same request (same scope) get the same id and therefore
    replay instead of duplicating artifacts.
    """
    digest = payload_digest(dict(raw_intent))[:16]
    playbook = normalize_playbook_id(playbook_id)
    if scope:
        return f"{playbook}:{scope}:{digest}"
    return f"{playbook}:{digest}"


class CancellationToken:
    """
    Cooperative cancellation for a running experience.

    cancel() stops scheduling: pending steps become skipped with reason
    "cancelled"; running steps finish and are recorded as informational.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff timing shared by all steps of a runtime.

    fixed: backoff_base_s between attempts
    exponential: backoff_base_s * 2^(n-1), capped at backoff_max_s
    """
    backoff_base_s: float = 0.5
    backoff_max_s: float = 10.0

    def delay(self, strategy: RetryStrategy, failed_attempt: int) -> float:
        """Delay before the attempt following failed_attempt (1-based)."""
        if strategy == RetryStrategy.FIXED:
            return self.backoff_base_s
        if strategy == RetryStrategy.EXPONENTIAL:
            return min(self.backoff_base_s * (2 ** (failed_attempt - 1)), self.backoff_max_s)
        return 0.0


class Runtime:
    """
    Orchestration runtime.

    Usage:
        runtime = Runtime()
        bundle = runtime.create_experience("event", {"eventName": "Launch", "date": "2026-05-01"})

        # Persist the id before running
        experience = runtime.start_experience("event", intent)
        save(experience.experience_id)
        bundle = runtime.run_experience(experience)

        # From config (file store, declarative playbooks, credit budget)
        runtime = Runtime.from_config(load_config())
    """

    def __init__(
        self,
        playbooks: Optional[PlaybookRegistry] = None,
        store: Optional[ArtifactStore] = None,
        broker: Optional[ToolBroker] = None,
        contracts: Optional[ContractRegistry] = None,
        billing: Optional[BillingGate] = None,
        max_fan_out: int = 4,
        step_timeout_s: Optional[float] = 30.0,
        max_attempts: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        fail_fast: bool = False,
    ):
        """
        Initialize the runtime.

        Args:
            playbooks: Playbook registry (defaults to built-in playbooks)
            store: Artifact store (defaults to in-memory)
            broker: Tool broker (defaults to store-backed handlers for every contract type)
            contracts: Contract registry (defaults to the built-in table)
            billing: Billing gate (defaults to allow-all)
            max_fan_out: Maximum concurrently running steps per experience
            step_timeout_s: Default per-attempt timeout (None disables timeouts)
            max_attempts: Upper bound on attempts for any step (None: step's own limit)
            retry_policy: Backoff timing
            sleep: Sleep function used between retries (injectable for tests)
            fail_fast: Skip steps not yet started once a required step fails
        """
        if max_fan_out < 1:
            raise ValueError("max_fan_out must be >= 1")
        self._contracts = contracts or ContractRegistry.default()
        self._playbooks = playbooks or PlaybookRegistry.create_default()
        self._store = store or InMemoryArtifactStore()
        self._broker = broker or ToolBroker.create_default(self._store, self._contracts)
        self._billing = billing or AllowAllGate()
        self._index = IdempotencyIndex(self._store)
        self._max_fan_out = max_fan_out
        self._step_timeout_s = step_timeout_s
        self._max_attempts = max_attempts
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._fail_fast = fail_fast

    @classmethod
    def from_config(cls, config: ExporchestraConfig, **overrides: Any) -> "Runtime":
        """Build a runtime from an ExporchestraConfig."""
        kwargs: dict[str, Any] = {
            "playbooks": PlaybookRegistry.create_default(config.playbooks_dir),
            "store": FileArtifactStore(config.store_dir),
            "max_fan_out": config.max_fan_out,
            "step_timeout_s": config.step_timeout_s,
            "max_attempts": config.max_attempts,
            "retry_policy": RetryPolicy(config.backoff_base_s, config.backoff_max_s),
            "fail_fast": config.fail_fast,
        }
        if config.credit_budget is not None:
            kwargs["billing"] = CreditBudgetGate(config.credit_budget)
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def store(self) -> ArtifactStore:
        return self._store

    @property
    def playbooks(self) -> PlaybookRegistry:
        return self._playbooks

    @property
    def contracts(self) -> ContractRegistry:
        return self._contracts

    def start_experience(
        self,
        playbook_id: str,
        raw_intent: Mapping[str, Any],
        experience_id: Optional[str] = None,
    ) -> Experience:
        """
        Create an Experience without executing it.

        Raises:
            UnknownPlaybookError: If the playbook is not registered
        """
        experience_id = experience_id or generate_ulid()
        try:
            self._playbooks.get(playbook_id)
        except UnknownPlaybookError as e:
            e.experience_id = experience_id
            raise
        return Experience(
            experience_id=experience_id,
            playbook_id=playbook_id,
            raw_intent=dict(raw_intent) if isinstance(raw_intent, Mapping) else raw_intent,
        )

    def create_experience(
        self,
        playbook_id: str,
        raw_intent: Mapping[str, Any],
        experience_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_start: Optional[Callable[[Experience], None]] = None,
        fail_fast: Optional[bool] = None,
    ) -> ArtifactBundle:
        """
        Run a playbook for an intent and return the bundle.

        Re-running with the same experience_id replays: steps whose
        artifacts exist are reported as signature_replay, none are created twice.

        on_start is called with the experience once its recipe is valid and
        before any step runs. fail_fast overrides the runtime default for
        this run.

        Raises:
            ExperienceError: Unknown playbook, invalid intent or invalid recipe
        """
        experience = self.start_experience(playbook_id, raw_intent, experience_id)
        return self.run_experience(
            experience, cancel_token=cancel_token, on_start=on_start, fail_fast=fail_fast
        )

    def run_experience(
        self,
        experience: Experience,
        cancel_token: Optional[CancellationToken] = None,
        on_start: Optional[Callable[[Experience], None]] = None,
        fail_fast: Optional[bool] = None,
    ) -> ArtifactBundle:
        """Execute a started experience. See create_experience()."""
        intent, recipe = self._derive(experience)
        adapter = self._playbooks.get(experience.playbook_id)
        if fail_fast is None:
            fail_fast = self._fail_fast

        if on_start is not None:
            on_start(experience)

        logger.info(
            f"Experience {experience.experience_id} started ({experience.playbook_id}, {len(recipe)} steps)",
            extra={"stage": "execute", "event": "experience_start", "metadata": {
                "experience_id": experience.experience_id,
                "playbook_id": experience.playbook_id,
                "experience_name": intent.experience_name,
                "steps": recipe.step_ids,
                "fail_fast": fail_fast,
            }},
        )
        execution = _Execution(
            runtime=self,
            experience=experience,
            intent=intent,
            recipe=recipe,
            guardrails=adapter.contract.publish_guardrails,
            cancel_token=cancel_token or CancellationToken(),
            fail_fast=fail_fast,
        )
        bundle = execution.run()
        logger.info(
            f"Experience {experience.experience_id} finished: {bundle.status.value}",
            extra={"stage": "assemble", "event": "experience_finish", "metadata": {
                "experience_id": experience.experience_id,
                "status": bundle.status.value,
                "summary": bundle.summary,
                "duration_ms": bundle.duration_ms,
            }},
        )
        return bundle

    def plan(self, experience: Experience) -> StepRecipe:
        """
        Derive and validate the recipe of an experience without running it.

        Raises:
            ExperienceError: Unknown playbook, invalid intent or invalid recipe
        """
        _, recipe = self._derive(experience)
        return recipe

    def _derive(self, experience: Experience) -> tuple[PlaybookInput, StepRecipe]:
        try:
            adapter = self._playbooks.get(experience.playbook_id)
            try:
                intent, recipe = adapter.derive(experience.raw_intent)
            except RecipeError as e:
                raise InvalidRecipeError(f"Playbook '{adapter.playbook_id}' produced an invalid step: {e}") from e
            validate_recipe(recipe, self._contracts)
        except ExperienceError as e:
            e.experience_id = experience.experience_id
            logger.warning(
                f"Experience {experience.experience_id} rejected: {e}",
                extra={"stage": "plan", "event": "experience_rejected", "metadata": {
                    "experience_id": experience.experience_id,
                    "error_type": type(e).__name__,
                }},
            )
            raise
        return intent, recipe


class _Execution:
    """State of one experience run. Created and discarded per run."""

    def __init__(
        self,
        runtime: Runtime,
        experience: Experience,
        intent: PlaybookInput,
        recipe: StepRecipe,
        guardrails: tuple[PublishGuardrail, ...],
        cancel_token: CancellationToken,
        fail_fast: bool = False,
    ):
        self._rt = runtime
        self._experience = experience
        self._intent = intent
        self._fail_fast = fail_fast
        self._fail_fast_cause: Optional[str] = None
        self._authorized: set[str] = set()
        self._recipe = recipe
        self._guardrails = guardrails
        self._cancel = cancel_token
        self._steps: dict[str, Step] = {spec.step_id: Step(spec=spec) for spec in recipe}
        self._finished: set[str] = set()
        self._informational: set[str] = set()
        self._cancelled = False
        self._attempt_pool: Optional[ThreadPoolExecutor] = None

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def run(self) -> ArtifactBundle:
        started_at = _utcnow()
        pending = list(self._recipe.step_ids)
        running: dict[Future, str] = {}
        fan_out = self._rt._max_fan_out
        attempt_workers = fan_out * max(spec.attempt_limit for spec in self._recipe)

        step_pool = ThreadPoolExecutor(max_workers=fan_out, thread_name_prefix="exporchestra-step")
        self._attempt_pool = ThreadPoolExecutor(
            max_workers=attempt_workers, thread_name_prefix="exporchestra-attempt"
        )
        try:
            while True:
                if self._cancel.cancelled and not self._cancelled:
                    self._on_cancel(pending, running.values())
                self._settle(pending)
                self._launch(pending, running, step_pool)
                if not running:
                    break
                done, _ = wait(list(running), timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    step_id = running.pop(future)
                    # Worker exceptions are recorded on the step; anything here is a bug
                    future.result()
                    self._finished.add(step_id)
        finally:
            step_pool.shutdown(wait=True)
            # Timed-out attempts may still be running; they release their guard when done
            self._attempt_pool.shutdown(wait=False)

        return self._assemble(started_at)

    def _on_cancel(self, pending: list[str], running: Any) -> None:
        self._cancelled = True
        self._informational.update(running)
        for step_id in list(pending):
            self._skip(step_id, CANCELLED_REASON)
            pending.remove(step_id)
        logger.info(
            f"Experience {self._experience.experience_id} cancelled",
            extra={"stage": "execute", "event": "experience_cancelled", "metadata": {
                "experience_id": self._experience.experience_id,
                "running": sorted(self._informational),
            }},
        )

    def _predecessors_done(self, step_id: str) -> bool:
        return all(p in self._finished for p in self._steps[step_id].spec.predecessors)

    def _settle(self, pending: list[str]) -> None:
        """Apply transitions that need no execution: skip steps, blocked and skipped dependents."""
        progressed = True
        while progressed:
            progressed = False
            for step_id in list(pending):
                step = self._steps[step_id]
                spec = step.spec
                if spec.is_skip:
                    self._skip(step_id, spec.skip_reason or "skipped")
                elif not self._predecessors_done(step_id):
                    continue
                else:
                    hard = [self._steps[d] for d in spec.depends_on]
                    failed = next((d for d in hard if d.status.blocks_dependents), None)
                    skipped = next((d for d in hard if d.status == StepStatus.SKIPPED), None)
                    if failed is not None:
                        self._block(step_id, f"Dependency '{failed.step_id}' {failed.status.value}")
                    elif skipped is not None:
                        self._skip(
                            step_id,
                            f"Dependency '{skipped.step_id}' was skipped: {skipped.failure_reason}",
                        )
                    else:
                        continue
                pending.remove(step_id)
                progressed = True
        if self._fail_fast and pending:
            self._stop_after_failure(pending)

    def _stop_after_failure(self, pending: list[str]) -> None:
        """Skip every step not yet started once a required step has failed."""
        if self._fail_fast_cause is None:
            failed = next(
                (s for s in self._recipe.step_ids
                 if s in self._finished
                 and self._steps[s].spec.required
                 and self._steps[s].status == StepStatus.FAILED),
                None,
            )
            if failed is None:
                return
            self._fail_fast_cause = failed
            logger.warning(
                f"Experience {self._experience.experience_id}: required step {failed} failed, "
                f"skipping {len(pending)} pending steps",
                extra={"stage": "execute", "event": "fail_fast", "metadata": {
                    "experience_id": self._experience.experience_id,
                    "step_id": failed,
                    "skipped": list(pending),
                }},
            )
        for step_id in list(pending):
            self._skip(step_id, f"Skipped after required step '{self._fail_fast_cause}' failed (fail fast)")
            pending.remove(step_id)

    def _name_conflict(self, step_id: str) -> bool:
        """True when an earlier, unfinished step produces the same (type, name)."""
        spec = self._steps[step_id].spec
        if not spec.artifact_name:
            return False
        for earlier_id in self._recipe.step_ids[: self._recipe.index_of(step_id)]:
            earlier = self._steps[earlier_id]
            if (
                earlier_id not in self._finished
                and earlier.spec.artifact_type == spec.artifact_type
                and earlier.spec.artifact_name == spec.artifact_name
            ):
                return True
        return False

    def _launch(self, pending: list[str], running: dict[Future, str], pool: ThreadPoolExecutor) -> None:
        ready = [s for s in pending if self._predecessors_done(s)]
        launchable = [s for s in ready if not self._name_conflict(s)]
        # Name conflicts wait for the earlier step unless nothing else can make progress
        if not launchable and ready and not running:
            launchable = ready[:1]
        for step_id in launchable:
            if len(running) >= self._rt._max_fan_out:
                break
            step = self._steps[step_id]
            step.start()
            pending.remove(step_id)
            logger.debug(
                f"Step {step_id} started",
                extra={"stage": "execute", "event": "step_start", "metadata": {
                    "experience_id": self._experience.experience_id,
                    "step_id": step_id,
                }},
            )
            running[pool.submit(self._execute_step, step)] = step_id

    def _skip(self, step_id: str, reason: str) -> None:
        self._steps[step_id].skip(reason)
        self._finished.add(step_id)
        self._log_terminal(self._steps[step_id])

    def _block(self, step_id: str, reason: str) -> None:
        self._steps[step_id].block(reason)
        self._finished.add(step_id)
        self._log_terminal(self._steps[step_id])

    def _log_terminal(self, step: Step) -> None:
        level = logging.WARNING if step.status.blocks_dependents else logging.INFO
        logger.log(
            level,
            f"Step {step.step_id} {step.status.value}"
            + (f": {step.failure_reason}" if step.failure_reason else ""),
            extra={"stage": "execute", "event": f"step_{step.status.value}", "metadata": {
                "experience_id": self._experience.experience_id,
                "step_id": step.step_id,
                "artifact_type": step.artifact_type,
                "attempts": step.attempts,
                "resolution": step.resolution.value,
                "artifact_id": step.artifact.artifact_id if step.artifact else None,
            }},
        )

    # -------------------------------------------------------------------------
    # Step execution (worker threads)
    # -------------------------------------------------------------------------

    def _execute_step(self, step: Step) -> None:
        spec = step.spec
        outputs = {p: self._steps[p].artifact for p in spec.predecessors}
        step.resolved_inputs = resolve_step_refs(spec.inputs, outputs)
        signature = compute_signature(self._experience.experience_id, spec.step_id, step.resolved_inputs)
        step.idempotency_key = signature

        limit = spec.attempt_limit
        if self._rt._max_attempts is not None:
            limit = min(limit, self._rt._max_attempts)
        timeout = spec.timeout_s if spec.timeout_s is not None else self._rt._step_timeout_s

        attempt = 0
        while True:
            attempt += 1
            step.attempts = attempt
            try:
                artifact, resolution, created = self._attempt_with_timeout(step, signature, timeout)
            except Exception as e:
                transient = is_transient(e)
                if transient and attempt < limit and not self._cancel.cancelled:
                    delay = self._rt._retry_policy.delay(spec.retry_strategy, attempt)
                    logger.warning(
                        f"Step {spec.step_id} attempt {attempt}/{limit} failed: {e}. Retrying in {delay}s",
                        extra={"stage": "execute", "event": "step_retry", "metadata": {
                            "experience_id": self._experience.experience_id,
                            "step_id": spec.step_id,
                            "attempt": attempt,
                            "error_type": type(e).__name__,
                            "delay_s": delay,
                        }},
                    )
                    if delay > 0:
                        self._rt._sleep(delay)
                    if self._cancel.cancelled:
                        step.skip(CANCELLED_REASON)
                        self._log_terminal(step)
                        return
                    continue
                reason = str(e)
                if transient and attempt > 1:
                    reason = f"{reason} (gave up after {attempt} attempts)"
                if not isinstance(e, ExporchestraError):
                    logger.error(
                        f"Step {spec.step_id} raised unexpected {type(e).__name__}",
                        exc_info=True,
                        extra={"stage": "execute", "event": "step_error", "metadata": {"step_id": spec.step_id}},
                    )
                step.fail(reason, type(e).__name__)
                self._log_terminal(step)
                return

            if self._cancel.cancelled:
                self._informational.add(spec.step_id)
            step.succeed(artifact, resolution, created)
            self._log_terminal(step)
            return

    def _attempt_with_timeout(
        self,
        step: Step,
        signature: str,
        timeout: Optional[float],
    ) -> tuple[ArtifactReference, Resolution, bool]:
        if timeout is None:
            return self._attempt(step, signature)
        future = self._attempt_pool.submit(self._attempt, step, signature)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            raise StepTimeoutError(step.step_id, timeout)

    def _attempt(self, step: Step, signature: str) -> tuple[ArtifactReference, Resolution, bool]:
        """One attempt: check-and-create inside the signature guard."""
        spec = step.spec
        index = self._rt._index
        with index.guard(signature):
            outcome = index.resolve(signature, spec.artifact_type, spec.artifact_name)

            if isinstance(outcome, Reuse):
                return outcome.artifact, Resolution.SIGNATURE_REPLAY, False

            if isinstance(outcome, NameCollision):
                existing = outcome.artifact
                if spec.duplicate_resolution == DuplicateResolution.NAME_REUSE:
                    adopted = index.adopt(existing, signature)
                    logger.info(
                        f"Step {spec.step_id} adopted existing {spec.artifact_type} '{spec.artifact_name}'",
                        extra={"stage": "execute", "event": "name_reuse", "metadata": {
                            "step_id": spec.step_id,
                            "artifact_id": existing.artifact_id,
                        }},
                    )
                    return adopted, Resolution.NAME_REUSE, False
                logger.warning(
                    f"Step {spec.step_id}: {spec.artifact_type} '{spec.artifact_name}' already exists",
                    extra={"stage": "execute", "event": "name_collision", "metadata": {
                        "step_id": spec.step_id,
                        "artifact_id": existing.artifact_id,
                        "policy": spec.duplicate_resolution.value,
                    }},
                )
                raise NameCollisionError(spec.artifact_type, spec.artifact_name or "", existing.artifact_id)

            self._check_guardrails(step)

            # One charge per step; retries of a failed dispatch reuse it
            if spec.step_id not in self._authorized:
                authorization = self._rt._billing.authorize(spec.artifact_type, spec.cost)
                if not authorization.allowed:
                    raise AuthorizationDenied(spec.artifact_type, authorization.reason or "not authorized")
                self._authorized.add(spec.step_id)

            created = self._rt._broker.dispatch(ToolRequest(
                artifact_type=spec.artifact_type,
                inputs=step.resolved_inputs,
                artifact_name=spec.artifact_name,
                target_status=spec.target_status,
                step_id=spec.step_id,
                signature=signature,
            ))
            stamped = self._rt._store.stamp_signature(created.artifact_id, signature)
            return stamped, Resolution.NONE, True

    def _check_guardrails(self, step: Step) -> None:
        """Refuse to publish while a governing guardrail does not hold."""
        spec = step.spec
        target = self._rt._contracts.normalize_status(spec.target_status, spec.artifact_type)
        if target != CanonicalStatus.PUBLISHED:
            return
        for guardrail in self._guardrails:
            if not guardrail.governs(spec.step_id):
                continue
            required = [s for s in guardrail.matching(self._recipe.step_ids) if s != spec.step_id]
            missing = [s for s in required if self._steps[s].status != StepStatus.SUCCEEDED]
            if missing:
                detail = f"steps not succeeded: {', '.join(missing)}"
                if guardrail.description:
                    detail = f"{detail}. {guardrail.description}"
                raise PublishGuardrailError(guardrail.name, detail)

    # -------------------------------------------------------------------------
    # Bundle assembly
    # -------------------------------------------------------------------------

    def _assemble(self, started_at: datetime) -> ArtifactBundle:
        artifacts: list[BundleArtifact] = []
        for step_id in self._recipe.step_ids:
            step = self._steps[step_id]
            if step.status == StepStatus.SUCCEEDED and step.artifact is not None:
                ref = step.artifact
                if step_id in self._informational:
                    ref = ref.as_informational()
                artifacts.append(BundleArtifact(
                    step_id=step_id,
                    artifact_type=step.artifact_type,
                    artifact_ref=ref,
                    step_status=step.status,
                ))

        steps = [self._steps[s] for s in self._recipe.step_ids]
        if all(s.status == StepStatus.SUCCEEDED for s in steps):
            status = ExperienceStatus.COMPLETE
        elif any(s.spec.required and s.status != StepStatus.SUCCEEDED for s in steps):
            status = ExperienceStatus.FAILED
        else:
            status = ExperienceStatus.PARTIAL

        return ArtifactBundle(
            experience_id=self._experience.experience_id,
            playbook_id=self._experience.playbook_id,
            contract_version=self._rt._contracts.version,
            payload_digest=self._experience.payload_digest,
            status=status,
            artifacts=tuple(artifacts),
            step_log=tuple(s.to_log_entry() for s in steps),
            cancelled=self._cancelled,
            started_at=started_at,
            completed_at=_utcnow(),
            experience_name=self._intent.experience_name,
            detected_item_count=self._intent.detected_item_count,
            unsupported_items=self._intent.unsupported_items,
            fail_fast=self._fail_fast_cause is not None,
        )
