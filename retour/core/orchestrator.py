"""Pipeline orchestrator — the exposed surface of the core.

Wires the run store, phase machine, job ledger, validation engine,
learning engine and retry orchestrator into one object.  Every public
operation takes identifiers and small JSON-able payloads and is safe to
repeat: starting a run twice returns the same run, a duplicate trigger
is a no-op, and a duplicate job request reports ``AlreadyRunning``.

``execute_step`` runs one step end to end:

    acquire -> generate -> validate -> learn -> retry decision -> phase commit
"""

from __future__ import annotations

import logging
import time
import traceback
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict

from retour.config import RetourSettings
from retour.core.collaborators import (
    CollaboratorCaller,
    CollaboratorError,
    GenerationRequest,
    GenerationResult,
    GenerationService,
    JudgeService,
)
from retour.core.hasher import compute_idempotency_key
from retour.core.job_ledger import JobLedger, RetryBudgetExhaustedError
from retour.core.phase_machine import IllegalTransitionError, PhaseMachine, StalePhaseError
from retour.core.production_guard import enforce_production_constraints
from retour.core.run_store import RunStore
from retour.learning.escalation import LearningEngine
from retour.learning.rule_store import RuleStore
from retour.models.artifacts import Artifact
from retour.models.jobs import AlreadyRunning, HumanDecision, Job, JobStatus, LockToken
from retour.models.phases import TRANSITION_TABLE, Phase, PhaseTrigger
from retour.models.runs import Run, StepOutput, artifact_step_output, parse_step_output
from retour.models.verdicts import ComparisonVerdict, Expectations
from retour.observability.dispatcher import TraceDispatcher
from retour.observability.events import TraceEvent, TraceKind
from retour.observability.sinks import JsonlTraceSink
from retour.recovery.retry import RetryAction, RetryDecision, RetryOrchestrator
from retour.validation.engine import ComparisonEngine

logger = logging.getLogger(__name__)


class StepExecution(BaseModel):
    """Outcome of ``execute_step``."""

    model_config = ConfigDict(frozen=True)

    run: Run
    contention: AlreadyRunning | None = None
    artifact: Artifact | None = None
    verdict: ComparisonVerdict | None = None
    decision: RetryDecision | None = None

    @property
    def accepted(self) -> bool:
        return self.decision is not None and self.decision.action == RetryAction.PROCEED


class Orchestrator:
    """Central coordinator for pipeline runs.

    Parameters
    ----------
    config:
        Runtime settings.  A fresh ``RetourSettings()`` if not provided.
    generator:
        Generation collaborator used by ``execute_step``.
    judge:
        Semantic judge collaborator used by the validation engine.
    tracer:
        Trace dispatcher.  Defaults to one JSONL sink at
        ``config.trace_log_path``.
    sleep:
        Sleep function used for backoff, injectable for tests.
    """

    def __init__(
        self,
        config: RetourSettings | None = None,
        *,
        generator: GenerationService | None = None,
        judge: JudgeService | None = None,
        tracer: TraceDispatcher | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or RetourSettings()

        # Fails hard if production constraints are violated
        enforce_production_constraints(self.config)

        self.tracer = tracer or TraceDispatcher([JsonlTraceSink(self.config.trace_log_path)])
        self._sleep = sleep
        self._generator = generator

        db_path = self.config.database_path
        self.runs = RunStore(db_path)
        self.jobs = JobLedger(
            db_path,
            lock_ttl_seconds=self.config.lock_ttl_seconds,
            default_max_attempts=self.config.default_max_attempts,
        )
        self.rules = RuleStore(db_path)
        self.machine = PhaseMachine(self.runs, self.tracer)
        self.learning = LearningEngine(
            self.rules,
            user_promotion_min_runs=self.config.user_promotion_min_runs,
            global_promotion_min_owners=self.config.global_promotion_min_owners,
        )
        self.engine = ComparisonEngine(
            judge,
            caller=self._caller(self.config.judge_timeout_seconds),
            tracer=self.tracer,
        )
        self.retry = RetryOrchestrator(
            self.jobs,
            self.runs,
            self.learning,
            max_total_attempts_per_run=self.config.max_total_attempts_per_run,
            backoff_base=self.config.backoff_base_seconds,
            backoff_max=self.config.backoff_max_seconds,
            tracer=self.tracer,
        )
        self._generation_caller = self._caller(self.config.generation_timeout_seconds)

    def _caller(self, timeout: float) -> CollaboratorCaller:
        return CollaboratorCaller(
            timeout_seconds=timeout,
            max_retries=self.config.collaborator_max_retries,
            backoff_base=self.config.backoff_base_seconds,
            backoff_max=self.config.backoff_max_seconds,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start_run(self, owner_id: str, run_id: str | None = None) -> Run:
        """Create a run and move it to the first pending phase.

        Calling again with the same ``run_id`` returns the existing run.
        """
        if run_id is None:
            ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
            run_id = f"rt-{ts}-{uuid.uuid4().hex[:6]}"
        run = self.runs.create_run(Run(run_id=run_id, owner_id=owner_id))
        if run.phase == Phase.UPLOAD:
            run = self.machine.transition(
                run_id, PhaseTrigger.BEGIN, expected_phase=Phase.UPLOAD
            )
            logger.info("Started run %s for %s", run_id, owner_id)
        return run

    def request_transition(
        self,
        run_id: str,
        trigger: PhaseTrigger | str,
        expected_phase: Phase | str,
    ) -> Run:
        return self.machine.transition(
            run_id, PhaseTrigger(trigger), expected_phase=Phase(expected_phase)
        )

    def pause(self, run_id: str) -> Run:
        return self.machine.pause(run_id)

    def resume(self, run_id: str) -> Run:
        return self.machine.resume(run_id)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def request_job(
        self,
        run_id: str,
        step_id: int,
        service: str,
        idempotency_key: str | None = None,
        holder: str | None = None,
        *,
        payload_ref: list[str] | None = None,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> LockToken | AlreadyRunning:
        """Acquire the job for (run, step, service) on behalf of ``holder``.

        Raises
        ------
        RunPausedError
            If the run is paused.
        StalePhaseError
            If the run is not at ``step_id``.
        """
        run = self.machine.assert_dispatchable(run_id)
        if run.step != step_id:
            raise StalePhaseError(
                f"Run {run_id} is at step {run.step} ({run.phase.value}); "
                f"cannot dispatch work for step {step_id}"
            )
        key = idempotency_key or compute_idempotency_key(
            run_id, step_id, service, {"payload_ref": payload_ref or []}
        )
        outcome = self.jobs.acquire_job(
            run_id,
            step_id,
            service,
            key,
            holder=holder or f"worker-{uuid.uuid4().hex[:8]}",
            payload_ref=payload_ref,
            max_attempts=max_attempts,
            now=now,
        )
        if isinstance(outcome, LockToken):
            self.tracer.emit(
                TraceEvent.for_step(
                    TraceKind.JOB_LOCK,
                    run_id,
                    step_id,
                    attempt_index=outcome.attempt,
                    metadata={
                        "job_id": outcome.job_id,
                        "service": service,
                        "holder": outcome.holder,
                        "reclaimed": outcome.reclaimed,
                    },
                )
            )
        return outcome

    def submit_verdict(
        self,
        token: LockToken,
        artifact: Artifact,
        verdict: ComparisonVerdict,
        *,
        now: datetime | None = None,
    ) -> RetryDecision:
        """Persist a verdict, feed learning, and apply the retry policy."""
        now = now or datetime.now(timezone.utc)
        self.runs.put_artifact(artifact)
        self.runs.save_verdict(verdict)
        run = self.machine.current(token.run_id)
        self.learning.record_verdict(run, verdict, now=now)
        context = self.learning.policy_context(
            run.owner_id, run.run_id, token.step_id, service=token.service, now=now
        )
        return self.retry.handle_verdict(
            token, artifact, verdict, policy_context=context, now=now
        )

    def record_override(
        self,
        job_id: str,
        decision: HumanDecision | str,
        actor: str,
        notes: str = "",
        artifact_id: str | None = None,
    ) -> Job:
        """Approve or reject a blocked job.

        Approval accepts the step as it stands: ``artifact_id`` (or the
        best artifact the job produced) becomes the step output and the
        step commits its finished phase, so the run can ``continue``.
        Rejection leaves the run at the step's pending phase.
        """
        human = HumanDecision(decision)
        job = self.retry.record_human_decision(job_id, human, actor, notes, artifact_id)
        if human == HumanDecision.APPROVE:
            self._finish_approved_step(job, artifact_id)
        return job

    def _finish_approved_step(self, job: Job, artifact_id: str | None) -> Run:
        run = self.machine.current(job.run_id)
        if run.step != job.step_id:
            logger.warning(
                "Run %s is at step %d; approval of job %s (step %d) does not move it",
                run.run_id, run.step, job.job_id, job.step_id,
            )
            return run
        chosen = artifact_id or self.retry.best_artifact(job.job_id)
        output = artifact_step_output(job.step_id, chosen) if chosen else None
        if output is not None:
            self.runs.record_step_output(run.run_id, job.step_id, output)
        self.runs.set_last_error(run.run_id, None)
        if (run.phase, PhaseTrigger.START) in TRANSITION_TABLE:
            run = self.machine.transition(
                run.run_id, PhaseTrigger.START, expected_phase=run.phase
            )
        run = self.machine.transition(run.run_id, PhaseTrigger.FINISH, expected_phase=run.phase)
        logger.info(
            "Run %s step %d approved by override (artifact %s); now %s",
            run.run_id, job.step_id, chosen, run.phase.value,
        )
        return run

    def reap_expired(self, now: datetime | None = None) -> list[str]:
        return self.jobs.reap_expired(now)

    # ------------------------------------------------------------------
    # End-to-end step execution
    # ------------------------------------------------------------------

    def execute_step(
        self,
        run_id: str,
        service: str,
        expectations: Expectations | None = None,
        *,
        prompt: str = "",
        input_artifact_ids: list[str] | None = None,
        holder: str | None = None,
        idempotency_key: str | None = None,
    ) -> StepExecution:
        """Run the current step of a run to acceptance, a block, or contention.

        The run must be at the pending or running phase of a generated
        step.  Retries happen in-process with backoff until the verdict
        passes or the retry budget is spent.

        Raises
        ------
        IllegalTransitionError
            If the run is not at a phase where work can execute.
        CollaboratorError
            If generation or the judge keeps failing; the job row carries
            the error context and the step returns to pending.
        RetryBudgetExhaustedError
            If the step's job has no attempts left; the job is blocked for
            a human and the step returns to pending.
        """
        if self._generator is None:
            raise RuntimeError("execute_step requires a generation service")
        expectations = expectations or Expectations()
        run = self.machine.assert_dispatchable(run_id)
        step_id = run.step
        running = self._running_phase(run)

        try:
            outcome = self.request_job(
                run_id,
                step_id,
                service,
                idempotency_key,
                holder,
                payload_ref=input_artifact_ids,
            )
        except RetryBudgetExhaustedError as exc:
            # a crashed attempt can leave the step at its running phase
            self.runs.set_last_error(run_id, str(exc))
            if run.phase == running:
                self.machine.transition(run_id, PhaseTrigger.FAIL, expected_phase=running)
            raise
        if isinstance(outcome, AlreadyRunning):
            logger.warning(
                "Run %s step %d already handled by %s (%s)",
                run_id, step_id, outcome.lock_holder, outcome.reason.value,
            )
            return StepExecution(run=self.machine.current(run_id), contention=outcome)
        token = outcome
        job_key = self.jobs.get_job(token.job_id).idempotency_key

        if run.phase != running:
            try:
                run = self.machine.transition(
                    run_id, PhaseTrigger.START, expected_phase=run.phase
                )
            except StalePhaseError:
                self.jobs.release_job(token, JobStatus.FAILED, error="phase moved before start")
                raise

        adjustments: list[str] = []
        settings: dict[str, Any] = {}
        seed: int | None = None
        while True:
            try:
                result = self._generate(
                    token, prompt, input_artifact_ids or [], adjustments, settings, seed
                )
                step_output = self._parse_step_output(token, result)
                policy = self.learning.policy_context(
                    run.owner_id, run_id, step_id, service=service
                )
                verdict = self.engine.validate(
                    result.artifact,
                    expectations,
                    policy,
                    analysis=result.analysis,
                    run_id=run_id,
                    step_id=step_id,
                    attempt=token.attempt,
                )
            except CollaboratorError as exc:
                self._fail_step(token, running, exc)
                raise

            decision = self.submit_verdict(token, result.artifact, verdict)

            if decision.action == RetryAction.PROCEED:
                if step_output is not None:
                    self.runs.record_step_output(run_id, step_id, step_output.model_dump())
                self.runs.set_last_error(run_id, None)
                run = self.machine.transition(run_id, PhaseTrigger.FINISH, expected_phase=running)
                return StepExecution(
                    run=run, artifact=result.artifact, verdict=verdict, decision=decision
                )

            if decision.action == RetryAction.BLOCKED:
                self.runs.set_last_error(run_id, decision.reason[:2000])
                run = self.machine.transition(run_id, PhaseTrigger.FAIL, expected_phase=running)
                return StepExecution(
                    run=run, artifact=result.artifact, verdict=verdict, decision=decision
                )

            instructions = decision.instructions
            if instructions is not None:
                adjustments = list(instructions.prompt_adjustments)
                settings = {k: v for k, v in instructions.settings.items() if k != "seed"}
                seed = instructions.seed
            self._sleep(decision.delay_seconds)
            reacquired = self.jobs.acquire_job(
                run_id, step_id, service, job_key, holder=token.holder
            )
            if isinstance(reacquired, AlreadyRunning):
                logger.warning(
                    "Retry of job %s lost to %s", token.job_id, reacquired.lock_holder
                )
                return StepExecution(
                    run=self.machine.current(run_id),
                    contention=reacquired,
                    artifact=result.artifact,
                    verdict=verdict,
                    decision=decision,
                )
            logger.debug("Reacquired %s for attempt %d", token.job_id, reacquired.attempt)
            token = reacquired

    def _running_phase(self, run: Run) -> Phase:
        if (run.phase, PhaseTrigger.START) in TRANSITION_TABLE:
            return TRANSITION_TABLE[(run.phase, PhaseTrigger.START)]
        if (run.phase, PhaseTrigger.FAIL) in TRANSITION_TABLE:
            return run.phase
        raise IllegalTransitionError(
            f"Run {run.run_id} is at {run.phase.value}; no generation work runs there"
        )

    def _generate(
        self,
        token: LockToken,
        prompt: str,
        input_artifact_ids: list[str],
        adjustments: list[str],
        settings: dict[str, Any],
        seed: int | None,
    ) -> GenerationResult:
        assert self._generator is not None
        generator = self._generator
        request = GenerationRequest(
            run_id=token.run_id,
            step_id=token.step_id,
            attempt=token.attempt,
            input_artifact_ids=input_artifact_ids,
            prompt=prompt,
            prompt_adjustments=adjustments,
            settings=settings,
            seed=seed,
        )
        started = time.monotonic()
        result = self._generation_caller.call(
            lambda: generator.generate(request),
            service=token.service,
            run_id=token.run_id,
            step_id=token.step_id,
            attempt=token.attempt,
        )
        self.tracer.emit(
            TraceEvent.for_step(
                TraceKind.GENERATION,
                token.run_id,
                token.step_id,
                attempt_index=token.attempt,
                model_name=result.model_name or None,
                prompt_name=result.prompt_name,
                latency_ms=int((time.monotonic() - started) * 1000),
                metadata={"artifact_id": result.artifact.artifact_id},
            )
        )
        return result.model_copy(
            update={"artifact": result.artifact.model_copy(update={"job_id": token.job_id})}
        )

    @staticmethod
    def _parse_step_output(token: LockToken, result: GenerationResult) -> StepOutput | None:
        if result.step_output is None:
            return None
        try:
            return parse_step_output(token.step_id, result.step_output)
        except ValueError as exc:
            raise CollaboratorError(
                f"{token.service} returned an unusable step output: {exc}",
                run_id=token.run_id,
                step_id=token.step_id,
                attempt=token.attempt,
                service=token.service,
            ) from exc

    def _fail_step(self, token: LockToken, running: Phase, exc: CollaboratorError) -> None:
        """Record a collaborator failure on the job and return the step to pending."""
        message = f"{exc} ({exc.context()})"
        trace = "".join(traceback.format_exception(exc))
        logger.error("Step %d of run %s failed: %s", token.step_id, token.run_id, message)
        self.jobs.record_failure_context(token, message, trace)
        self.jobs.release_job(token, JobStatus.FAILED, error=message, trace=trace)
        self.runs.set_last_error(token.run_id, message)
        self.machine.transition(token.run_id, PhaseTrigger.FAIL, expected_phase=running)
