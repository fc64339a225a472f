"""Retry/recovery orchestrator — turns a verdict into a job outcome.

For each validated attempt:

- ``proceed``          -> release the job as completed with the artifact
- ``block_for_human``  -> release the job as blocked with a reason chain
- ``retry``            -> release as failed with corrective instructions,
                          so the next acquire reclaims with ``attempts + 1``
- ``retry`` on a spent budget (per job or per run) -> release as blocked
                          and surface the best artifact seen so far

Every attempt is recorded, accepted or not.  Rule outcomes are fed back
to the learning engine for proceed and for a scheduled retry.  A block,
by policy or by a spent budget, records nothing; the outcome of its last
attempt is recorded once, with the human decision.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict

from retour.core.collaborators import backoff_delay
from retour.core.job_ledger import JobLedger
from retour.core.run_store import RunNotFoundError, RunStore
from retour.learning.escalation import LearningEngine
from retour.learning.injector import CorrectiveInstructions, build_corrective_instructions
from retour.models.artifacts import Artifact
from retour.models.jobs import AttemptRecord, HumanDecision, Job, JobStatus, LockToken
from retour.models.policy import PolicyContext, PromotionLogEntry, PromotionType
from retour.models.verdicts import ComparisonVerdict, Failure, NextStep, Severity
from retour.observability.dispatcher import TraceDispatcher
from retour.observability.events import TraceEvent, TraceKind

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOTAL_ATTEMPTS_PER_RUN = 20


class RetryAction(str, Enum):
    PROCEED = "proceed"
    RETRY = "retry"
    BLOCKED = "blocked"


class RetryDecision(BaseModel):
    """What happens to a job after one validated attempt."""

    model_config = ConfigDict(frozen=True)

    action: RetryAction
    job: Job
    verdict_id: str
    attempt: int
    delay_seconds: float = 0.0
    instructions: CorrectiveInstructions | None = None
    best_artifact_id: str | None = None
    failure_history: list[Failure] = []
    reason: str = ""
    budget_exhausted: bool = False


def _badness(verdict: ComparisonVerdict) -> tuple[int, int, int]:
    return (
        verdict.count(Severity.CRITICAL),
        verdict.count(Severity.HIGH),
        len(verdict.failures),
    )


class RetryOrchestrator:
    """Applies verdicts to jobs and records human decisions.

    Parameters
    ----------
    ledger:
        Job ledger holding the lock being released.
    run_store:
        Store for runs and verdicts (attempt history lookups).
    learning:
        Learning engine receiving rule outcomes and the audit log.
    max_total_attempts_per_run:
        Ceiling on attempts summed over every job of one run.
    backoff_base / backoff_max:
        Parameters of the delay suggested before a retry.
    tracer:
        Optional trace dispatcher for retry-correction events.
    rng:
        Seed source for corrective instructions.
    """

    def __init__(
        self,
        ledger: JobLedger,
        run_store: RunStore,
        learning: LearningEngine,
        *,
        max_total_attempts_per_run: int = DEFAULT_MAX_TOTAL_ATTEMPTS_PER_RUN,
        backoff_base: float = 2.0,
        backoff_max: float = 30.0,
        tracer: TraceDispatcher | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._ledger = ledger
        self._runs = run_store
        self._learning = learning
        self._max_total = max_total_attempts_per_run
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._tracer = tracer
        self._rng = rng or random.Random()

    def handle_verdict(
        self,
        token: LockToken,
        artifact: Artifact,
        verdict: ComparisonVerdict,
        *,
        policy_context: PolicyContext | None = None,
        now: datetime | None = None,
    ) -> RetryDecision:
        """Record the attempt and release the job according to the verdict.

        Raises
        ------
        LockLostError
            If the lock was stolen while the attempt was being validated.
        """
        now = now or datetime.now(timezone.utc)
        run = self._runs.get_run(token.run_id)
        if run is None:
            raise RunNotFoundError(f"Run {token.run_id} does not exist")

        self._ledger.record_attempt(
            AttemptRecord(
                job_id=token.job_id,
                attempt_index=token.attempt,
                artifact_id=artifact.artifact_id,
                verdict_id=verdict.verdict_id,
                accepted=verdict.passed,
                created_at=now,
            )
        )
        next_step = verdict.recommended_next_step

        if next_step == NextStep.PROCEED:
            job = self._ledger.release_job(
                token, JobStatus.COMPLETED, result_ref=[artifact.artifact_id], now=now
            )
            self._learning.record_outcome(
                run, token.step_id, verdict.triggered_rule_ids, approved=True, now=now
            )
            return RetryDecision(
                action=RetryAction.PROCEED,
                job=job,
                verdict_id=verdict.verdict_id,
                attempt=token.attempt,
            )

        if next_step == NextStep.BLOCK_FOR_HUMAN:
            reason = verdict.reason_chain()
            job = self._ledger.release_job(token, JobStatus.BLOCKED, error=reason, now=now)
            logger.warning(
                "Job %s blocked for human review (attempt %d): %d failure(s)",
                token.job_id, token.attempt, len(verdict.failures),
            )
            return RetryDecision(
                action=RetryAction.BLOCKED,
                job=job,
                verdict_id=verdict.verdict_id,
                attempt=token.attempt,
                failure_history=self._failure_history(token.job_id),
                reason=reason,
            )

        run_total = self._ledger.total_attempts(token.run_id)
        if token.attempt < token.max_attempts and run_total < self._max_total:
            self._learning.record_outcome(
                run, token.step_id, verdict.triggered_rule_ids, approved=False, now=now
            )
            return self._schedule_retry(token, verdict, policy_context, now)
        # outcome for this attempt is left to the human decision
        return self._exhausted(token, verdict, run_total, now)

    # ------------------------------------------------------------------
    # Retry paths
    # ------------------------------------------------------------------

    def _schedule_retry(
        self,
        token: LockToken,
        verdict: ComparisonVerdict,
        policy_context: PolicyContext | None,
        now: datetime,
    ) -> RetryDecision:
        next_attempt = token.attempt + 1
        instructions = build_corrective_instructions(
            verdict, next_attempt, policy_context, self._rng
        )
        reason = verdict.reason_chain()
        job = self._ledger.release_job(token, JobStatus.FAILED, error=reason, now=now)
        delay = backoff_delay(token.attempt, self._backoff_base, self._backoff_max)
        logger.info(
            "Job %s scheduled for retry %d/%d in %.0fs",
            token.job_id, next_attempt, token.max_attempts, delay,
        )
        if self._tracer is not None:
            self._tracer.emit(
                TraceEvent.for_step(
                    TraceKind.RETRY_CORRECTION,
                    token.run_id,
                    token.step_id,
                    attempt_index=next_attempt,
                    metadata={
                        "job_id": token.job_id,
                        "changes": list(instructions.changes),
                        "delay_seconds": delay,
                    },
                )
            )
        return RetryDecision(
            action=RetryAction.RETRY,
            job=job,
            verdict_id=verdict.verdict_id,
            attempt=token.attempt,
            delay_seconds=delay,
            instructions=instructions,
            reason=reason,
        )

    def _exhausted(
        self,
        token: LockToken,
        verdict: ComparisonVerdict,
        run_total: int,
        now: datetime,
    ) -> RetryDecision:
        if token.attempt >= token.max_attempts:
            why = f"Retry budget exhausted after {token.attempt} attempt(s)"
        else:
            why = f"Run attempt budget exhausted ({run_total}/{self._max_total})"
        reason = f"{why}\n{verdict.reason_chain()}"
        job = self._ledger.release_job(token, JobStatus.BLOCKED, error=reason, now=now)
        best = self.best_artifact(token.job_id)
        logger.warning("Job %s blocked: %s; best artifact %s", token.job_id, why, best)
        return RetryDecision(
            action=RetryAction.BLOCKED,
            job=job,
            verdict_id=verdict.verdict_id,
            attempt=token.attempt,
            best_artifact_id=best,
            budget_exhausted=True,
            failure_history=self._failure_history(token.job_id),
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Attempt history
    # ------------------------------------------------------------------

    def _attempt_verdicts(self, job_id: str) -> list[tuple[AttemptRecord, ComparisonVerdict]]:
        pairs: list[tuple[AttemptRecord, ComparisonVerdict]] = []
        for record in self._ledger.get_attempts(job_id):
            if record.verdict_id is None:
                continue
            verdict = self._runs.get_verdict(record.verdict_id)
            if verdict is not None:
                pairs.append((record, verdict))
        return pairs

    def best_artifact(self, job_id: str) -> str | None:
        """Fewest critical, then fewest high, then fewest total failures."""
        scored = [
            (_badness(verdict), record.attempt_index, record.artifact_id)
            for record, verdict in self._attempt_verdicts(job_id)
            if record.artifact_id is not None
        ]
        if not scored:
            return None
        return min(scored)[2]

    def _failure_history(self, job_id: str) -> list[Failure]:
        return [
            failure
            for _record, verdict in self._attempt_verdicts(job_id)
            for failure in verdict.failures
        ]

    # ------------------------------------------------------------------
    # Human decisions
    # ------------------------------------------------------------------

    def record_human_decision(
        self,
        job_id: str,
        decision: HumanDecision,
        actor: str,
        notes: str = "",
        artifact_id: str | None = None,
    ) -> Job:
        """Resolve a blocked job and write the decision to the audit log.

        The resolution and its audit entry commit together.

        Raises
        ------
        InvalidResolutionError
            If the job is not blocked or was already resolved.
        PersistenceError
            If the audit entry cannot be written; the job stays unresolved.
        """
        run = self._runs.get_run(self._ledger.get_job(job_id).run_id)
        reason = notes or f"{decision.value} by {actor}"
        if artifact_id is not None:
            reason += f" (artifact {artifact_id})"
        entry = PromotionLogEntry(
            entry_type=PromotionType.HUMAN_DECISION,
            owner_id=run.owner_id if run is not None else "",
            job_id=job_id,
            from_value=JobStatus.BLOCKED.value,
            to_value=decision.value,
            trigger_reason=reason,
            actor=actor,
        )
        job = self._ledger.resolve_blocked(
            job_id,
            decision,
            actor,
            within=lambda conn, _job: self._learning.store.write_promotion(conn, entry),
        )
        history = self._attempt_verdicts(job_id)
        if run is not None and history:
            _record, last = history[-1]
            self._learning.record_outcome(
                run,
                job.step_id,
                last.triggered_rule_ids,
                approved=decision == HumanDecision.APPROVE,
            )
        return job
