"""Tests for the RetryOrchestrator — verdict to job outcome, budgets, human decisions."""

from __future__ import annotations

import random
import sqlite3
from datetime import timedelta

import pytest

from retour.core.job_ledger import InvalidResolutionError, JobLedger, LockLostError
from retour.core.run_store import RunStore
from retour.core.sqlite import PersistenceError
from retour.models.jobs import HumanDecision, JobStatus, LockToken
from retour.models.policy import PromotionType
from retour.models.verdicts import Severity
from retour.observability.events import TraceKind
from retour.recovery.retry import RetryAction, RetryOrchestrator


def _orchestrator(ledger, run_store, learning, **kwargs) -> RetryOrchestrator:
    return RetryOrchestrator(ledger, run_store, learning, rng=random.Random(3), **kwargs)


def _acquire(ledger: JobLedger, now, **kwargs) -> LockToken:
    token = ledger.acquire_job(
        "rt-test-001", 1, "generation", "key-1", holder="worker-a", now=now, **kwargs
    )
    assert isinstance(token, LockToken)
    return token


def _verdict(run_store: RunStore, make_verdict, failures, artifact):
    return run_store.save_verdict(make_verdict(failures, artifact_id=artifact.artifact_id))


@pytest.fixture
def retry(ledger, run_store, learning) -> RetryOrchestrator:
    return _orchestrator(ledger, run_store, learning)


class TestProceed:
    def test_completes_job_with_artifact(
        self, retry, ledger, run_store, run, make_verdict, make_artifact, now
    ):
        token = _acquire(ledger, now)
        artifact = make_artifact()
        verdict = _verdict(run_store, make_verdict, [], artifact)
        decision = retry.handle_verdict(token, artifact, verdict, now=now)
        assert decision.action == RetryAction.PROCEED
        assert decision.job.status == JobStatus.COMPLETED
        assert decision.job.result_ref == [artifact.artifact_id]
        attempts = ledger.get_attempts(token.job_id)
        assert [(a.attempt_index, a.accepted) for a in attempts] == [(1, True)]

    def test_triggered_rule_counts_as_false_positive(
        self, retry, ledger, run_store, learning, rule_store, run,
        make_verdict, make_failure, make_artifact, now,
    ):
        rule = learning.record_verdict(run, make_verdict([make_failure()]), now=now)[0]
        token = _acquire(ledger, now)
        artifact = make_artifact()
        verdict = run_store.save_verdict(
            make_verdict([], artifact_id=artifact.artifact_id, triggered_rule_ids=[rule.rule_id])
        )
        retry.handle_verdict(token, artifact, verdict, now=now)
        assert rule_store.get(rule.rule_id).approved_despite_trigger == 1


class TestRetry:
    def test_releases_failed_with_instructions(
        self, ledger, run_store, learning, run, make_verdict, make_failure,
        make_artifact, tracer, trace_sink, now,
    ):
        retry = _orchestrator(ledger, run_store, learning, tracer=tracer)
        token = _acquire(ledger, now)
        artifact = make_artifact()
        verdict = _verdict(run_store, make_verdict, [make_failure()], artifact)
        decision = retry.handle_verdict(token, artifact, verdict, now=now)
        assert decision.action == RetryAction.RETRY
        assert decision.job.status == JobStatus.FAILED
        assert decision.delay_seconds == 2.0
        assert decision.instructions.attempt == 2
        assert "(high) missing_space" in decision.reason
        events = trace_sink.read_events("rt-test-001")
        assert [e.kind for e in events] == [TraceKind.RETRY_CORRECTION]
        assert events[0].attempt_index == 2

    def test_next_acquire_is_next_attempt(
        self, retry, ledger, run_store, run, make_verdict, make_failure, make_artifact, now
    ):
        token = _acquire(ledger, now)
        artifact = make_artifact()
        retry.handle_verdict(
            token, artifact, _verdict(run_store, make_verdict, [make_failure()], artifact), now=now
        )
        second = _acquire(ledger, now + timedelta(seconds=5))
        assert second.job_id == token.job_id
        assert second.attempt == 2
        assert second.reclaimed is False

    def test_job_budget_exhaustion_blocks(
        self, retry, ledger, run_store, run, make_verdict, make_failure, make_artifact, now
    ):
        token = _acquire(ledger, now, max_attempts=1)
        artifact = make_artifact()
        verdict = _verdict(run_store, make_verdict, [make_failure()], artifact)
        decision = retry.handle_verdict(token, artifact, verdict, now=now)
        assert decision.action == RetryAction.BLOCKED
        assert decision.budget_exhausted
        assert decision.job.status == JobStatus.BLOCKED
        assert decision.best_artifact_id == artifact.artifact_id
        assert decision.reason.startswith("Retry budget exhausted after 1 attempt(s)")
        assert len(decision.failure_history) == 1

    def test_run_budget_exhaustion_blocks(
        self, ledger, run_store, learning, run, make_verdict, make_failure, make_artifact, now
    ):
        retry = _orchestrator(ledger, run_store, learning, max_total_attempts_per_run=1)
        token = _acquire(ledger, now)
        artifact = make_artifact()
        verdict = _verdict(run_store, make_verdict, [make_failure()], artifact)
        decision = retry.handle_verdict(token, artifact, verdict, now=now)
        assert decision.action == RetryAction.BLOCKED
        assert decision.reason.startswith("Run attempt budget exhausted (1/1)")

    def test_best_artifact_has_fewest_failures(
        self, retry, ledger, run_store, run, make_verdict, make_failure, make_artifact, now
    ):
        first = make_artifact("s3://renders/a.png")
        token = _acquire(ledger, now, max_attempts=2)
        retry.handle_verdict(
            token, first, _verdict(run_store, make_verdict, [make_failure()], first), now=now
        )
        second = make_artifact("s3://renders/b.png")
        token = _acquire(ledger, now + timedelta(seconds=5))
        worse = [make_failure(), make_failure(description="Kitchen is missing")]
        decision = retry.handle_verdict(
            token, second, _verdict(run_store, make_verdict, worse, second),
            now=now + timedelta(seconds=6),
        )
        assert decision.best_artifact_id == first.artifact_id
        assert len(decision.failure_history) == 3


class TestBlock:
    def test_critical_blocks_without_budget_flag(
        self, retry, ledger, run_store, run, make_verdict, make_failure, make_artifact, now
    ):
        token = _acquire(ledger, now)
        artifact = make_artifact()
        verdict = _verdict(
            run_store, make_verdict, [make_failure(Severity.CRITICAL)], artifact
        )
        decision = retry.handle_verdict(token, artifact, verdict, now=now)
        assert decision.action == RetryAction.BLOCKED
        assert not decision.budget_exhausted
        assert decision.best_artifact_id is None
        assert "(critical)" in decision.job.last_error

    def test_lost_lock_raises(
        self, retry, ledger, run_store, run, make_verdict, make_artifact, now
    ):
        token = _acquire(ledger, now)
        ledger.acquire_job(
            "rt-test-001", 1, "generation", "key-1", holder="worker-b",
            now=now + timedelta(seconds=301),
        )
        artifact = make_artifact()
        with pytest.raises(LockLostError):
            retry.handle_verdict(
                token, artifact, _verdict(run_store, make_verdict, [], artifact), now=now
            )


class TestHumanDecision:
    def _blocked_job(self, retry, ledger, run_store, make_verdict, make_failure, make_artifact, now):
        token = _acquire(ledger, now)
        artifact = make_artifact()
        verdict = _verdict(
            run_store, make_verdict, [make_failure(Severity.CRITICAL)], artifact
        )
        retry.handle_verdict(token, artifact, verdict, now=now)
        return token.job_id, artifact

    def test_approve_is_logged(
        self, retry, ledger, run_store, rule_store, run, make_verdict, make_failure,
        make_artifact, now,
    ):
        job_id, artifact = self._blocked_job(
            retry, ledger, run_store, make_verdict, make_failure, make_artifact, now
        )
        job = retry.record_human_decision(
            job_id, HumanDecision.APPROVE, actor="alice", artifact_id=artifact.artifact_id
        )
        assert job.resolution == HumanDecision.APPROVE
        entries = rule_store.get_promotion_log(job_id=job_id)
        assert len(entries) == 1
        assert entries[0].entry_type == PromotionType.HUMAN_DECISION
        assert entries[0].owner_id == "owner-a"
        assert entries[0].to_value == "approved"
        assert entries[0].trigger_reason.endswith(f"(artifact {artifact.artifact_id})")

    def test_second_decision_refused(
        self, retry, ledger, run_store, run, make_verdict, make_failure, make_artifact, now
    ):
        job_id, _ = self._blocked_job(
            retry, ledger, run_store, make_verdict, make_failure, make_artifact, now
        )
        retry.record_human_decision(job_id, HumanDecision.REJECT, actor="alice")
        with pytest.raises(InvalidResolutionError, match="already rejected"):
            retry.record_human_decision(job_id, HumanDecision.APPROVE, actor="bob")

    def test_completed_job_refused(
        self, retry, ledger, run_store, run, make_verdict, make_artifact, now
    ):
        token = _acquire(ledger, now)
        artifact = make_artifact()
        retry.handle_verdict(
            token, artifact, _verdict(run_store, make_verdict, [], artifact), now=now
        )
        with pytest.raises(InvalidResolutionError, match="only blocked jobs"):
            retry.record_human_decision(token.job_id, HumanDecision.APPROVE, actor="alice")

    def test_exhausted_attempt_counted_once(
        self, retry, ledger, run_store, learning, rule_store, run,
        make_verdict, make_failure, make_artifact, now,
    ):
        rule = learning.record_verdict(run, make_verdict([make_failure()]), now=now)[0]
        token = _acquire(ledger, now, max_attempts=1)
        artifact = make_artifact()
        verdict = run_store.save_verdict(
            make_verdict(
                [make_failure()],
                artifact_id=artifact.artifact_id,
                triggered_rule_ids=[rule.rule_id],
            )
        )
        decision = retry.handle_verdict(token, artifact, verdict, now=now)
        assert decision.budget_exhausted
        assert rule_store.get(rule.rule_id).triggered_count == 0

        retry.record_human_decision(token.job_id, HumanDecision.APPROVE, actor="alice")
        after = rule_store.get(rule.rule_id)
        assert (
            after.triggered_count,
            after.rejected_due_to_trigger,
            after.approved_despite_trigger,
        ) == (1, 0, 1)

    def test_failed_audit_write_leaves_job_unresolved(
        self, retry, ledger, run_store, run, db_path, make_verdict, make_failure,
        make_artifact, now,
    ):
        job_id, _ = self._blocked_job(
            retry, ledger, run_store, make_verdict, make_failure, make_artifact, now
        )
        conn = sqlite3.connect(str(db_path))
        conn.execute("DROP TABLE promotion_log")
        conn.commit()
        conn.close()

        with pytest.raises(PersistenceError):
            retry.record_human_decision(job_id, HumanDecision.APPROVE, actor="alice")
        job = ledger.get_job(job_id)
        assert job.status == JobStatus.BLOCKED
        assert job.resolution is None
