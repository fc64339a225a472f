"""Tests for the Orchestrator facade — run lifecycle, job requests, step execution."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from retour.core.collaborators import CollaboratorError
from retour.core.job_ledger import InvalidResolutionError, RetryBudgetExhaustedError
from retour.core.phase_machine import IllegalTransitionError, RunPausedError, StalePhaseError
from retour.core.production_guard import ProductionConfigError
from retour.models.jobs import AlreadyRunning, ContentionReason, JobStatus, LockToken
from retour.models.phases import Phase, PhaseTrigger
from retour.observability.events import TraceKind
from retour.recovery.retry import RetryAction


def _advance_to_step_one(orch, run_id: str) -> None:
    orch.request_transition(run_id, "start", "space_analysis_pending")
    orch.request_transition(run_id, "finish", "space_analysis_running")
    orch.request_transition(run_id, "continue", "space_analysis_complete")


class TestRunLifecycle:
    def test_start_run_enters_first_pending_phase(self, make_orchestrator):
        orch = make_orchestrator()
        run = orch.start_run("owner-a", "rt-test-001")
        assert run.phase == Phase.SPACE_ANALYSIS_PENDING
        assert run.step == 0

    def test_start_run_is_idempotent(self, make_orchestrator):
        orch = make_orchestrator()
        orch.start_run("owner-a", "rt-test-001")
        _advance_to_step_one(orch, "rt-test-001")
        again = orch.start_run("owner-a", "rt-test-001")
        assert again.phase == Phase.TOP_DOWN_3D_PENDING
        assert len(orch.runs.get_transitions("rt-test-001")) == 4

    def test_generated_run_id(self, make_orchestrator):
        run = make_orchestrator().start_run("owner-a")
        assert run.run_id.startswith("rt-")

    def test_request_transition_accepts_strings(self, make_orchestrator):
        orch = make_orchestrator()
        orch.start_run("owner-a", "rt-test-001")
        run = orch.request_transition("rt-test-001", PhaseTrigger.START, "space_analysis_pending")
        assert run.phase == Phase.SPACE_ANALYSIS_RUNNING

    def test_production_guard_runs_at_construction(self, make_orchestrator):
        with pytest.raises(ProductionConfigError, match="debug=True"):
            make_orchestrator(environment="production", debug=True)


class TestRequestJob:
    def test_token_and_lock_trace(self, make_orchestrator, trace_sink):
        orch = make_orchestrator()
        orch.start_run("owner-a", "rt-test-001")
        token = orch.request_job("rt-test-001", 0, "analysis", holder="worker-a")
        assert isinstance(token, LockToken)
        kinds = [e.kind for e in trace_sink.read_events("rt-test-001")]
        assert TraceKind.JOB_LOCK in kinds

    def test_second_holder_sees_lock(self, make_orchestrator):
        orch = make_orchestrator()
        orch.start_run("owner-a", "rt-test-001")
        orch.request_job("rt-test-001", 0, "analysis", holder="worker-a")
        other = orch.request_job("rt-test-001", 0, "analysis", holder="worker-b")
        assert isinstance(other, AlreadyRunning)
        assert other.reason == ContentionReason.LOCK_HELD
        assert other.lock_holder == "worker-a"

    def test_wrong_step_refused(self, make_orchestrator):
        orch = make_orchestrator()
        orch.start_run("owner-a", "rt-test-001")
        with pytest.raises(StalePhaseError, match="cannot dispatch work for step 1"):
            orch.request_job("rt-test-001", 1, "generation")

    def test_paused_run_refused(self, make_orchestrator):
        orch = make_orchestrator()
        orch.start_run("owner-a", "rt-test-001")
        orch.pause("rt-test-001")
        with pytest.raises(RunPausedError):
            orch.request_job("rt-test-001", 0, "analysis")
        orch.resume("rt-test-001")
        assert isinstance(orch.request_job("rt-test-001", 0, "analysis"), LockToken)


class TestExecuteStep:
    def test_requires_generator(self, make_orchestrator):
        orch = make_orchestrator()
        orch.start_run("owner-a", "rt-test-001")
        with pytest.raises(RuntimeError, match="requires a generation service"):
            orch.execute_step("rt-test-001", "analysis")

    def test_clean_attempt_finishes_step(self, make_orchestrator, make_generator, make_analysis):
        generator = make_generator([make_analysis()])
        orch = make_orchestrator(generator)
        orch.start_run("owner-a", "rt-test-001")
        result = orch.execute_step("rt-test-001", "analysis")
        assert result.accepted
        assert result.run.phase == Phase.SPACE_ANALYSIS_COMPLETE
        assert result.verdict.passed
        assert orch.runs.get_artifact(result.artifact.artifact_id) is not None
        job = orch.jobs.get_job(result.decision.job.job_id)
        assert job.status == JobStatus.COMPLETED
        assert result.artifact.job_id == job.job_id

    def test_retry_carries_corrections(
        self, make_orchestrator, make_generator, make_analysis, single_space_analysis
    ):
        generator = make_generator([single_space_analysis, make_analysis()])
        orch = make_orchestrator(generator)
        orch.start_run("owner-a", "rt-test-001")
        result = orch.execute_step("rt-test-001", "analysis", prompt="analyse the plan")
        assert result.accepted
        first, second = generator.requests
        assert first.attempt == 1
        assert first.prompt_adjustments == []
        assert second.attempt == 2
        assert second.seed is not None
        assert any(a.startswith("STRICT") for a in second.prompt_adjustments)
        assert second.prompt == "analyse the plan"

    def test_not_at_generation_phase(self, make_orchestrator, make_generator, make_analysis):
        orch = make_orchestrator(make_generator([make_analysis()]))
        orch.start_run("owner-a", "rt-test-001")
        orch.execute_step("rt-test-001", "analysis")
        with pytest.raises(IllegalTransitionError, match="no generation work runs there"):
            orch.execute_step("rt-test-001", "analysis")

    def test_contention_is_reported(self, make_orchestrator, make_generator, make_analysis):
        generator = make_generator([make_analysis()])
        orch = make_orchestrator(generator)
        orch.start_run("owner-a", "rt-test-001")
        orch.request_job("rt-test-001", 0, "analysis", "shared-key", holder="worker-a")
        result = orch.execute_step(
            "rt-test-001", "analysis", holder="worker-b", idempotency_key="shared-key"
        )
        assert not result.accepted
        assert result.contention.reason == ContentionReason.LOCK_HELD
        assert generator.requests == []

    def test_collaborator_failure_returns_step_to_pending(
        self, make_orchestrator, make_generator
    ):
        generator = make_generator([ConnectionError("renderer down")])
        orch = make_orchestrator(generator, collaborator_max_retries=1)
        orch.start_run("owner-a", "rt-test-001")
        with pytest.raises(CollaboratorError, match="analysis failed after 2 tries"):
            orch.execute_step("rt-test-001", "analysis")
        run = orch.runs.get_run("rt-test-001")
        assert run.phase == Phase.SPACE_ANALYSIS_PENDING
        assert "renderer down" in run.last_error
        job = orch.jobs.list_jobs("rt-test-001")[0]
        assert job.status == JobStatus.FAILED
        assert "service=analysis" in job.last_error
        assert "ConnectionError" in job.last_error_trace

    def test_unusable_step_output_fails_before_completion(
        self, make_orchestrator, make_generator, make_analysis
    ):
        generator = make_generator(
            [make_analysis()],
            step_output={"kind": "style", "artifact_id": "sha256:wrong-step"},
        )
        orch = make_orchestrator(generator)
        orch.start_run("owner-a", "rt-test-001")
        _advance_to_step_one(orch, "rt-test-001")
        with pytest.raises(CollaboratorError, match="unusable step output"):
            orch.execute_step("rt-test-001", "generation")

        run = orch.runs.get_run("rt-test-001")
        assert run.phase == Phase.TOP_DOWN_3D_PENDING
        assert run.step_outputs == {}
        job = orch.jobs.list_jobs("rt-test-001", step_id=1)[0]
        assert job.status == JobStatus.FAILED
        assert "expects output kind 'top_down_3d'" in job.last_error
        assert orch.runs.list_verdicts("rt-test-001", step_id=1) == []

    def test_spent_budget_after_crash_returns_step_to_pending(
        self, make_orchestrator, make_generator, make_analysis
    ):
        generator = make_generator([make_analysis()])
        orch = make_orchestrator(generator)
        orch.start_run("owner-a", "rt-test-001")
        long_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        token = orch.request_job(
            "rt-test-001", 0, "analysis", holder="worker-a", max_attempts=1, now=long_ago
        )
        orch.request_transition("rt-test-001", "start", "space_analysis_pending")

        with pytest.raises(RetryBudgetExhaustedError, match="1/1"):
            orch.execute_step("rt-test-001", "analysis", holder="worker-b")
        assert generator.requests == []
        assert orch.jobs.get_job(token.job_id).status == JobStatus.BLOCKED
        run = orch.runs.get_run("rt-test-001")
        assert run.phase == Phase.SPACE_ANALYSIS_PENDING
        assert "1/1" in run.last_error


class TestSubmitVerdict:
    """Workers that validate out of process hand the verdict back here."""

    def _token(self, orch):
        orch.start_run("owner-a", "rt-test-001")
        token = orch.request_job("rt-test-001", 0, "analysis", holder="worker-a")
        assert isinstance(token, LockToken)
        return token

    def test_passing_verdict_completes_job(self, make_orchestrator, make_artifact, make_verdict):
        orch = make_orchestrator()
        token = self._token(orch)
        artifact = make_artifact()
        verdict = make_verdict(step_id=0, artifact_id=artifact.artifact_id)

        decision = orch.submit_verdict(token, artifact, verdict)
        assert decision.action == RetryAction.PROCEED
        assert decision.job.status == JobStatus.COMPLETED
        assert orch.runs.get_artifact(artifact.artifact_id) is not None
        assert [v.verdict_id for v in orch.runs.list_verdicts("rt-test-001")] == [
            verdict.verdict_id
        ]

    def test_failing_verdict_feeds_learning(
        self, make_orchestrator, make_artifact, make_verdict, make_failure
    ):
        orch = make_orchestrator()
        token = self._token(orch)
        artifact = make_artifact()
        verdict = make_verdict(
            [make_failure()], step_id=0, artifact_id=artifact.artifact_id
        )

        decision = orch.submit_verdict(token, artifact, verdict)
        assert decision.action == RetryAction.RETRY
        assert orch.jobs.get_job(token.job_id).status == JobStatus.FAILED
        (rule,) = orch.rules.list_rules(run_id="rt-test-001", step_id=0)
        assert rule.violation_count == 1


class TestOverride:
    def test_blocked_job_takes_one_decision(
        self, make_orchestrator, make_generator, make_analysis
    ):
        bad = make_analysis(extra="unexpected")
        orch = make_orchestrator(make_generator([bad]))
        orch.start_run("owner-a", "rt-test-001")
        result = orch.execute_step("rt-test-001", "analysis")
        assert result.decision.action == RetryAction.BLOCKED
        job_id = result.decision.job.job_id
        job = orch.record_override(job_id, "approved", actor="alice")
        assert job.resolution.value == "approved"
        with pytest.raises(InvalidResolutionError):
            orch.record_override(job_id, "rejected", actor="bob")

    def test_approval_finishes_analysis_step(
        self, make_orchestrator, make_generator, make_analysis
    ):
        orch = make_orchestrator(make_generator([make_analysis(extra="unexpected")]))
        orch.start_run("owner-a", "rt-test-001")
        result = orch.execute_step("rt-test-001", "analysis")
        orch.record_override(result.decision.job.job_id, "approved", actor="alice")
        run = orch.runs.get_run("rt-test-001")
        assert run.phase == Phase.SPACE_ANALYSIS_COMPLETE
        assert run.step_outputs == {}
