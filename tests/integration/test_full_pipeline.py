"""End-to-end integration tests — a run driven through execute_step.

These tests exercise the Orchestrator, PhaseMachine, JobLedger,
ComparisonEngine, LearningEngine and RetryOrchestrator working together
over one SQLite database.
"""

from __future__ import annotations

import pytest

from retour.core.job_ledger import InvalidResolutionError
from retour.core.orchestrator import Orchestrator
from retour.models.jobs import ContentionReason, HumanDecision, JobStatus
from retour.models.phases import TRANSITION_TABLE, Phase, PhaseTrigger
from retour.models.policy import PromotionType, RuleScope, StrengthStage
from retour.models.verdicts import NextStep
from retour.monitor.projection import RunProjection, StepState
from retour.recovery.retry import RetryAction

RUN_ID = "rt-test-001"


def _complete_step_zero(orch: Orchestrator) -> None:
    result = orch.execute_step(RUN_ID, "analysis")
    assert result.accepted
    orch.request_transition(RUN_ID, PhaseTrigger.CONTINUE, Phase.SPACE_ANALYSIS_COMPLETE)


class TestFullPipeline:
    """Clean outputs carry a run from upload to completed."""

    def test_walk_every_step(self, make_orchestrator, make_generator, make_analysis):
        orch = make_orchestrator(make_generator([make_analysis()]))
        run = orch.start_run("owner-a", RUN_ID)
        while not run.is_completed:
            if (run.phase, PhaseTrigger.START) in TRANSITION_TABLE:
                result = orch.execute_step(RUN_ID, "generation")
                assert result.accepted, run.phase
                run = result.run
            elif (run.phase, PhaseTrigger.FINISH) in TRANSITION_TABLE:
                run = orch.request_transition(RUN_ID, PhaseTrigger.FINISH, run.phase)
            else:
                run = orch.request_transition(RUN_ID, PhaseTrigger.CONTINUE, run.phase)

        assert run.phase == Phase.COMPLETED
        assert set(run.step_outputs) == {1}
        jobs = orch.jobs.list_jobs(RUN_ID)
        assert {j.step_id for j in jobs} == {0, 1, 2, 3, 6, 7, 8}
        assert all(j.status == JobStatus.COMPLETED for j in jobs)

        snapshot = RunProjection(orch.runs, orch.jobs, orch.rules).snapshot(RUN_ID)
        assert all(s.state == StepState.DONE for s in snapshot.steps)
        assert snapshot.latest_next_step == NextStep.PROCEED


class TestRetryThenPass:
    """A rejected first attempt is corrected in-process and the step finishes."""

    @pytest.fixture
    def outcome(self, make_orchestrator, make_generator, make_analysis, single_space_analysis):
        generator = make_generator([make_analysis(), single_space_analysis, make_analysis()])
        orch = make_orchestrator(generator)
        orch.start_run("owner-a", RUN_ID)
        _complete_step_zero(orch)
        result = orch.execute_step(RUN_ID, "generation")
        return orch, generator, result

    def test_step_lands_in_review(self, outcome):
        orch, _generator, result = outcome
        assert result.accepted
        assert result.decision.attempt == 2
        assert result.run.phase == Phase.TOP_DOWN_3D_REVIEW
        assert result.run.last_error is None
        assert result.run.step_outputs[1].artifact_id == result.artifact.artifact_id

    def test_both_attempts_recorded(self, outcome):
        orch, generator, result = outcome
        attempts = orch.jobs.get_attempts(result.decision.job.job_id)
        assert [(a.attempt_index, a.accepted) for a in attempts] == [(1, False), (2, True)]
        assert len(orch.runs.list_verdicts(RUN_ID, step_id=1)) == 2
        assert generator.requests[-1].prompt_adjustments

    def test_rule_rewarded_for_quiet_attempt(self, outcome):
        orch, _generator, _result = outcome
        (rule,) = orch.rules.list_rules(run_id=RUN_ID, step_id=1)
        assert rule.violation_count == 1
        assert rule.health == 95


class TestRetryBudgetExhausted:
    """A step that never passes blocks for a human after the budget."""

    @pytest.fixture
    def outcome(self, make_orchestrator, make_generator, make_analysis, single_space_analysis):
        generator = make_generator([make_analysis(), single_space_analysis])
        orch = make_orchestrator(generator)
        orch.start_run("owner-a", RUN_ID)
        _complete_step_zero(orch)
        result = orch.execute_step(RUN_ID, "generation")
        return orch, generator, result

    def test_job_blocked_with_best_artifact(self, outcome):
        orch, generator, result = outcome
        decision = result.decision
        assert decision.action == RetryAction.BLOCKED
        assert decision.budget_exhausted
        assert decision.job.status == JobStatus.BLOCKED
        assert decision.job.attempts == 3
        first_attempt = orch.jobs.get_attempts(decision.job.job_id)[0]
        assert decision.best_artifact_id == first_attempt.artifact_id
        assert len(generator.requests) == 4  # step 0 plus three attempts

    def test_run_back_to_pending_with_error(self, outcome):
        orch, _generator, result = outcome
        assert result.run.phase == Phase.TOP_DOWN_3D_PENDING
        assert result.run.last_error.startswith("Retry budget exhausted after 3 attempt(s)")

    def test_rule_escalated(self, outcome):
        orch, _generator, _result = outcome
        (rule,) = orch.rules.list_rules(scope=RuleScope.RUN, run_id=RUN_ID, step_id=1)
        assert rule.violation_count == 3
        assert rule.strength_stage == StrengthStage.CHECK
        escalations = orch.rules.get_promotion_log(
            rule_id=rule.rule_id, entry_type=PromotionType.ESCALATION
        )
        assert [(e.from_value, e.to_value) for e in escalations] == [("nudge", "check")]

    def test_re_execution_is_duplicate(self, outcome):
        orch, generator, _result = outcome
        again = orch.execute_step(RUN_ID, "generation")
        assert again.contention.reason == ContentionReason.DUPLICATE
        assert len(generator.requests) == 4

    def test_human_approval_is_final(self, outcome):
        orch, _generator, result = outcome
        job_id = result.decision.job.job_id
        job = orch.record_override(
            job_id, HumanDecision.APPROVE, "alice",
            artifact_id=result.decision.best_artifact_id,
        )
        assert job.resolution == HumanDecision.APPROVE
        (entry,) = orch.rules.get_promotion_log(
            job_id=job_id, entry_type=PromotionType.HUMAN_DECISION
        )
        assert entry.actor == "alice"
        assert entry.owner_id == "owner-a"

        # attempt 2 was rejected on the rule; attempt 3 is settled by the approval
        (rule,) = orch.rules.list_rules(scope=RuleScope.RUN, run_id=RUN_ID, step_id=1)
        assert (
            rule.triggered_count,
            rule.rejected_due_to_trigger,
            rule.approved_despite_trigger,
        ) == (2, 1, 1)

        with pytest.raises(InvalidResolutionError):
            orch.record_override(job_id, HumanDecision.REJECT, "bob")

    def test_approval_finishes_the_step(self, outcome):
        orch, generator, result = outcome
        best = result.decision.best_artifact_id
        orch.record_override(result.decision.job.job_id, HumanDecision.APPROVE, "alice")

        run = orch.runs.get_run(RUN_ID)
        assert run.phase == Phase.TOP_DOWN_3D_REVIEW
        assert run.step_outputs[1].artifact_id == best
        assert run.last_error is None
        run = orch.request_transition(RUN_ID, PhaseTrigger.CONTINUE, Phase.TOP_DOWN_3D_REVIEW)
        assert run.phase == Phase.STYLE_PENDING
        assert len(generator.requests) == 4

    def test_rejection_leaves_step_pending(self, outcome):
        orch, _generator, result = outcome
        orch.record_override(result.decision.job.job_id, HumanDecision.REJECT, "alice")
        run = orch.runs.get_run(RUN_ID)
        assert run.phase == Phase.TOP_DOWN_3D_PENDING
        assert run.step_outputs == {}
