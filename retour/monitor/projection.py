"""RunProjection — read-only view over the run, job and rule stores.

The projection computes nothing authoritative.  Every ``snapshot()``
call re-reads the stores; no state is kept between calls.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from retour.core.job_ledger import JobLedger
from retour.core.run_store import RunNotFoundError, RunStore
from retour.learning.rule_store import RuleStore
from retour.models.jobs import JobStatus
from retour.models.phases import Phase
from retour.models.policy import RuleStatus
from retour.models.verdicts import NextStep

STEP_NAMES: dict[int, str] = {
    0: "Space analysis",
    1: "Top-down 3D",
    2: "Style",
    3: "Space detection",
    4: "Camera intent",
    5: "Prompt templates",
    6: "Renders",
    7: "Panoramas",
    8: "Merge",
}


class StepState(str, Enum):
    DONE = "done"
    CURRENT = "current"
    NOT_STARTED = "not_started"


class StepStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: int
    display_name: str
    state: StepState = StepState.NOT_STARTED
    phase: Phase | None = None
    has_output: bool = False


class JobSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    step_id: int
    service: str
    status: JobStatus
    attempts: int
    max_attempts: int
    lock_holder: str | None = None
    last_error: str | None = None
    resolution: str | None = None


class RunSnapshot(BaseModel):
    """A frozen, point-in-time view of one run.  Never persisted."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    owner_id: str
    phase: Phase
    step: int
    paused: bool = False
    last_error: str | None = None
    steps: list[StepStatus] = []
    jobs: list[JobSummary] = []
    latest_verdict_id: str | None = None
    latest_next_step: NextStep | None = None
    latest_failure_count: int = 0
    active_rule_count: int = 0
    transition_count: int = 0
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.steps if s.state == StepState.DONE)

    @property
    def blocked_jobs(self) -> list[JobSummary]:
        """Blocked jobs still waiting for a human decision."""
        return [
            j for j in self.jobs
            if j.status == JobStatus.BLOCKED and j.resolution is None
        ]

    @property
    def running_jobs(self) -> list[JobSummary]:
        return [j for j in self.jobs if j.status == JobStatus.RUNNING]


class RunProjection:
    """Pure read-only projection over the persistent stores.

    Parameters
    ----------
    runs / jobs / rules:
        The stores to read from; normally the orchestrator's own.
    """

    def __init__(self, runs: RunStore, jobs: JobLedger, rules: RuleStore) -> None:
        self._runs = runs
        self._jobs = jobs
        self._rules = rules

    def snapshot(self, run_id: str) -> RunSnapshot:
        """Re-read every store and build a fresh snapshot.

        Raises
        ------
        RunNotFoundError
            If the run does not exist.
        """
        run = self._runs.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} does not exist")

        steps: list[StepStatus] = []
        for step_id, name in STEP_NAMES.items():
            if run.is_completed or step_id < run.step:
                state = StepState.DONE
            elif step_id == run.step:
                state = StepState.CURRENT
            else:
                state = StepState.NOT_STARTED
            steps.append(
                StepStatus(
                    step_id=step_id,
                    display_name=name,
                    state=state,
                    phase=run.phase if state == StepState.CURRENT else None,
                    has_output=step_id in run.step_outputs,
                )
            )

        jobs = [
            JobSummary(
                job_id=j.job_id,
                step_id=j.step_id,
                service=j.service,
                status=j.status,
                attempts=j.attempts,
                max_attempts=j.max_attempts,
                lock_holder=j.lock_holder,
                last_error=j.last_error,
                resolution=j.resolution.value if j.resolution else None,
            )
            for j in self._jobs.list_jobs(run_id)
        ]

        latest = self._runs.latest_verdict(run_id)
        active_rules = [
            r
            for r in self._rules.list_rules(run_id=run_id, status=RuleStatus.ACTIVE)
        ]

        return RunSnapshot(
            run_id=run.run_id,
            owner_id=run.owner_id,
            phase=run.phase,
            step=run.step,
            paused=run.paused,
            last_error=run.last_error,
            steps=steps,
            jobs=jobs,
            latest_verdict_id=latest.verdict_id if latest else None,
            latest_next_step=latest.recommended_next_step if latest else None,
            latest_failure_count=len(latest.failures) if latest else 0,
            active_rule_count=len(active_rules),
            transition_count=len(self._runs.get_transitions(run_id)),
            last_updated=run.updated_at,
        )
