"""Phase state machine — the single writer of a run's phase and step.

Enforces:
- Only transitions present in TRANSITION_TABLE (step held or +1)
- Optimistic concurrency: the caller presents the phase it expects
- Idempotent triggers: a duplicate of an applied transition is a no-op
- Phase and step committed in one conditional write
- A paused run authorizes no new work

The machine never dispatches work; it only authorizes the next stage.
"""

from __future__ import annotations

import logging
from datetime import datetime

from retour.core.run_store import RunNotFoundError, RunStore
from retour.models.phases import (
    PHASE_STEP,
    TRANSITION_TABLE,
    Phase,
    PhaseTransition,
    PhaseTrigger,
)
from retour.models.runs import Run
from retour.observability.dispatcher import TraceDispatcher
from retour.observability.events import TraceEvent, TraceKind

logger = logging.getLogger(__name__)


class IllegalTransitionError(RuntimeError):
    """Raised when (phase, trigger) has no entry in the transition table."""


class StalePhaseError(RuntimeError):
    """Raised when the run is no longer at the phase the caller expected."""


class RunPausedError(RuntimeError):
    """Raised when new work is requested for a paused run."""


class PhaseMachine:
    """Authorizes and commits phase transitions for runs.

    Parameters
    ----------
    store:
        The run store holding the authoritative phase of every run.
    tracer:
        Optional trace dispatcher; transitions are emitted as events.
    """

    def __init__(self, store: RunStore, tracer: TraceDispatcher | None = None) -> None:
        self._store = store
        self._tracer = tracer

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current(self, run_id: str) -> Run:
        """Return the persisted run, re-read from the store."""
        run = self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} does not exist")
        return run

    def available_triggers(self, run_id: str) -> dict[PhaseTrigger, Phase]:
        """Map each trigger legal from the current phase to its target."""
        phase = self.current(run_id).phase
        return {
            trigger: target
            for (source, trigger), target in TRANSITION_TABLE.items()
            if source == phase
        }

    @staticmethod
    def resolve(phase: Phase, trigger: PhaseTrigger) -> Phase:
        """Return the target of (phase, trigger) or raise IllegalTransitionError."""
        target = TRANSITION_TABLE.get((phase, trigger))
        if target is None:
            legal = sorted(
                t.value for (source, t) in TRANSITION_TABLE if source == phase
            )
            raise IllegalTransitionError(
                f"Cannot apply {trigger.value!r} in phase {phase.value}. "
                f"Allowed: {legal}"
            )
        return target

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        run_id: str,
        trigger: PhaseTrigger,
        *,
        expected_phase: Phase,
        now: datetime | None = None,
    ) -> Run:
        """Apply ``trigger`` to a run that the caller believes is at ``expected_phase``.

        Returns the run after the transition.  If the run is already at
        the target phase the call is a no-op success.

        Raises
        ------
        IllegalTransitionError
            If ``(expected_phase, trigger)`` is not in the transition table.
        StalePhaseError
            If the run is at neither ``expected_phase`` nor the target.
        RunNotFoundError
            If the run does not exist.
        """
        target = self.resolve(expected_phase, trigger)
        run = self.current(run_id)

        if run.phase == target and run.phase != expected_phase:
            logger.info(
                "Run %s already at %s; duplicate %s ignored",
                run_id, target.value, trigger.value,
            )
            return run

        if run.phase != expected_phase:
            raise StalePhaseError(
                f"Run {run_id} is at {run.phase.value}, "
                f"not the expected {expected_phase.value}"
            )

        record = PhaseTransition(
            run_id=run_id,
            trigger=trigger,
            from_phase=expected_phase,
            to_phase=target,
            from_step=PHASE_STEP[expected_phase],
            to_step=PHASE_STEP[target],
        )
        if not self._store.commit_transition(record, now=now):
            # Lost the race between read and conditional write.
            latest = self.current(run_id)
            if latest.phase == target:
                return latest
            raise StalePhaseError(
                f"Run {run_id} moved to {latest.phase.value} while "
                f"applying {trigger.value}"
            )

        logger.info(
            "Run %s: %s -> %s (step %d -> %d)",
            run_id,
            record.from_phase.value,
            record.to_phase.value,
            record.from_step,
            record.to_step,
        )
        self._emit(record)
        return self.current(run_id)

    def advance(
        self, run_id: str, *, expected_phase: Phase, now: datetime | None = None
    ) -> Run:
        """Continue from a terminal-of-step phase to the next step's pending phase."""
        return self.transition(
            run_id, PhaseTrigger.CONTINUE, expected_phase=expected_phase, now=now
        )

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    def pause(self, run_id: str) -> Run:
        if not self._store.set_paused(run_id, True):
            raise RunNotFoundError(f"Run {run_id} does not exist")
        logger.info("Run %s paused", run_id)
        return self.current(run_id)

    def resume(self, run_id: str) -> Run:
        if not self._store.set_paused(run_id, False):
            raise RunNotFoundError(f"Run {run_id} does not exist")
        logger.info("Run %s resumed", run_id)
        return self.current(run_id)

    def assert_dispatchable(self, run_id: str) -> Run:
        """Return the run if new work may be dispatched for it."""
        run = self.current(run_id)
        if run.paused:
            raise RunPausedError(f"Run {run_id} is paused; no new work may start")
        return run

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _emit(self, record: PhaseTransition) -> None:
        if self._tracer is None:
            return
        self._tracer.emit(
            TraceEvent.for_step(
                TraceKind.PHASE_TRANSITION,
                record.run_id,
                record.to_step,
                metadata={
                    "trigger": record.trigger.value,
                    "from_phase": record.from_phase.value,
                    "to_phase": record.to_phase.value,
                },
            )
        )
