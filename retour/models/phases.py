"""Phase model — closed phase enumeration and static transition tables.

Every phase belongs to exactly one step (``PHASE_STEP``).  Transitions
are keyed by ``(source phase, trigger)`` and may only hold or advance the
step number by one; ``verify_transition_table`` enforces that at import.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Phase(str, Enum):
    """Fine-grained run state label."""

    # Step 0: upload and space analysis
    UPLOAD = "upload"
    SPACE_ANALYSIS_PENDING = "space_analysis_pending"
    SPACE_ANALYSIS_RUNNING = "space_analysis_running"
    SPACE_ANALYSIS_COMPLETE = "space_analysis_complete"
    # Step 1: top-down 3D
    TOP_DOWN_3D_PENDING = "top_down_3d_pending"
    TOP_DOWN_3D_RUNNING = "top_down_3d_running"
    TOP_DOWN_3D_REVIEW = "top_down_3d_review"
    # Step 2: style
    STYLE_PENDING = "style_pending"
    STYLE_RUNNING = "style_running"
    STYLE_REVIEW = "style_review"
    # Step 3: space detection
    DETECT_SPACES_PENDING = "detect_spaces_pending"
    DETECTING_SPACES = "detecting_spaces"
    SPACES_DETECTED = "spaces_detected"
    # Step 4: camera intent (decision only)
    CAMERA_INTENT_PENDING = "camera_intent_pending"
    CAMERA_INTENT_CONFIRMED = "camera_intent_confirmed"
    # Step 5: prompt templates (decision only)
    PROMPT_TEMPLATES_PENDING = "prompt_templates_pending"
    PROMPT_TEMPLATES_CONFIRMED = "prompt_templates_confirmed"
    # Step 6: rendered outputs
    OUTPUTS_PENDING = "outputs_pending"
    OUTPUTS_IN_PROGRESS = "outputs_in_progress"
    OUTPUTS_REVIEW = "outputs_review"
    # Step 7: panoramas
    PANORAMAS_PENDING = "panoramas_pending"
    PANORAMAS_IN_PROGRESS = "panoramas_in_progress"
    PANORAMAS_REVIEW = "panoramas_review"
    # Step 8: merge into the final tour
    MERGING_PENDING = "merging_pending"
    MERGING_IN_PROGRESS = "merging_in_progress"
    MERGING_REVIEW = "merging_review"
    COMPLETED = "completed"


class PhaseTrigger(str, Enum):
    """External triggers accepted by the phase state machine."""

    BEGIN = "begin"          # upload -> step 0 pending
    START = "start"          # pending -> running
    FINISH = "finish"        # running -> review/complete, or pending -> confirmed
    FAIL = "fail"            # running -> pending (same step)
    REJECT = "reject"        # review -> pending (same step)
    CONTINUE = "continue"    # terminal-of-step -> next step pending


# Total map: every phase maps to exactly one step.
PHASE_STEP: dict[Phase, int] = {
    Phase.UPLOAD: 0,
    Phase.SPACE_ANALYSIS_PENDING: 0,
    Phase.SPACE_ANALYSIS_RUNNING: 0,
    Phase.SPACE_ANALYSIS_COMPLETE: 0,
    Phase.TOP_DOWN_3D_PENDING: 1,
    Phase.TOP_DOWN_3D_RUNNING: 1,
    Phase.TOP_DOWN_3D_REVIEW: 1,
    Phase.STYLE_PENDING: 2,
    Phase.STYLE_RUNNING: 2,
    Phase.STYLE_REVIEW: 2,
    Phase.DETECT_SPACES_PENDING: 3,
    Phase.DETECTING_SPACES: 3,
    Phase.SPACES_DETECTED: 3,
    Phase.CAMERA_INTENT_PENDING: 4,
    Phase.CAMERA_INTENT_CONFIRMED: 4,
    Phase.PROMPT_TEMPLATES_PENDING: 5,
    Phase.PROMPT_TEMPLATES_CONFIRMED: 5,
    Phase.OUTPUTS_PENDING: 6,
    Phase.OUTPUTS_IN_PROGRESS: 6,
    Phase.OUTPUTS_REVIEW: 6,
    Phase.PANORAMAS_PENDING: 7,
    Phase.PANORAMAS_IN_PROGRESS: 7,
    Phase.PANORAMAS_REVIEW: 7,
    Phase.MERGING_PENDING: 8,
    Phase.MERGING_IN_PROGRESS: 8,
    Phase.MERGING_REVIEW: 8,
    Phase.COMPLETED: 8,
}

# Partial map: terminal-of-step phase -> the unique next pending phase.
LEGAL_PHASE_TRANSITIONS: dict[Phase, Phase] = {
    Phase.SPACE_ANALYSIS_COMPLETE: Phase.TOP_DOWN_3D_PENDING,
    Phase.TOP_DOWN_3D_REVIEW: Phase.STYLE_PENDING,
    Phase.STYLE_REVIEW: Phase.DETECT_SPACES_PENDING,
    Phase.SPACES_DETECTED: Phase.CAMERA_INTENT_PENDING,
    Phase.CAMERA_INTENT_CONFIRMED: Phase.PROMPT_TEMPLATES_PENDING,
    Phase.PROMPT_TEMPLATES_CONFIRMED: Phase.OUTPUTS_PENDING,
    Phase.OUTPUTS_REVIEW: Phase.PANORAMAS_PENDING,
    Phase.PANORAMAS_REVIEW: Phase.MERGING_PENDING,
    Phase.MERGING_REVIEW: Phase.COMPLETED,
}

# (pending, running, terminal) per generating step.
_STEP_LIFECYCLES: list[tuple[Phase, Phase, Phase]] = [
    (Phase.SPACE_ANALYSIS_PENDING, Phase.SPACE_ANALYSIS_RUNNING, Phase.SPACE_ANALYSIS_COMPLETE),
    (Phase.TOP_DOWN_3D_PENDING, Phase.TOP_DOWN_3D_RUNNING, Phase.TOP_DOWN_3D_REVIEW),
    (Phase.STYLE_PENDING, Phase.STYLE_RUNNING, Phase.STYLE_REVIEW),
    (Phase.DETECT_SPACES_PENDING, Phase.DETECTING_SPACES, Phase.SPACES_DETECTED),
    (Phase.OUTPUTS_PENDING, Phase.OUTPUTS_IN_PROGRESS, Phase.OUTPUTS_REVIEW),
    (Phase.PANORAMAS_PENDING, Phase.PANORAMAS_IN_PROGRESS, Phase.PANORAMAS_REVIEW),
    (Phase.MERGING_PENDING, Phase.MERGING_IN_PROGRESS, Phase.MERGING_REVIEW),
]

# Decision-only steps go straight from pending to confirmed.
_DECISION_STEPS: list[tuple[Phase, Phase]] = [
    (Phase.CAMERA_INTENT_PENDING, Phase.CAMERA_INTENT_CONFIRMED),
    (Phase.PROMPT_TEMPLATES_PENDING, Phase.PROMPT_TEMPLATES_CONFIRMED),
]


def _build_transition_table() -> dict[tuple[Phase, PhaseTrigger], Phase]:
    table: dict[tuple[Phase, PhaseTrigger], Phase] = {
        (Phase.UPLOAD, PhaseTrigger.BEGIN): Phase.SPACE_ANALYSIS_PENDING,
    }
    for pending, running, terminal in _STEP_LIFECYCLES:
        table[(pending, PhaseTrigger.START)] = running
        table[(running, PhaseTrigger.FINISH)] = terminal
        table[(running, PhaseTrigger.FAIL)] = pending
        table[(terminal, PhaseTrigger.REJECT)] = pending
    for pending, confirmed in _DECISION_STEPS:
        table[(pending, PhaseTrigger.FINISH)] = confirmed
        table[(confirmed, PhaseTrigger.REJECT)] = pending
    for source, target in LEGAL_PHASE_TRANSITIONS.items():
        table[(source, PhaseTrigger.CONTINUE)] = target
    return table


TRANSITION_TABLE: dict[tuple[Phase, PhaseTrigger], Phase] = _build_transition_table()


def step_of(phase: Phase) -> int:
    """Return the step number a phase belongs to."""
    return PHASE_STEP[phase]


def verify_transition_table(
    table: dict[tuple[Phase, PhaseTrigger], Phase] | None = None,
) -> None:
    """Check that every transition holds or advances the step by exactly one.

    Raises
    ------
    ValueError
        On the first entry that moves backwards or skips a step, or when
        ``PHASE_STEP`` does not cover every phase.
    """
    missing = [p.value for p in Phase if p not in PHASE_STEP]
    if missing:
        raise ValueError(f"PHASE_STEP is not total; missing: {missing}")

    for (source, trigger), target in (table or TRANSITION_TABLE).items():
        delta = PHASE_STEP[target] - PHASE_STEP[source]
        if delta < 0 or delta > 1:
            raise ValueError(
                f"Transition {source.value} --{trigger.value}--> {target.value} "
                f"changes step by {delta}; only 0 or +1 is allowed"
            )


verify_transition_table()


class PhaseTransition(BaseModel):
    """Records a single committed phase transition for the audit trail."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    trigger: PhaseTrigger
    from_phase: Phase
    to_phase: Phase
    from_step: int
    to_step: int
    noop: bool = False
