"""Run model and the per-step output tagged union."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from retour.models.phases import PHASE_STEP, Phase


# ---------------------------------------------------------------------------
# Step outputs: one variant per step, discriminated on ``kind``
# ---------------------------------------------------------------------------


class _StepOutputBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SpaceAnalysisOutput(_StepOutputBase):
    kind: Literal["space_analysis"] = "space_analysis"
    analysis_artifact_id: str
    space_count: int = Field(ge=0)


class TopDownOutput(_StepOutputBase):
    kind: Literal["top_down_3d"] = "top_down_3d"
    artifact_id: str


class StyleOutput(_StepOutputBase):
    kind: Literal["style"] = "style"
    artifact_id: str
    reference_artifact_ids: list[str] = []


class SpaceDetectionOutput(_StepOutputBase):
    kind: Literal["space_detection"] = "space_detection"
    space_ids: list[str]


class CameraIntentOutput(_StepOutputBase):
    kind: Literal["camera_intent"] = "camera_intent"
    intents: dict[str, list[str]]  # space_id -> selected viewpoints


class PromptTemplatesOutput(_StepOutputBase):
    kind: Literal["prompt_templates"] = "prompt_templates"
    template_ids: list[str]


class RenderOutputs(_StepOutputBase):
    kind: Literal["renders"] = "renders"
    artifact_ids: list[str]


class PanoramaOutputs(_StepOutputBase):
    kind: Literal["panoramas"] = "panoramas"
    artifact_ids: list[str]


class MergeOutput(_StepOutputBase):
    kind: Literal["merge"] = "merge"
    tour_artifact_id: str


StepOutput = Annotated[
    Union[
        SpaceAnalysisOutput,
        TopDownOutput,
        StyleOutput,
        SpaceDetectionOutput,
        CameraIntentOutput,
        PromptTemplatesOutput,
        RenderOutputs,
        PanoramaOutputs,
        MergeOutput,
    ],
    Field(discriminator="kind"),
]

STEP_OUTPUT_KINDS: dict[int, str] = {
    0: "space_analysis",
    1: "top_down_3d",
    2: "style",
    3: "space_detection",
    4: "camera_intent",
    5: "prompt_templates",
    6: "renders",
    7: "panoramas",
    8: "merge",
}

step_output_adapter: TypeAdapter[StepOutput] = TypeAdapter(StepOutput)


def artifact_step_output(step_id: int, artifact_id: str) -> dict[str, Any] | None:
    """Raw output recording one accepted artifact as the result of ``step_id``.

    None for steps whose output is not an artifact reference.
    """
    kind = STEP_OUTPUT_KINDS.get(step_id)
    if kind in ("top_down_3d", "style"):
        return {"kind": kind, "artifact_id": artifact_id}
    if kind in ("renders", "panoramas"):
        return {"kind": kind, "artifact_ids": [artifact_id]}
    if kind == "merge":
        return {"kind": kind, "tour_artifact_id": artifact_id}
    return None


def parse_step_output(step_id: int, raw: object) -> StepOutput:
    """Validate a raw step output and check it belongs to ``step_id``.

    Raises
    ------
    ValueError
        If the payload is malformed (``ValidationError``) or its kind is
        not the one the step produces.
    """
    output = step_output_adapter.validate_python(raw)
    expected = STEP_OUTPUT_KINDS.get(step_id)
    if output.kind != expected:
        raise ValueError(
            f"step {step_id} expects output kind {expected!r}, got {output.kind!r}"
        )
    return output


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


class Run(BaseModel):
    """One pipeline execution.

    ``step`` is always ``PHASE_STEP[phase]``; the validator rejects any
    record where the two disagree.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    owner_id: str
    phase: Phase = Phase.UPLOAD
    step: int = 0
    step_outputs: dict[int, StepOutput] = {}
    last_error: str | None = None
    paused: bool = False
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @model_validator(mode="after")
    def _check_consistency(self) -> Run:
        expected = PHASE_STEP[self.phase]
        if self.step != expected:
            raise ValueError(
                f"phase {self.phase.value} belongs to step {expected}, not {self.step}"
            )
        for step_id, output in self.step_outputs.items():
            kind = STEP_OUTPUT_KINDS.get(step_id)
            if kind != output.kind:
                raise ValueError(
                    f"step {step_id} expects output kind {kind!r}, got {output.kind!r}"
                )
        return self

    @property
    def is_completed(self) -> bool:
        return self.phase == Phase.COMPLETED
