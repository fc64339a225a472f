"""Trace event model and naming conventions for collaborator calls."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Steps whose outputs are visual and go through the semantic judge.
QA_EVALUATABLE_STEPS: frozenset[int] = frozenset({1, 2, 4, 5, 6, 7})

PIPELINE_TRACE_NAME = "pipeline_run"


class TraceKind(str, Enum):
    GENERATION = "generation"
    JUDGE = "judge"
    RETRY_CORRECTION = "retry_correction"
    PHASE_TRANSITION = "phase_transition"
    JOB_LOCK = "job_lock"


def step_supports_qa(step_id: int) -> bool:
    return step_id in QA_EVALUATABLE_STEPS


def trace_name(kind: TraceKind, step_id: int) -> str:
    """Standard event name, e.g. ``qa_judge_step_2``."""
    prefix = {
        TraceKind.GENERATION: "generation",
        TraceKind.JUDGE: "qa_judge",
        TraceKind.RETRY_CORRECTION: "retry_correction",
        TraceKind.PHASE_TRANSITION: "phase_transition",
        TraceKind.JOB_LOCK: "job_lock",
    }[kind]
    return f"{prefix}_step_{step_id}"


class TraceEvent(BaseModel):
    """A structured trace of one call or state change."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    kind: TraceKind
    run_id: str
    step_id: int
    attempt_index: int | None = None
    model_name: str | None = None
    prompt_name: str | None = None
    prompt_version: str | None = None
    latency_ms: int | None = None
    metadata: dict[str, Any] = {}
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @classmethod
    def for_step(cls, kind: TraceKind, run_id: str, step_id: int, **fields: Any) -> TraceEvent:
        metadata = dict(fields.pop("metadata", {}) or {})
        metadata.setdefault("supports_qa_evaluation", step_supports_qa(step_id))
        return cls(
            name=trace_name(kind, step_id),
            kind=kind,
            run_id=run_id,
            step_id=step_id,
            metadata=metadata,
            **fields,
        )
