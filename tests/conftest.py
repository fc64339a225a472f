"""Shared test fixtures for retour."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from retour.config import RetourSettings
from retour.core.collaborators import (
    GenerationRequest,
    GenerationResult,
    JudgeRequest,
    JudgeResponse,
)
from retour.core.job_ledger import JobLedger
from retour.core.orchestrator import Orchestrator
from retour.core.phase_machine import PhaseMachine
from retour.core.run_store import RunStore
from retour.learning.escalation import LearningEngine
from retour.learning.rule_store import RuleStore
from retour.models.artifacts import Artifact, ArtifactKind
from retour.models.policy import PolicyRule
from retour.models.runs import Run
from retour.models.verdicts import (
    ComparisonVerdict,
    Failure,
    FailureType,
    Fix,
    NextStep,
    Severity,
)
from retour.observability.dispatcher import TraceDispatcher
from retour.observability.sinks import JsonlTraceSink

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    """A fixed clock reading for time-dependent logic."""
    return FIXED_NOW


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """One SQLite file shared by every store of a test."""
    return tmp_path / "retour.db"


@pytest.fixture
def run_store(db_path: Path) -> RunStore:
    return RunStore(db_path)


@pytest.fixture
def ledger(db_path: Path) -> JobLedger:
    """Provide a fresh JobLedger with a 300s lock TTL."""
    return JobLedger(db_path, lock_ttl_seconds=300, default_max_attempts=3)


@pytest.fixture
def rule_store(db_path: Path) -> RuleStore:
    return RuleStore(db_path)


@pytest.fixture
def trace_sink(tmp_path: Path) -> JsonlTraceSink:
    return JsonlTraceSink(tmp_path / "traces.jsonl")


@pytest.fixture
def tracer(trace_sink: JsonlTraceSink) -> TraceDispatcher:
    return TraceDispatcher([trace_sink])


@pytest.fixture
def machine(run_store: RunStore, tracer: TraceDispatcher) -> PhaseMachine:
    return PhaseMachine(run_store, tracer)


@pytest.fixture
def learning(rule_store: RuleStore) -> LearningEngine:
    return LearningEngine(rule_store)


@pytest.fixture
def run(run_store: RunStore) -> Run:
    """A persisted run at upload for owner ``owner-a``."""
    return run_store.create_run(Run(run_id="rt-test-001", owner_id="owner-a"))


@pytest.fixture
def settings(tmp_path: Path) -> RetourSettings:
    """Development settings with every path under ``tmp_path``."""
    return RetourSettings(
        environment="development",
        database_path=tmp_path / "retour.db",
        trace_log_path=tmp_path / "traces.jsonl",
    )


# ---------------------------------------------------------------------------
# Document, artifact and verdict factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_space() -> Callable[..., dict[str, Any]]:
    """Factory fixture: one space entry of an analysis document."""

    def _factory(
        space_id: str = "space_living",
        label: str = "Living room",
        category: str = "living_room",
        confidence: float = 0.9,
        furnishings: list[str] | None = None,
        **overrides: Any,
    ) -> dict[str, Any]:
        items = ["sofa"] if furnishings is None else furnishings
        space = {
            "space_id": space_id,
            "label": label,
            "category": category,
            "confidence": confidence,
            "detected_furnishings": [
                {"item_type": item, "count": 1, "confidence": 0.9} for item in items
            ],
            "geometry_notes": "",
            "ambiguity_flags": [],
        }
        space.update(overrides)
        return space

    return _factory


@pytest.fixture
def make_analysis(make_space) -> Callable[..., dict[str, Any]]:
    """Factory fixture: a valid analysis document.

    The default plan (living room, bedroom, bathroom, kitchen) produces
    no failures at all.
    """

    def _factory(
        spaces: list[dict[str, Any]] | None = None,
        run_id: str = "rt-test-001",
        **overrides: Any,
    ) -> dict[str, Any]:
        if spaces is None:
            spaces = [
                make_space(),
                make_space("space_bedroom", "Bedroom", "bedroom", furnishings=["bed"]),
                make_space("space_bathroom", "Bathroom", "bathroom", furnishings=[]),
                make_space("space_kitchen", "Kitchen", "kitchen", furnishings=["stove"]),
            ]
        document = {
            "run_id": run_id,
            "step_id": "space_analysis",
            "spaces": spaces,
            "global_notes": "",
            "processing_time_ms": 1200,
            "model_used": "analysis-model",
        }
        document.update(overrides)
        return document

    return _factory


@pytest.fixture
def single_space_analysis(make_analysis, make_space) -> dict[str, Any]:
    """A document whose only failure is the high-severity min-spaces check."""
    return make_analysis(
        spaces=[make_space("space_kitchen", "Kitchen", "kitchen", furnishings=["stove"])]
    )


@pytest.fixture
def make_artifact() -> Callable[..., Artifact]:
    """Factory fixture: a content-addressed image artifact."""
    counter = itertools.count(1)

    def _factory(storage_ref: str | None = None, **metadata: Any) -> Artifact:
        ref = storage_ref or f"s3://renders/test-{next(counter)}.png"
        return Artifact.create(ArtifactKind.IMAGE, ref, **metadata)

    return _factory


@pytest.fixture
def make_failure() -> Callable[..., Failure]:
    def _factory(
        severity: Severity = Severity.HIGH,
        failure_type: FailureType = FailureType.MISSING_SPACE,
        description: str = "Floor plan has only 1 spaces, expected at least 2",
        **overrides: Any,
    ) -> Failure:
        return Failure(
            type=failure_type, severity=severity, description=description, **overrides
        )

    return _factory


@pytest.fixture
def make_verdict() -> Callable[..., ComparisonVerdict]:
    """Factory fixture: a self-consistent verdict for the given failures."""

    def _factory(
        failures: list[Failure] | None = None,
        run_id: str = "rt-test-001",
        step_id: int = 1,
        artifact_id: str = "sha256:artifact",
        fixes: list[Fix] | None = None,
        triggered_rule_ids: list[str] | None = None,
        **overrides: Any,
    ) -> ComparisonVerdict:
        failures = failures or []
        ranks = [f.severity for f in failures]
        if Severity.CRITICAL in ranks or len(failures) > 5:
            passed, next_step = False, NextStep.BLOCK_FOR_HUMAN
        elif Severity.HIGH in ranks:
            passed, next_step = False, NextStep.RETRY
        else:
            passed, next_step = True, NextStep.PROCEED
        fields: dict[str, Any] = {
            "run_id": run_id,
            "step_id": step_id,
            "artifact_id": artifact_id,
            "passed": passed,
            "user_request_summary": "No specific user request provided",
            "failures": failures,
            "fixes": fixes or [],
            "recommended_next_step": next_step,
            "triggered_rule_ids": triggered_rule_ids or [],
            "processing_time_ms": 5,
            "model_used": "rules-only",
        }
        fields.update(overrides)
        return ComparisonVerdict(**fields)

    return _factory


@pytest.fixture
def make_rule(now) -> Callable[..., PolicyRule]:
    """Factory fixture: an in-memory run-scope rule."""

    def _factory(**overrides: Any) -> PolicyRule:
        fields: dict[str, Any] = {
            "owner_id": "owner-a",
            "run_id": "rt-test-001",
            "step_id": 1,
            "category": "missing_space",
            "rule_text": "floor plan has only # spaces, expected at least #",
            "violation_count": 1,
            "created_at": now,
            "last_decay_at": now,
        }
        fields.update(overrides)
        return PolicyRule(**fields)

    return _factory


# ---------------------------------------------------------------------------
# Stub collaborators
# ---------------------------------------------------------------------------


class ScriptedGenerator:
    """Generation stub returning one scripted analysis document per call.

    The last document is repeated once the script runs out.  Entries that
    are exceptions are raised instead.  ``step_output`` may be a raw dict
    returned verbatim on every call.
    """

    def __init__(
        self, documents: list[Any], *, step_output: bool | dict[str, Any] = True
    ) -> None:
        self.documents = documents
        self.requests: list[GenerationRequest] = []
        self._step_output = step_output

    def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        index = min(len(self.requests), len(self.documents)) - 1
        document = self.documents[index]
        if isinstance(document, Exception):
            raise document
        artifact = Artifact.create(
            ArtifactKind.IMAGE,
            f"s3://renders/{request.run_id}/step{request.step_id}/attempt{request.attempt}.png",
        )
        output = None
        if isinstance(self._step_output, dict):
            output = self._step_output
        elif self._step_output and request.step_id == 1:
            output = {"kind": "top_down_3d", "artifact_id": artifact.artifact_id}
        return GenerationResult(
            artifact=artifact,
            analysis=document,
            model_name="stub-generator",
            prompt_name="top_down_3d",
            step_output=output,
        )


class StubJudge:
    """Judge stub returning a fixed response and recording requests."""

    def __init__(self, response: JudgeResponse | None = None, *, fail: bool = False) -> None:
        self.response = response or JudgeResponse(summary="looks fine", model="stub-judge")
        self.requests: list[JudgeRequest] = []
        self.fail = fail

    @property
    def model_name(self) -> str:
        return "stub-judge"

    def compare(self, request: JudgeRequest) -> JudgeResponse:
        self.requests.append(request)
        if self.fail:
            raise ConnectionError("judge unavailable")
        return self.response


@pytest.fixture
def make_orchestrator(settings: RetourSettings) -> Callable[..., Orchestrator]:
    """Factory fixture: an orchestrator over tmp paths that never sleeps."""

    def _factory(
        generator: Any = None,
        judge: Any = None,
        **setting_overrides: Any,
    ) -> Orchestrator:
        config = settings.model_copy(update=setting_overrides) if setting_overrides else settings
        return Orchestrator(
            config=config,
            generator=generator,
            judge=judge,
            sleep=lambda _seconds: None,
        )

    return _factory


@pytest.fixture
def make_generator() -> Callable[..., ScriptedGenerator]:
    """Factory fixture: ``make_generator([doc1, doc2, ...])``."""
    return ScriptedGenerator


@pytest.fixture
def make_judge() -> Callable[..., StubJudge]:
    """Factory fixture: ``make_judge(JudgeResponse(...))`` or ``make_judge(fail=True)``."""
    return StubJudge
