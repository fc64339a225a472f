"""Stage 1 — structural schema check of the analysis document.

A document that fails the schema produces exactly one critical
``schema_invalid`` failure and ends validation: nothing downstream can
be trusted to read a malformed document.  A well-formed document then
passes through the analysis gates, limits on what the space-analysis
worker is allowed to emit.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from retour.models.analysis import SpaceAnalysis, find_embedded_images
from retour.models.verdicts import (
    Failure,
    FailureSource,
    FailureType,
    Fix,
    FixTarget,
    Severity,
)

MIN_CONFIDENCE_THRESHOLD = 0.3
MAX_SPACES_PER_FLOORPLAN = 20
MAX_FURNISHINGS_PER_SPACE = 50
PROCESSING_TIMEOUT_MS = 60_000

_MAX_EVIDENCE = 20


class StageOutcome(BaseModel):
    """Failures and fixes contributed by one validation stage."""

    model_config = ConfigDict(frozen=True)

    failures: list[Failure] = []
    fixes: list[Fix] = []


class SchemaOutcome(StageOutcome):
    analysis: SpaceAnalysis | None = None

    @property
    def structurally_valid(self) -> bool:
        return self.analysis is not None


def _format_error(err: Mapping[str, Any]) -> str:
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc or '$'}: {err.get('msg', 'invalid')}"


def check_schema(document: Mapping[str, Any] | None) -> SchemaOutcome:
    """Validate the analysis document and apply the analysis gates."""
    if document is None:
        return _invalid(["$: analysis document is missing"])

    embedded = find_embedded_images(document)
    if embedded:
        return _invalid([f"{path}: embedded image data is forbidden" for path in embedded])

    try:
        analysis = SpaceAnalysis.model_validate(document)
    except ValidationError as exc:
        return _invalid([_format_error(err) for err in exc.errors()])

    return SchemaOutcome(analysis=analysis, failures=_analysis_gates(analysis))


def _invalid(problems: list[str]) -> SchemaOutcome:
    shown = problems[:_MAX_EVIDENCE]
    failure = Failure(
        type=FailureType.SCHEMA_INVALID,
        severity=Severity.CRITICAL,
        description=f"Analysis document failed schema validation: {shown[0]}"[:500],
        evidence=shown,
        source=FailureSource.SCHEMA,
        check="schema",
    )
    fix = Fix(
        target=FixTarget.MANUAL_REVIEW,
        action="Review the analysis output; it does not match the expected structure",
        expected_effect="A valid analysis document that downstream checks can read",
        priority=1,
    )
    return SchemaOutcome(failures=[failure], fixes=[fix])


# ---------------------------------------------------------------------------
# Analysis gates
# ---------------------------------------------------------------------------


def _analysis_gates(analysis: SpaceAnalysis) -> list[Failure]:
    failures: list[Failure] = []

    if len(analysis.spaces) > MAX_SPACES_PER_FLOORPLAN:
        failures.append(
            Failure(
                type=FailureType.CONSTRAINT_VIOLATION,
                severity=Severity.HIGH,
                description=(
                    f"Too many spaces detected: {len(analysis.spaces)} "
                    f"(max {MAX_SPACES_PER_FLOORPLAN})"
                ),
                expected=f"<= {MAX_SPACES_PER_FLOORPLAN}",
                actual=str(len(analysis.spaces)),
                source=FailureSource.SCHEMA,
                check="gate_max_spaces",
            )
        )

    unflagged = [
        s for s in analysis.spaces
        if s.confidence < MIN_CONFIDENCE_THRESHOLD and not s.ambiguity_flags
    ]
    if unflagged:
        failures.append(
            Failure(
                type=FailureType.CONSTRAINT_VIOLATION,
                severity=Severity.HIGH,
                description=(
                    f"{len(unflagged)} space(s) have confidence below "
                    f"{MIN_CONFIDENCE_THRESHOLD} without ambiguity flags"
                ),
                affected_space_id=unflagged[0].space_id if len(unflagged) == 1 else None,
                evidence=[f"{s.space_id}: {s.confidence:.2f}" for s in unflagged],
                source=FailureSource.SCHEMA,
                check="gate_low_confidence_unflagged",
            )
        )

    crowded = [
        s for s in analysis.spaces
        if len(s.detected_furnishings) > MAX_FURNISHINGS_PER_SPACE
    ]
    if crowded:
        failures.append(
            Failure(
                type=FailureType.CONSTRAINT_VIOLATION,
                severity=Severity.HIGH,
                description=(
                    f"{len(crowded)} space(s) list more than "
                    f"{MAX_FURNISHINGS_PER_SPACE} furnishing entries"
                ),
                evidence=[f"{s.space_id}: {len(s.detected_furnishings)}" for s in crowded],
                source=FailureSource.SCHEMA,
                check="gate_max_furnishings",
            )
        )

    if analysis.processing_time_ms > PROCESSING_TIMEOUT_MS:
        failures.append(
            Failure(
                type=FailureType.AMBIGUITY_UNRESOLVED,
                severity=Severity.MEDIUM,
                description=(
                    f"Space analysis took {analysis.processing_time_ms}ms "
                    f"(budget {PROCESSING_TIMEOUT_MS}ms)"
                ),
                source=FailureSource.SCHEMA,
                check="gate_processing_time",
            )
        )

    return failures
