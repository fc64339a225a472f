"""Comparison verdict models — failures, fixes, decisions.

A ComparisonVerdict is created once per validation call and is never
mutated.  Its validator enforces the cross-field rules that make a
verdict internally consistent, so re-validating a dump of a verdict is
how the engine checks its own output.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FailureType(str, Enum):
    SCHEMA_INVALID = "schema_invalid"
    CONSTRAINT_VIOLATION = "constraint_violation"
    QUALITY_MISMATCH = "quality_mismatch"
    MISSING_SPACE = "missing_space"
    EXTRA_SPACE = "extra_space"
    FURNITURE_MISMATCH = "furniture_mismatch"
    STYLE_INCONSISTENCY = "style_inconsistency"
    GEOMETRY_ERROR = "geometry_error"
    AMBIGUITY_UNRESOLVED = "ambiguity_unresolved"
    LLM_CONTRADICTION = "llm_contradiction"
    TIMEOUT = "timeout"
    API_ERROR = "api_error"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class FixTarget(str, Enum):
    PROMPT = "prompt"
    INPUT = "input"
    CONSTRAINT = "constraint"
    MANUAL_REVIEW = "manual_review"


class NextStep(str, Enum):
    PROCEED = "proceed"
    RETRY = "retry"
    BLOCK_FOR_HUMAN = "block_for_human"


class FailureSource(str, Enum):
    SCHEMA = "schema"
    RULES = "rules"
    JUDGE = "judge"


class Failure(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: FailureType
    severity: Severity
    description: str = Field(min_length=1, max_length=500)
    affected_space_id: str | None = None
    expected: str | None = None
    actual: str | None = None
    evidence: list[str] = []
    source: FailureSource = FailureSource.RULES
    check: str | None = None  # name of the deterministic check, if any


class Fix(BaseModel):
    model_config = ConfigDict(frozen=True)

    target: FixTarget
    action: str = Field(min_length=1, max_length=500)
    expected_effect: str = Field(default="", max_length=500)
    priority: int = Field(default=5, ge=1, le=10)


class Expectations(BaseModel):
    """What the produced artifact is checked against."""

    model_config = ConfigDict(frozen=True)

    user_request: str | None = None
    style_constraints: list[str] = []
    expected_spaces: int | None = Field(default=None, ge=0)
    expected_room_types: list[str] = []

    @property
    def wants_semantic_check(self) -> bool:
        return bool((self.user_request or "").strip() or self.style_constraints)


class ComparisonVerdict(BaseModel):
    """Output of the validation engine for one artifact."""

    model_config = ConfigDict(frozen=True)

    verdict_id: str = Field(default_factory=lambda: f"vrd-{uuid.uuid4().hex}")
    run_id: str
    step_id: int
    artifact_id: str
    passed: bool
    user_request_summary: str = Field(min_length=1, max_length=1000)
    failures: list[Failure] = []
    fixes: list[Fix] = []
    recommended_next_step: NextStep
    triggered_rule_ids: list[str] = []
    processing_time_ms: int = Field(ge=0)
    model_used: str = Field(min_length=1)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @model_validator(mode="after")
    def _check_consistency(self) -> ComparisonVerdict:
        if not self.passed and not self.failures:
            raise ValueError("a failing verdict must list at least one failure")
        if self.passed:
            if self.recommended_next_step != NextStep.PROCEED:
                raise ValueError("a passing verdict must recommend proceed")
            blocking = [f for f in self.failures if f.severity.rank >= Severity.HIGH.rank]
            if blocking:
                raise ValueError("a passing verdict cannot carry high or critical failures")
        elif self.recommended_next_step == NextStep.PROCEED:
            raise ValueError("a failing verdict cannot recommend proceed")
        priorities = [fix.priority for fix in self.fixes]
        if priorities != sorted(priorities):
            raise ValueError("fixes must be sorted ascending by priority")
        return self

    def count(self, severity: Severity) -> int:
        return sum(1 for f in self.failures if f.severity == severity)

    def reason_chain(self) -> str:
        """Human-readable failure list plus fix suggestions."""
        lines = [f"Verdict {self.verdict_id}: {self.recommended_next_step.value}"]
        for f in self.failures:
            where = f" [{f.affected_space_id}]" if f.affected_space_id else ""
            lines.append(f"  - ({f.severity.value}) {f.type.value}{where}: {f.description}")
        for fix in self.fixes:
            lines.append(f"  * fix p{fix.priority} -> {fix.target.value}: {fix.action}")
        return "\n".join(lines)
