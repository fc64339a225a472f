"""Policy rule models — learned negative constraints and their audit log."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class StrengthStage(str, Enum):
    """Ordered escalation level of a rule: nudge < check < guard < law."""

    NUDGE = "nudge"
    CHECK = "check"
    GUARD = "guard"
    LAW = "law"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER: list[StrengthStage] = [
    StrengthStage.NUDGE,
    StrengthStage.CHECK,
    StrengthStage.GUARD,
    StrengthStage.LAW,
]


class RuleScope(str, Enum):
    RUN = "run"
    USER = "user"
    GLOBAL = "global"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class ContextConditions(BaseModel):
    """Structured predicate restricting where a rule applies.

    Empty lists mean "any".
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    step_ids: list[int] = []
    services: list[str] = []
    space_categories: list[str] = []

    def matches(
        self,
        step_id: int,
        service: str | None = None,
        categories: set[str] | None = None,
    ) -> bool:
        if self.step_ids and step_id not in self.step_ids:
            return False
        if self.services and service is not None:
            base = service.split(":", 1)[0]
            if base not in self.services:
                return False
        if self.space_categories and categories is not None:
            if not categories.intersection(self.space_categories):
                return False
        return True


class PolicyRule(BaseModel):
    """A learned negative constraint with strength, health and confidence."""

    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(default_factory=lambda: f"rule-{uuid.uuid4().hex}")
    scope: RuleScope = RuleScope.RUN
    owner_id: str
    run_id: str | None = None  # run scope only
    step_id: int
    category: str
    rule_text: str
    violation_count: int = Field(default=0, ge=0)
    strength_stage: StrengthStage = StrengthStage.NUDGE
    health: int = Field(default=100, ge=0, le=100)
    confidence_score: float = Field(default=1.0, ge=0.0, le=1.0)
    triggered_count: int = Field(default=0, ge=0)
    approved_despite_trigger: int = Field(default=0, ge=0)
    rejected_due_to_trigger: int = Field(default=0, ge=0)
    context_conditions: ContextConditions = ContextConditions()
    muted: bool = False
    locked: bool = False
    status: RuleStatus = RuleStatus.ACTIVE
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    last_triggered_at: datetime | None = None
    last_decay_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def rule_key(self) -> tuple[str, int, str, str]:
        """Identity of the violation, independent of scope."""
        return (self.owner_id, self.step_id, self.category, self.rule_text)


class PolicyContext(BaseModel):
    """Evaluable rules handed to the validation engine and prompt assembly."""

    model_config = ConfigDict(frozen=True)

    owner_id: str = ""
    run_id: str = ""
    step_id: int = 0
    rules: list[PolicyRule] = []

    def by_stage(self, stage: StrengthStage) -> list[PolicyRule]:
        return [r for r in self.rules if r.strength_stage == stage]


class PromotionType(str, Enum):
    ACTIVATION = "activation"
    ESCALATION = "escalation"
    DEMOTION = "demotion"
    MANUAL_PROMOTION = "manual_promotion"
    SCOPE_PROMOTION = "scope_promotion"
    OVERRIDE = "override"
    DEATH = "death"
    HUMAN_DECISION = "human_decision"
    PROFILE_RESET = "profile_reset"


class PromotionLogEntry(BaseModel):
    """One audit record for a rule change or a human job decision."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    entry_type: PromotionType
    owner_id: str = ""
    rule_id: str | None = None
    job_id: str | None = None
    from_value: str | None = None
    to_value: str | None = None
    trigger_reason: str = ""
    rule_text: str | None = None
    category: str | None = None
    violation_count: int | None = None
    actor: str = "system"
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
