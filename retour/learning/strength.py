"""Pure strength, confidence and health-decay math for policy rules.

Nothing here touches storage or reads the clock: every function takes a
rule (and, where time matters, ``now``) and returns a new rule.  The
rule store and the escalation engine decide *when* to apply them.

Strength ladder:  nudge (1 violation) -> check (3) -> guard (6) -> law (manual only)

Health (0-100) decays:
- 2 per idle day
- 5 each time the rule was evaluated and did not trigger
- 30 when the rule triggered but the artifact was approved anyway
Crossing a floor demotes one stage (guard -> check at <=30, check -> nudge
at <=15).  Health 0 disables the rule.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from retour.models.policy import PolicyRule, RuleStatus, StrengthStage

# Violation counts at which a rule reaches each stage.
STRENGTH_THRESHOLDS: dict[StrengthStage, int] = {
    StrengthStage.NUDGE: 1,
    StrengthStage.CHECK: 3,
    StrengthStage.GUARD: 6,
}

TIME_DECAY_PER_DAY = 2
GOOD_BEHAVIOR_DECAY = 5
FALSE_POSITIVE_DECAY = 30

GUARD_DEMOTION_FLOOR = 30
CHECK_DEMOTION_FLOOR = 15

MIN_CONFIDENCE_FOR_BLOCKING = 0.7
MIN_SAMPLE_SIZE = 5

_MAX_DECAY_DAYS = 100 // TIME_DECAY_PER_DAY + 1


def calculate_confidence(triggered: int, rejected: int) -> float:
    """Empirical reliability: rejections caused / times triggered.

    Fewer than ``MIN_SAMPLE_SIZE`` observations means no evidence yet,
    which reads as full confidence.
    """
    if triggered < MIN_SAMPLE_SIZE:
        return 1.0
    return max(0.0, min(1.0, rejected / triggered))


def calculate_strength_stage(
    violation_count: int,
    confidence: float,
    current: StrengthStage = StrengthStage.NUDGE,
) -> StrengthStage:
    """Stage implied by the violation count, capped by confidence.

    Accumulation never produces ``law``; a rule already at ``law`` keeps it
    unless confidence falls below the blocking threshold.
    """
    if confidence < MIN_CONFIDENCE_FOR_BLOCKING:
        return StrengthStage.NUDGE
    if current == StrengthStage.LAW:
        return StrengthStage.LAW
    if violation_count >= STRENGTH_THRESHOLDS[StrengthStage.GUARD]:
        return StrengthStage.GUARD
    if violation_count >= STRENGTH_THRESHOLDS[StrengthStage.CHECK]:
        return StrengthStage.CHECK
    return StrengthStage.NUDGE


def demote_for_health(stage: StrengthStage, health: int) -> StrengthStage:
    """Demote at most one stage when health is at or below that stage's floor."""
    if stage == StrengthStage.GUARD and health <= GUARD_DEMOTION_FLOOR:
        return StrengthStage.CHECK
    if stage == StrengthStage.CHECK and health <= CHECK_DEMOTION_FLOOR:
        return StrengthStage.NUDGE
    return stage


def _spend_health(rule: PolicyRule, amount: int, **extra: object) -> PolicyRule:
    health = max(0, rule.health - amount)
    update: dict[str, object] = {
        "health": health,
        "strength_stage": demote_for_health(rule.strength_stage, health),
        **extra,
    }
    if health == 0:
        update["status"] = RuleStatus.DISABLED
    return rule.model_copy(update=update)


def apply_time_decay(rule: PolicyRule, now: datetime) -> PolicyRule:
    """Apply one decay event per whole idle day since ``last_decay_at``.

    Locked, muted and disabled rules are left untouched.
    """
    if rule.locked or rule.muted or rule.status == RuleStatus.DISABLED:
        return rule
    days = int((now - rule.last_decay_at) / timedelta(days=1))
    if days <= 0:
        return rule
    decayed = rule
    for _ in range(min(days, _MAX_DECAY_DAYS)):
        decayed = _spend_health(decayed, TIME_DECAY_PER_DAY)
        if decayed.status == RuleStatus.DISABLED:
            break
    return decayed.model_copy(
        update={"last_decay_at": rule.last_decay_at + timedelta(days=days)}
    )


def apply_good_behavior(rule: PolicyRule) -> PolicyRule:
    """The rule was evaluated and did not trigger: the actor learned it."""
    if rule.locked or rule.status == RuleStatus.DISABLED:
        return rule
    return _spend_health(rule, GOOD_BEHAVIOR_DECAY)


def apply_false_positive(rule: PolicyRule) -> PolicyRule:
    """The rule triggered but the artifact was approved anyway."""
    if rule.locked or rule.status == RuleStatus.DISABLED:
        return rule
    return _spend_health(rule, FALSE_POSITIVE_DECAY)


def record_trigger_outcome(rule: PolicyRule, *, approved: bool, now: datetime) -> PolicyRule:
    """Count one triggering and its outcome, then re-derive confidence and stage."""
    triggered = rule.triggered_count + 1
    rejected = rule.rejected_due_to_trigger + (0 if approved else 1)
    approved_count = rule.approved_despite_trigger + (1 if approved else 0)
    confidence = calculate_confidence(triggered, rejected)
    updated = rule.model_copy(
        update={
            "triggered_count": triggered,
            "rejected_due_to_trigger": rejected,
            "approved_despite_trigger": approved_count,
            "confidence_score": confidence,
            "last_triggered_at": now,
        }
    )
    if approved:
        updated = apply_false_positive(updated)
    if confidence < MIN_CONFIDENCE_FOR_BLOCKING:
        updated = updated.model_copy(update={"strength_stage": StrengthStage.NUDGE})
    return updated


def record_violation(rule: PolicyRule) -> PolicyRule:
    """Count one more violation and re-derive the stage from the count."""
    count = rule.violation_count + 1
    stage = calculate_strength_stage(count, rule.confidence_score, rule.strength_stage)
    return rule.model_copy(update={"violation_count": count, "strength_stage": stage})


def is_evaluable(rule: PolicyRule) -> bool:
    """Whether the rule may take part in trigger evaluation."""
    return (
        rule.status == RuleStatus.ACTIVE
        and rule.health > 0
        and not rule.muted
    )
