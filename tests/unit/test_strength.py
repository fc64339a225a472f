"""Tests for rule strength, confidence and health decay."""

from __future__ import annotations

from datetime import timedelta

import pytest

from retour.learning.strength import (
    apply_false_positive,
    apply_good_behavior,
    apply_time_decay,
    calculate_confidence,
    calculate_strength_stage,
    demote_for_health,
    is_evaluable,
    record_trigger_outcome,
    record_violation,
)
from retour.models.policy import RuleStatus, StrengthStage


class TestConfidence:
    def test_small_sample_is_full_confidence(self):
        assert calculate_confidence(4, 0) == 1.0

    def test_ratio_of_rejections(self):
        assert calculate_confidence(10, 7) == pytest.approx(0.7)
        assert calculate_confidence(5, 0) == 0.0


class TestStrengthStage:
    @pytest.mark.parametrize(
        "count, stage",
        [
            (1, StrengthStage.NUDGE),
            (2, StrengthStage.NUDGE),
            (3, StrengthStage.CHECK),
            (5, StrengthStage.CHECK),
            (6, StrengthStage.GUARD),
            (50, StrengthStage.GUARD),
        ],
    )
    def test_thresholds(self, count, stage):
        assert calculate_strength_stage(count, 1.0) == stage

    def test_low_confidence_caps_at_nudge(self):
        assert calculate_strength_stage(10, 0.5) == StrengthStage.NUDGE

    def test_law_is_sticky(self):
        assert calculate_strength_stage(1, 0.9, StrengthStage.LAW) == StrengthStage.LAW
        assert calculate_strength_stage(1, 0.6, StrengthStage.LAW) == StrengthStage.NUDGE

    def test_demotion_floors(self):
        assert demote_for_health(StrengthStage.GUARD, 30) == StrengthStage.CHECK
        assert demote_for_health(StrengthStage.GUARD, 31) == StrengthStage.GUARD
        assert demote_for_health(StrengthStage.CHECK, 15) == StrengthStage.NUDGE
        assert demote_for_health(StrengthStage.LAW, 0) == StrengthStage.LAW


class TestViolations:
    def test_record_violation_escalates(self, make_rule):
        rule = make_rule(violation_count=2)
        updated = record_violation(rule)
        assert updated.violation_count == 3
        assert updated.strength_stage == StrengthStage.CHECK
        assert rule.violation_count == 2  # original untouched


class TestDecay:
    def test_no_decay_same_day(self, make_rule, now):
        rule = make_rule()
        assert apply_time_decay(rule, now + timedelta(hours=23)) == rule

    def test_two_per_idle_day(self, make_rule, now):
        decayed = apply_time_decay(make_rule(), now + timedelta(days=3, hours=5))
        assert decayed.health == 94
        assert decayed.last_decay_at == now + timedelta(days=3)

    def test_long_idle_disables(self, make_rule, now):
        decayed = apply_time_decay(make_rule(), now + timedelta(days=60))
        assert decayed.health == 0
        assert decayed.status == RuleStatus.DISABLED

    def test_locked_and_muted_do_not_decay(self, make_rule, now):
        later = now + timedelta(days=10)
        assert apply_time_decay(make_rule(locked=True), later).health == 100
        assert apply_time_decay(make_rule(muted=True), later).health == 100

    def test_guard_demotes_as_health_falls(self, make_rule, now):
        rule = make_rule(strength_stage=StrengthStage.GUARD, health=34, violation_count=6)
        decayed = apply_time_decay(rule, now + timedelta(days=2))
        assert decayed.health == 30
        assert decayed.strength_stage == StrengthStage.CHECK

    def test_good_behavior(self, make_rule):
        assert apply_good_behavior(make_rule()).health == 95
        assert apply_good_behavior(make_rule(locked=True)).health == 100

    def test_false_positive(self, make_rule):
        assert apply_false_positive(make_rule()).health == 70
        dead = apply_false_positive(make_rule(health=20))
        assert dead.health == 0
        assert dead.status == RuleStatus.DISABLED


class TestTriggerOutcome:
    def test_rejection_counts(self, make_rule, now):
        updated = record_trigger_outcome(make_rule(), approved=False, now=now)
        assert updated.triggered_count == 1
        assert updated.rejected_due_to_trigger == 1
        assert updated.health == 100
        assert updated.last_triggered_at == now

    def test_approval_is_false_positive(self, make_rule, now):
        updated = record_trigger_outcome(make_rule(), approved=True, now=now)
        assert updated.approved_despite_trigger == 1
        assert updated.health == 70

    def test_unreliable_rule_drops_to_nudge(self, make_rule, now):
        rule = make_rule(
            strength_stage=StrengthStage.GUARD,
            violation_count=8,
            triggered_count=4,
            rejected_due_to_trigger=2,
            approved_despite_trigger=2,
        )
        updated = record_trigger_outcome(rule, approved=False, now=now)
        assert updated.confidence_score == pytest.approx(0.6)
        assert updated.strength_stage == StrengthStage.NUDGE


class TestEvaluable:
    def test_evaluable(self, make_rule):
        assert is_evaluable(make_rule())
        assert not is_evaluable(make_rule(muted=True))
        assert not is_evaluable(make_rule(status=RuleStatus.DISABLED))
        assert not is_evaluable(make_rule(health=0))
