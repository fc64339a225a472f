"""Progressive learning — turns verdicts and outcomes into rule changes.

Flow per validated artifact:

1. ``record_verdict``: every medium-or-worse failure counts one
   violation against a run-scope rule; recurrence across independent
   runs promotes the violation to the owner's scope, and recurrence
   across independent owners promotes it to global scope.
2. ``record_outcome``: once the artifact is accepted or rejected, the
   rules that triggered update their confidence; rules that were
   evaluated without triggering lose health (good behavior).
3. ``policy_context``: the evaluable rules for the next attempt,
   with idle-time decay applied lazily on read.

Every stage change, death, promotion and override is written to the
promotion log.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from retour.core.hasher import normalize_rule_text
from retour.learning.rule_store import GLOBAL_OWNER, RuleStore
from retour.learning.strength import (
    MIN_CONFIDENCE_FOR_BLOCKING,
    apply_good_behavior,
    apply_time_decay,
    is_evaluable,
    record_trigger_outcome,
)
from retour.models.policy import (
    PolicyContext,
    PolicyRule,
    PromotionLogEntry,
    PromotionType,
    RuleScope,
    RuleStatus,
    StrengthStage,
)
from retour.models.runs import Run
from retour.models.verdicts import ComparisonVerdict, Severity

logger = logging.getLogger(__name__)

SURFACE_MIN_VIOLATIONS = 2


class PromotionNotAllowedError(RuntimeError):
    """Raised when a manual promotion to law is requested for an ineligible rule."""


class LearningEngine:
    """Progressive learning and escalation over the policy rule store.

    Parameters
    ----------
    store:
        Rule store holding rules and the promotion log.
    user_promotion_min_runs:
        Independent runs of one owner needed to promote to user scope.
    global_promotion_min_owners:
        Independent owners needed to promote to global scope.
    """

    def __init__(
        self,
        store: RuleStore,
        *,
        user_promotion_min_runs: int = 3,
        global_promotion_min_owners: int = 3,
    ) -> None:
        self._store = store
        self._user_min_runs = user_promotion_min_runs
        self._global_min_owners = global_promotion_min_owners

    @property
    def store(self) -> RuleStore:
        return self._store

    # ------------------------------------------------------------------
    # Violations and promotion
    # ------------------------------------------------------------------

    def record_verdict(
        self, run: Run, verdict: ComparisonVerdict, now: datetime | None = None
    ) -> list[PolicyRule]:
        """Count violations for a verdict's medium-or-worse failures.

        Returns the run-scope rules that were touched.
        """
        now = now or datetime.now(timezone.utc)
        touched: list[PolicyRule] = []
        seen: set[tuple[str, str]] = set()
        for failure in verdict.failures:
            if failure.severity.rank < Severity.MEDIUM.rank:
                continue
            key = (failure.type.value, normalize_rule_text(failure.description))
            if key in seen:
                continue
            seen.add(key)
            category, rule_text = key

            rule, previous = self._store.upsert_violation(
                scope=RuleScope.RUN,
                owner_id=run.owner_id,
                run_id=run.run_id,
                step_id=verdict.step_id,
                category=category,
                rule_text=rule_text,
                now=now,
            )
            self._log_change(previous, rule, reason=f"violation in verdict {verdict.verdict_id}")
            touched.append(rule)
            self._maybe_promote(run.owner_id, verdict.step_id, category, rule_text, now)
        return touched

    def _maybe_promote(
        self, owner_id: str, step_id: int, category: str, rule_text: str, now: datetime
    ) -> None:
        runs = self._store.count_distinct_runs(owner_id, step_id, category, rule_text)
        if runs < self._user_min_runs:
            return
        user_rule, previous = self._store.upsert_violation(
            scope=RuleScope.USER,
            owner_id=owner_id,
            step_id=step_id,
            category=category,
            rule_text=rule_text,
            now=now,
        )
        if previous is None:
            self._log(
                PromotionType.SCOPE_PROMOTION,
                user_rule,
                from_value=RuleScope.RUN.value,
                to_value=RuleScope.USER.value,
                reason=f"recurred in {runs} independent runs",
            )
            logger.info(
                "Rule promoted to user scope for %s: %r (%d runs)",
                owner_id, rule_text, runs,
            )
        else:
            self._log_change(previous, user_rule, reason="recurring violation")
        if user_rule.status != RuleStatus.ACTIVE:
            return

        owners = self._store.count_distinct_owners(step_id, category, rule_text)
        if owners < self._global_min_owners:
            return
        global_rule, previous = self._store.upsert_violation(
            scope=RuleScope.GLOBAL,
            owner_id=GLOBAL_OWNER,
            step_id=step_id,
            category=category,
            rule_text=rule_text,
            now=now,
        )
        if previous is None:
            self._log(
                PromotionType.SCOPE_PROMOTION,
                global_rule,
                from_value=RuleScope.USER.value,
                to_value=RuleScope.GLOBAL.value,
                reason=f"recurred for {owners} independent owners",
            )
            logger.info("Rule promoted to global scope: %r (%d owners)", rule_text, owners)
        else:
            self._log_change(previous, global_rule, reason="recurring violation")

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_outcome(
        self,
        run: Run,
        step_id: int,
        triggered_rule_ids: Iterable[str],
        approved: bool,
        now: datetime | None = None,
    ) -> None:
        """Feed an accept/reject outcome back into the rules that were evaluated."""
        now = now or datetime.now(timezone.utc)
        triggered = list(dict.fromkeys(triggered_rule_ids))
        for rule_id in triggered:
            before = self._store.get(rule_id)
            after = record_trigger_outcome(before, approved=approved, now=now)
            self._store.save(after)
            outcome = "approved despite trigger" if approved else "rejected on trigger"
            self._log_change(before, after, reason=outcome)
            logger.debug(
                "Rule %s %s: confidence %.2f -> %.2f",
                rule_id, outcome, before.confidence_score, after.confidence_score,
            )
        if not approved:
            return
        context = self.policy_context(run.owner_id, run.run_id, step_id, now=now)
        for rule in context.rules:
            if rule.rule_id in triggered:
                continue
            after = apply_good_behavior(rule)
            if after != rule:
                self._store.save(after)
                self._log_change(rule, after, reason="evaluated without triggering")

    # ------------------------------------------------------------------
    # Reads and decay
    # ------------------------------------------------------------------

    def policy_context(
        self,
        owner_id: str,
        run_id: str,
        step_id: int,
        *,
        service: str | None = None,
        categories: set[str] | None = None,
        now: datetime | None = None,
    ) -> PolicyContext:
        """Evaluable rules for one run step, decayed up to ``now``.

        When the same violation exists at several scopes, only the
        strongest copy is returned.
        """
        now = now or datetime.now(timezone.utc)
        chosen: dict[tuple[str, str], PolicyRule] = {}
        for rule in self._store.applicable_rules(owner_id, run_id, step_id):
            rule = self._decay(rule, now)
            if not is_evaluable(rule):
                continue
            if not rule.context_conditions.matches(step_id, service, categories):
                continue
            key = (rule.category, rule.rule_text)
            held = chosen.get(key)
            if held is None or rule.strength_stage.rank > held.strength_stage.rank:
                chosen[key] = rule
        return PolicyContext(
            owner_id=owner_id,
            run_id=run_id,
            step_id=step_id,
            rules=list(chosen.values()),
        )

    def sweep(self, now: datetime | None = None) -> int:
        """Apply idle-time decay to every active rule; return how many changed."""
        now = now or datetime.now(timezone.utc)
        changed = 0
        for rule in self._store.list_rules(status=RuleStatus.ACTIVE):
            if self._decay(rule, now) != rule:
                changed += 1
        logger.info("Decay sweep changed %d rule(s)", changed)
        return changed

    def _decay(self, rule: PolicyRule, now: datetime) -> PolicyRule:
        decayed = apply_time_decay(rule, now)
        if decayed != rule:
            self._store.save(decayed)
            self._log_change(rule, decayed, reason="idle time decay")
        return decayed

    def surface_run_rules(self, run_id: str, step_id: int | None = None) -> list[PolicyRule]:
        """Run-scope rules seen at least twice, most frequent first."""
        rules = [
            r
            for r in self._store.list_rules(scope=RuleScope.RUN, run_id=run_id, step_id=step_id)
            if r.violation_count >= SURFACE_MIN_VIOLATIONS
        ]
        return sorted(rules, key=lambda r: r.violation_count, reverse=True)

    # ------------------------------------------------------------------
    # Administrative actions
    # ------------------------------------------------------------------

    def promote_to_law(self, rule_id: str, actor: str, reason: str) -> PolicyRule:
        """Manually promote a guard rule to law.

        Raises
        ------
        PromotionNotAllowedError
            If the rule is not an active guard or its confidence is too low.
        """
        rule = self._store.get(rule_id)
        if rule.status != RuleStatus.ACTIVE:
            raise PromotionNotAllowedError(f"Rule {rule_id} is {rule.status.value}")
        if rule.strength_stage != StrengthStage.GUARD:
            raise PromotionNotAllowedError(
                f"Rule {rule_id} is at {rule.strength_stage.value}; only guard rules become law"
            )
        if rule.confidence_score < MIN_CONFIDENCE_FOR_BLOCKING:
            raise PromotionNotAllowedError(
                f"Rule {rule_id} confidence {rule.confidence_score:.2f} is below "
                f"{MIN_CONFIDENCE_FOR_BLOCKING}"
            )
        promoted = rule.model_copy(update={"strength_stage": StrengthStage.LAW})
        self._store.save(promoted)
        self._log(
            PromotionType.MANUAL_PROMOTION,
            promoted,
            from_value=StrengthStage.GUARD.value,
            to_value=StrengthStage.LAW.value,
            reason=reason,
            actor=actor,
        )
        logger.info("Rule %s promoted to law by %s", rule_id, actor)
        return promoted

    def set_muted(self, rule_id: str, muted: bool, actor: str) -> PolicyRule:
        return self._override(rule_id, "muted", muted, actor)

    def set_locked(self, rule_id: str, locked: bool, actor: str) -> PolicyRule:
        return self._override(rule_id, "locked", locked, actor)

    def _override(self, rule_id: str, field: str, value: bool, actor: str) -> PolicyRule:
        rule = self._store.get(rule_id)
        current = getattr(rule, field)
        if current == value:
            return rule
        updated = rule.model_copy(update={field: value})
        self._store.save(updated)
        self._log(
            PromotionType.OVERRIDE,
            updated,
            from_value=f"{field}={current}",
            to_value=f"{field}={value}",
            reason=f"{field} set by {actor}",
            actor=actor,
        )
        return updated

    def reset_profile(self, owner_id: str, actor: str) -> int:
        """Disable every user-scope rule of one owner; return how many."""
        rules = self._store.list_rules(
            owner_id=owner_id, scope=RuleScope.USER, status=RuleStatus.ACTIVE
        )
        for rule in rules:
            self._store.save(rule.model_copy(update={"status": RuleStatus.DISABLED}))
        self._store.log_promotion(
            PromotionLogEntry(
                entry_type=PromotionType.PROFILE_RESET,
                owner_id=owner_id,
                to_value=RuleStatus.DISABLED.value,
                trigger_reason=f"profile reset, {len(rules)} rule(s) disabled",
                actor=actor,
            )
        )
        logger.info("Learning profile of %s reset by %s (%d rules)", owner_id, actor, len(rules))
        return len(rules)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _log_change(
        self, before: PolicyRule | None, after: PolicyRule, *, reason: str
    ) -> None:
        if before is None:
            self._log(
                PromotionType.ACTIVATION,
                after,
                to_value=after.strength_stage.value,
                reason=reason,
            )
            return
        if before.status == RuleStatus.ACTIVE and after.status == RuleStatus.DISABLED:
            self._log(
                PromotionType.DEATH,
                after,
                from_value=f"health={before.health}",
                to_value="health=0",
                reason=reason,
            )
            logger.info("Rule died: %r", after.rule_text)
            return
        old, new = before.strength_stage, after.strength_stage
        if old == new:
            return
        kind = PromotionType.ESCALATION if new.rank > old.rank else PromotionType.DEMOTION
        self._log(kind, after, from_value=old.value, to_value=new.value, reason=reason)
        logger.info("Rule %s %s: %s -> %s", after.rule_id, kind.value, old.value, new.value)

    def _log(
        self,
        entry_type: PromotionType,
        rule: PolicyRule,
        *,
        from_value: str | None = None,
        to_value: str | None = None,
        reason: str = "",
        actor: str = "system",
    ) -> None:
        self._store.log_promotion(
            PromotionLogEntry(
                entry_type=entry_type,
                owner_id=rule.owner_id,
                rule_id=rule.rule_id,
                from_value=from_value,
                to_value=to_value,
                trigger_reason=reason,
                rule_text=rule.rule_text,
                category=rule.category,
                violation_count=rule.violation_count,
                actor=actor,
            )
        )
