"""Comparison engine — decides proceed / retry / block for one artifact.

Stages, each additive to the failure list:

1. schema: strict structure of the analysis document; the only early exit
2. rules: deterministic battery over the analysis fields
3. semantic: external judge, only when the caller supplied free text
4. policy: learned rules raise the severity floor of matching failures

The decision policy is fixed:

- any critical failure            -> fail, block_for_human
- more than 5 failures            -> fail, block_for_human
- any high failure                -> fail, retry
- only medium / low (or nothing)  -> pass, proceed
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from retour.core.collaborators import (
    CollaboratorCaller,
    JudgeRequest,
    JudgeResponse,
    JudgeService,
)
from retour.core.hasher import normalize_rule_text
from retour.models.artifacts import Artifact
from retour.models.policy import PolicyContext, PolicyRule, StrengthStage
from retour.models.verdicts import (
    ComparisonVerdict,
    Expectations,
    Failure,
    Fix,
    NextStep,
    Severity,
)
from retour.observability.dispatcher import TraceDispatcher
from retour.observability.events import TraceEvent, TraceKind
from retour.validation.judge import merge_judge_findings, space_payload
from retour.validation.rules import run_rules
from retour.validation.schema_stage import SchemaOutcome, check_schema

logger = logging.getLogger(__name__)

MAX_FAILURES_BEFORE_BLOCK = 5
RULES_ONLY_MODEL = "rules-only"
NO_REQUEST_SUMMARY = "No specific user request provided"

# Minimum severity a matching failure is raised to, per rule strength.
STRENGTH_SEVERITY_FLOOR: dict[StrengthStage, Severity | None] = {
    StrengthStage.NUDGE: None,
    StrengthStage.CHECK: Severity.MEDIUM,
    StrengthStage.GUARD: Severity.HIGH,
    StrengthStage.LAW: Severity.CRITICAL,
}


class VerdictIntegrityError(RuntimeError):
    """Raised when the engine produced a verdict that fails its own schema."""


def decide(failures: list[Failure]) -> tuple[bool, NextStep]:
    """Apply the fixed decision policy to a failure list."""
    if any(f.severity == Severity.CRITICAL for f in failures):
        return False, NextStep.BLOCK_FOR_HUMAN
    if len(failures) > MAX_FAILURES_BEFORE_BLOCK:
        return False, NextStep.BLOCK_FOR_HUMAN
    if any(f.severity == Severity.HIGH for f in failures):
        return False, NextStep.RETRY
    return True, NextStep.PROCEED


def rule_matches(rule: PolicyRule, failure: Failure) -> bool:
    """A rule matches a failure of its category with the same normalized text."""
    return (
        rule.category == failure.type.value
        and rule.rule_text == normalize_rule_text(failure.description)
    )


def apply_policy(
    failures: list[Failure], context: PolicyContext | None
) -> tuple[list[Failure], list[str]]:
    """Raise severities per matching rule strength; return ids of triggered rules."""
    if context is None or not context.rules:
        return failures, []
    triggered: list[str] = []
    adjusted: list[Failure] = []
    for failure in failures:
        current = failure
        for rule in context.rules:
            if rule.muted or not rule_matches(rule, failure):
                continue
            if rule.rule_id not in triggered:
                triggered.append(rule.rule_id)
            floor = STRENGTH_SEVERITY_FLOOR[rule.strength_stage]
            if floor is not None and floor.rank > current.severity.rank:
                current = current.model_copy(update={"severity": floor})
        adjusted.append(current)
    return adjusted, triggered


class ComparisonEngine:
    """Validates artifacts against schema, rules, judge and learned policy.

    Parameters
    ----------
    judge:
        Semantic judge collaborator.  Without one, the semantic stage is
        skipped and the verdict is marked ``rules-only``.
    caller:
        Timeout / retry wrapper used for judge calls.
    tracer:
        Optional trace dispatcher for judge call events.
    clock:
        Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        judge: JudgeService | None = None,
        *,
        caller: CollaboratorCaller | None = None,
        tracer: TraceDispatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._judge = judge
        self._caller = caller or CollaboratorCaller(timeout_seconds=120.0)
        self._tracer = tracer
        self._clock = clock

    def validate(
        self,
        artifact: Artifact,
        expectations: Expectations,
        policy_context: PolicyContext | None = None,
        *,
        analysis: Mapping[str, Any] | None,
        run_id: str,
        step_id: int,
        attempt: int | None = None,
    ) -> ComparisonVerdict:
        """Produce the verdict for one artifact.

        Raises
        ------
        CollaboratorError
            If the judge is needed and keeps failing after retries.
        VerdictIntegrityError
            If the assembled verdict is internally inconsistent.
        """
        started = self._clock()
        model_used = RULES_ONLY_MODEL
        summary = NO_REQUEST_SUMMARY

        schema = check_schema(analysis)
        failures: list[Failure] = list(schema.failures)
        fixes: list[Fix] = list(schema.fixes)

        if schema.analysis is not None:
            rules = run_rules(schema.analysis, expectations)
            failures.extend(rules.failures)
            fixes.extend(rules.fixes)

            if not expectations.wants_semantic_check:
                summary = f"Automated validation of {len(schema.analysis.spaces)} detected spaces"
            elif self._judge is None:
                logger.warning(
                    "Run %s step %d: free-text expectations given but no judge configured",
                    run_id, step_id,
                )
            else:
                response = self._call_judge(
                    schema, expectations, policy_context, failures,
                    run_id=run_id, step_id=step_id, attempt=attempt,
                )
                failures, fixes = merge_judge_findings(
                    failures, fixes, response.failures, response.fixes
                )
                model_used = response.model or self._judge.model_name
                summary = (
                    response.summary.strip()
                    or (expectations.user_request or "").strip()
                    or "; ".join(expectations.style_constraints)
                    or NO_REQUEST_SUMMARY
                )

        failures, triggered = apply_policy(failures, policy_context)
        passed, next_step = decide(failures)
        elapsed_ms = max(int((self._clock() - started) * 1000), 0)

        verdict = self._assemble(
            run_id=run_id,
            step_id=step_id,
            artifact_id=artifact.artifact_id,
            passed=passed,
            user_request_summary=summary[:1000],
            failures=failures,
            fixes=sorted(fixes, key=lambda f: f.priority),
            recommended_next_step=next_step,
            triggered_rule_ids=triggered,
            processing_time_ms=elapsed_ms,
            model_used=model_used,
        )
        logger.info(
            "Verdict %s for %s (run=%s step=%d): %s, %d failure(s), %d fix(es)",
            verdict.verdict_id,
            artifact.artifact_id[:19],
            run_id,
            step_id,
            next_step.value,
            len(verdict.failures),
            len(verdict.fixes),
        )
        return verdict

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _call_judge(
        self,
        schema: SchemaOutcome,
        expectations: Expectations,
        policy_context: PolicyContext | None,
        failures: list[Failure],
        *,
        run_id: str,
        step_id: int,
        attempt: int | None,
    ) -> JudgeResponse:
        assert self._judge is not None and schema.analysis is not None
        request = JudgeRequest(
            run_id=run_id,
            step_id=step_id,
            spaces=space_payload(schema.analysis),
            user_request=expectations.user_request or "",
            style_constraints=list(expectations.style_constraints),
            policy_rules=[r.rule_text for r in (policy_context.rules if policy_context else [])],
            already_reported=[f.description for f in failures],
        )
        judge = self._judge
        started = self._clock()
        response = self._caller.call(
            lambda: judge.compare(request),
            service="judge",
            run_id=run_id,
            step_id=step_id,
            attempt=attempt,
        )
        if self._tracer is not None:
            self._tracer.emit(
                TraceEvent.for_step(
                    TraceKind.JUDGE,
                    run_id,
                    step_id,
                    attempt_index=attempt,
                    model_name=response.model or judge.model_name,
                    latency_ms=max(int((self._clock() - started) * 1000), 0),
                    metadata={"failures_returned": len(response.failures)},
                )
            )
        return response

    @staticmethod
    def _assemble(**fields: Any) -> ComparisonVerdict:
        try:
            verdict = ComparisonVerdict(**fields)
            # Round-trip through JSON so consumers never see an unserializable verdict.
            return ComparisonVerdict.model_validate_json(verdict.model_dump_json())
        except ValidationError as exc:
            raise VerdictIntegrityError(
                f"Engine produced an invalid verdict: {exc}"
            ) from exc
