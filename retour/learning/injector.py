"""Prompt-facing side of learned policy.

``format_rules_for_prompt`` renders the evaluable rules for a step as a
text block grouped by strength.  ``build_corrective_instructions`` turns
a rejected verdict into the deltas applied to the next generation
attempt: prompt adjustments, tightened settings and a fresh seed.
"""

from __future__ import annotations

import random

from pydantic import BaseModel, ConfigDict, Field

from retour.models.policy import PolicyContext, PolicyRule, StrengthStage
from retour.models.verdicts import ComparisonVerdict, FailureType, FixTarget

MAX_SEED = 2_147_483_647
MAX_INJECTED_RULES = 3
STRICT_SETTINGS_FROM_ATTEMPT = 3
ULTRA_STRICT_FROM_ATTEMPT = 4
STRICT_TEMPERATURE = 0.3
STRICT_GUIDANCE_SCALE = 12

ULTRA_STRICT_NOTICE = (
    "ULTRA-STRICT MODE: Prioritize accuracy over creativity. Match source exactly."
)

STRICT_CONSTRAINTS: dict[FailureType, str] = {
    FailureType.FURNITURE_MISMATCH: (
        "STRICT: Do NOT add any furniture or objects not present in the source image."
    ),
    FailureType.EXTRA_SPACE: (
        "STRICT: Do NOT invent rooms. Only spaces visible in the floor plan exist."
    ),
    FailureType.MISSING_SPACE: (
        "STRICT: Every enclosed room in the floor plan must be represented."
    ),
    FailureType.GEOMETRY_ERROR: (
        "STRICT: Maintain perfect geometry. No warping, melting, or perspective errors."
    ),
    FailureType.STYLE_INCONSISTENCY: (
        "STRICT: Apply the approved style consistently to every surface."
    ),
    FailureType.AMBIGUITY_UNRESOLVED: (
        "STRICT: Resolve every room type explicitly; do not leave spaces ambiguous."
    ),
}

_STAGE_HEADINGS: list[tuple[StrengthStage, str]] = [
    (StrengthStage.LAW, "ABSOLUTE REQUIREMENTS"),
    (StrengthStage.GUARD, "CRITICAL CONSTRAINTS"),
    (StrengthStage.CHECK, "CHECKED CONSTRAINTS"),
    (StrengthStage.NUDGE, "LEARNED PREFERENCES"),
]


class CorrectiveInstructions(BaseModel):
    """Deltas for the next generation attempt after a rejected artifact."""

    model_config = ConfigDict(frozen=True)

    attempt: int = Field(ge=1)
    prompt_adjustments: list[str] = []
    settings: dict[str, float | int] = {}
    changes: list[str] = []

    @property
    def seed(self) -> int:
        return int(self.settings["seed"])

    def as_prompt_block(self) -> str:
        return "\n".join(self.prompt_adjustments)


def _ranked(rules: list[PolicyRule]) -> list[PolicyRule]:
    return sorted(
        rules,
        key=lambda r: (r.strength_stage.rank, r.violation_count),
        reverse=True,
    )


def format_rules_for_prompt(context: PolicyContext) -> str:
    """Render evaluable rules grouped by strength, strongest first.

    Returns an empty string when there are no rules.
    """
    sections: list[str] = []
    for stage, heading in _STAGE_HEADINGS:
        rules = _ranked(context.by_stage(stage))
        if not rules:
            continue
        sections.append(f"=== {heading} ({stage.value}) ===")
        for i, rule in enumerate(rules, start=1):
            sections.append(
                f"{i}. [{rule.category}] {rule.rule_text} "
                f"(violations: {rule.violation_count}, confidence: {rule.confidence_score:.2f})"
            )
        sections.append("")
    return "\n".join(sections).rstrip()


def build_corrective_instructions(
    verdict: ComparisonVerdict,
    attempt: int,
    context: PolicyContext | None = None,
    rng: random.Random | None = None,
) -> CorrectiveInstructions:
    """Compose the prompt and settings deltas for ``attempt``.

    Parameters
    ----------
    verdict:
        The rejected verdict of the previous attempt.
    attempt:
        Index of the attempt these instructions are for (1-based).
    context:
        Policy rules in force; the strongest three are injected.
    rng:
        Seed source, injectable for deterministic tests.
    """
    rng = rng or random.Random()
    adjustments: list[str] = []
    changes: list[str] = []
    settings: dict[str, float | int] = {}

    for fix in verdict.fixes:
        if fix.target in (FixTarget.PROMPT, FixTarget.CONSTRAINT):
            adjustments.append(f"CRITICAL FIX REQUIRED: {fix.action}")
            changes.append(f"Applied fix: {fix.action[:50]}")

    for failure_type in dict.fromkeys(f.type for f in verdict.failures):
        constraint = STRICT_CONSTRAINTS.get(failure_type)
        if constraint is not None and constraint not in adjustments:
            adjustments.append(constraint)
            changes.append(f"Added {failure_type.value} constraint")

    if context is not None:
        for rule in _ranked(context.rules)[:MAX_INJECTED_RULES]:
            adjustments.append(f"LEARNED RULE: {rule.rule_text}")
            changes.append(f"Applied learned rule: {rule.category}")

    if attempt >= STRICT_SETTINGS_FROM_ATTEMPT:
        settings["temperature"] = STRICT_TEMPERATURE
        settings["guidance_scale"] = STRICT_GUIDANCE_SCALE
        changes.append(f"Reduced creativity (attempt {STRICT_SETTINGS_FROM_ATTEMPT}+)")
    if attempt >= ULTRA_STRICT_FROM_ATTEMPT:
        adjustments.append(ULTRA_STRICT_NOTICE)
        changes.append(f"Enabled ultra-strict mode (attempt {ULTRA_STRICT_FROM_ATTEMPT}+)")

    settings["seed"] = rng.randint(0, MAX_SEED)
    changes.append(f"New seed: {settings['seed']}")

    return CorrectiveInstructions(
        attempt=attempt,
        prompt_adjustments=adjustments,
        settings=settings,
        changes=changes,
    )
