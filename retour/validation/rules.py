"""Stage 2 — deterministic rule battery over the analysis fields.

Every check is a pure function of the parsed analysis and the
expectations.  A failing check contributes exactly one failure (and at
most one fix); spaces involved are listed in the failure's evidence.
No network access, no clock, no randomness.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable

from retour.models.analysis import (
    CRITICAL_CATEGORIES,
    HABITABLE_CATEGORIES,
    SpaceAnalysis,
    SpaceCategory,
)
from retour.models.verdicts import (
    Expectations,
    Failure,
    FailureType,
    Fix,
    FixTarget,
    Severity,
)
from retour.validation.schema_stage import MIN_CONFIDENCE_THRESHOLD, StageOutcome

MIN_SPACES_FOR_FLOORPLAN = 2
MAX_LOW_CONFIDENCE_RATIO = 0.5
MAX_AMBIGUOUS_RATIO = 0.3
VERY_LOW_CONFIDENCE = 0.2
EXPECTED_COUNT_TOLERANCE = 2

CheckResult = tuple[Failure, Fix | None] | None
Check = Callable[[SpaceAnalysis, Expectations], CheckResult]


def check_min_spaces(analysis: SpaceAnalysis, _: Expectations) -> CheckResult:
    found = len(analysis.spaces)
    if found >= MIN_SPACES_FOR_FLOORPLAN:
        return None
    return (
        Failure(
            type=FailureType.MISSING_SPACE,
            severity=Severity.HIGH,
            description=(
                f"Floor plan has only {found} spaces, expected at least "
                f"{MIN_SPACES_FOR_FLOORPLAN}"
            ),
            expected=f">={MIN_SPACES_FOR_FLOORPLAN}",
            actual=str(found),
            check="min_spaces",
        ),
        Fix(
            target=FixTarget.INPUT,
            action="Ensure floor plan image is clear and shows all rooms",
            expected_effect="More spaces detected",
            priority=1,
        ),
    )


def check_expected_count(analysis: SpaceAnalysis, expectations: Expectations) -> CheckResult:
    expected = expectations.expected_spaces
    found = len(analysis.spaces)
    if expected is None or found == expected:
        return None
    diff = found - expected
    return (
        Failure(
            type=FailureType.EXTRA_SPACE if diff > 0 else FailureType.MISSING_SPACE,
            severity=Severity.HIGH if abs(diff) > EXPECTED_COUNT_TOLERANCE else Severity.MEDIUM,
            description=f"Expected {expected} spaces, found {found} (difference: {diff:+d})",
            expected=str(expected),
            actual=str(found),
            check="expected_count",
        ),
        Fix(
            target=FixTarget.PROMPT,
            action=f"Adjust space detection to find exactly {expected} spaces",
            expected_effect="Correct space count",
            priority=2,
        ),
    )


def check_expected_room_types(analysis: SpaceAnalysis, expectations: Expectations) -> CheckResult:
    if not expectations.expected_room_types:
        return None
    detected = {c.value for c in analysis.categories()}
    missing = [t for t in expectations.expected_room_types if t not in detected]
    if not missing:
        return None
    critical = {c.value for c in CRITICAL_CATEGORIES}
    return (
        Failure(
            type=FailureType.MISSING_SPACE,
            severity=Severity.HIGH if critical.intersection(missing) else Severity.MEDIUM,
            description=f"Expected room type(s) not detected: {', '.join(missing)}",
            expected=", ".join(missing),
            evidence=missing,
            check="expected_room_types",
        ),
        None,
    )


def check_critical_categories(analysis: SpaceAnalysis, _: Expectations) -> CheckResult:
    detected = analysis.categories()
    residential = SpaceCategory.BEDROOM in detected or SpaceCategory.LIVING_ROOM in detected
    if not residential:
        return None
    # Kitchen is optional for some units.
    required = sorted(c.value for c in CRITICAL_CATEGORIES if c != SpaceCategory.KITCHEN)
    missing = [c for c in required if SpaceCategory(c) not in detected]
    if not missing:
        return None
    return (
        Failure(
            type=FailureType.MISSING_SPACE,
            severity=Severity.MEDIUM,
            description=(
                f"Critical space(s) not detected in residential floor plan: "
                f"{', '.join(missing)}"
            ),
            expected=", ".join(missing),
            evidence=missing,
            check="critical_categories",
        ),
        None,
    )


def _low_confidence(analysis: SpaceAnalysis) -> list:
    return [s for s in analysis.spaces if s.confidence < MIN_CONFIDENCE_THRESHOLD]


def check_low_confidence_ratio(analysis: SpaceAnalysis, _: Expectations) -> CheckResult:
    if not analysis.spaces:
        return None
    ratio = len(_low_confidence(analysis)) / len(analysis.spaces)
    if ratio <= MAX_LOW_CONFIDENCE_RATIO:
        return None
    return (
        Failure(
            type=FailureType.AMBIGUITY_UNRESOLVED,
            severity=Severity.HIGH,
            description=(
                f"{round(ratio * 100)}% of spaces have low confidence "
                f"(>{round(MAX_LOW_CONFIDENCE_RATIO * 100)}% threshold)"
            ),
            check="low_confidence_ratio",
        ),
        Fix(
            target=FixTarget.INPUT,
            action="Provide clearer floor plan image or higher resolution",
            expected_effect="Higher confidence space detection",
            priority=1,
        ),
    )


def check_low_confidence_spaces(analysis: SpaceAnalysis, _: Expectations) -> CheckResult:
    low = _low_confidence(analysis)
    if not low:
        return None
    worst = min(low, key=lambda s: s.confidence)
    return (
        Failure(
            type=FailureType.AMBIGUITY_UNRESOLVED,
            severity=Severity.HIGH if worst.confidence < VERY_LOW_CONFIDENCE else Severity.MEDIUM,
            description=(
                f"{len(low)} space(s) have low confidence; lowest is "
                f'"{worst.label}" at {worst.confidence * 100:.0f}%'
            ),
            affected_space_id=worst.space_id,
            evidence=[f"{s.space_id}: {s.confidence * 100:.0f}%" for s in low],
            check="low_confidence_spaces",
        ),
        None,
    )


def check_ambiguity_ratio(analysis: SpaceAnalysis, _: Expectations) -> CheckResult:
    if not analysis.spaces:
        return None
    ambiguous = [s for s in analysis.spaces if s.ambiguity_flags]
    ratio = len(ambiguous) / len(analysis.spaces)
    if ratio <= MAX_AMBIGUOUS_RATIO:
        return None
    return (
        Failure(
            type=FailureType.AMBIGUITY_UNRESOLVED,
            severity=Severity.MEDIUM,
            description=(
                f"{round(ratio * 100)}% of spaces have ambiguity flags "
                f"(>{round(MAX_AMBIGUOUS_RATIO * 100)}% threshold)"
            ),
            evidence=[s.space_id for s in ambiguous],
            check="ambiguity_ratio",
        ),
        Fix(
            target=FixTarget.MANUAL_REVIEW,
            action="Review ambiguous spaces and clarify room types",
            expected_effect="Resolved ambiguities",
            priority=2,
        ),
    )


def check_habitable_furnishings(analysis: SpaceAnalysis, _: Expectations) -> CheckResult:
    bare = [
        s for s in analysis.spaces
        if s.category in HABITABLE_CATEGORIES and not s.detected_furnishings
    ]
    if not bare:
        return None
    return (
        Failure(
            type=FailureType.FURNITURE_MISMATCH,
            severity=Severity.LOW,
            description=f"{len(bare)} habitable space(s) have no detected furnishings",
            affected_space_id=bare[0].space_id if len(bare) == 1 else None,
            evidence=[f"{s.label} ({s.category.value})" for s in bare],
            check="habitable_furnishings",
        ),
        None,
    )


def check_duplicate_labels(analysis: SpaceAnalysis, _: Expectations) -> CheckResult:
    counts = Counter(s.label.strip().lower() for s in analysis.spaces)
    dupes = sorted(label for label, n in counts.items() if n > 1)
    if not dupes:
        return None
    return (
        Failure(
            type=FailureType.CONSTRAINT_VIOLATION,
            severity=Severity.LOW,
            description=f"Duplicate space label(s): {', '.join(dupes)}"[:500],
            evidence=[f"{label} x{counts[label]}" for label in dupes],
            check="duplicate_labels",
        ),
        None,
    )


# Evaluation order is part of the verdict: failures keep this order.
RULE_BATTERY: list[tuple[str, Check]] = [
    ("min_spaces", check_min_spaces),
    ("expected_count", check_expected_count),
    ("expected_room_types", check_expected_room_types),
    ("critical_categories", check_critical_categories),
    ("low_confidence_ratio", check_low_confidence_ratio),
    ("low_confidence_spaces", check_low_confidence_spaces),
    ("ambiguity_ratio", check_ambiguity_ratio),
    ("habitable_furnishings", check_habitable_furnishings),
    ("duplicate_labels", check_duplicate_labels),
]


def run_rules(analysis: SpaceAnalysis, expectations: Expectations) -> StageOutcome:
    """Evaluate every check in order; never stops early."""
    failures: list[Failure] = []
    fixes: list[Fix] = []
    for _name, check in RULE_BATTERY:
        result = check(analysis, expectations)
        if result is None:
            continue
        failure, fix = result
        failures.append(failure)
        if fix is not None:
            fixes.append(fix)
    return StageOutcome(failures=failures, fixes=fixes)
