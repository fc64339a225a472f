"""Stage 3 helpers — build judge requests, normalize and de-duplicate replies.

The judge is an external model.  Nothing it returns is trusted as-is:
unknown enum values are mapped to conservative defaults, priorities are
clamped, text is truncated, and findings that repeat something already
reported are dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from retour.models.analysis import SpaceAnalysis
from retour.models.verdicts import (
    Failure,
    FailureSource,
    FailureType,
    Fix,
    FixTarget,
    Severity,
)

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 500
DEDUP_PREFIX_LENGTH = 30
DEFAULT_FIX_PRIORITY = 5


def space_payload(analysis: SpaceAnalysis) -> list[dict[str, Any]]:
    """Entity data sent to the judge: one dict per detected space."""
    return [
        {
            "space_id": s.space_id,
            "label": s.label,
            "category": s.category.value,
            "confidence": s.confidence,
            "furnishings": [f.item_type for f in s.detected_furnishings],
            "ambiguity_flags": list(s.ambiguity_flags),
        }
        for s in analysis.spaces
    ]


def _truncate(value: Any, default: str = "") -> str:
    text = str(value).strip() if value is not None else ""
    return (text or default)[:MAX_TEXT_LENGTH]


def _enum_or(enum_cls: type, value: Any, fallback: Any) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        return fallback


def normalize_failure(raw: Mapping[str, Any]) -> Failure | None:
    """Map one raw judge finding onto the failure taxonomy.

    Returns None for findings with no usable description.
    """
    description = _truncate(raw.get("description"))
    if not description:
        return None
    evidence = raw.get("evidence") or []
    if isinstance(evidence, str) or not isinstance(evidence, Iterable):
        evidence = [evidence]
    return Failure(
        type=_enum_or(FailureType, raw.get("type"), FailureType.CONSTRAINT_VIOLATION),
        severity=_enum_or(Severity, raw.get("severity"), Severity.MEDIUM),
        description=description,
        affected_space_id=_truncate(raw.get("affected_space_id")) or None,
        expected=_truncate(raw.get("expected")) or None,
        actual=_truncate(raw.get("actual")) or None,
        evidence=[_truncate(e) for e in evidence if e][:20],
        source=FailureSource.JUDGE,
    )


def normalize_fix(raw: Mapping[str, Any]) -> Fix | None:
    action = _truncate(raw.get("action"))
    if not action:
        return None
    try:
        priority = int(raw.get("priority", DEFAULT_FIX_PRIORITY))
    except (TypeError, ValueError):
        priority = DEFAULT_FIX_PRIORITY
    return Fix(
        target=_enum_or(FixTarget, raw.get("target"), FixTarget.MANUAL_REVIEW),
        action=action,
        expected_effect=_truncate(raw.get("expected_effect")),
        priority=min(max(priority, 1), 10),
    )


def is_duplicate_failure(candidate: Failure, existing: Iterable[Failure]) -> bool:
    """Same type and an earlier description already contains this one's prefix."""
    prefix = candidate.description.lower()[:DEDUP_PREFIX_LENGTH]
    return any(
        f.type == candidate.type and prefix in f.description.lower()
        for f in existing
    )


def is_duplicate_fix(candidate: Fix, existing: Iterable[Fix]) -> bool:
    prefix = candidate.action.lower()[:DEDUP_PREFIX_LENGTH]
    return any(
        f.target == candidate.target and prefix in f.action.lower()
        for f in existing
    )


def merge_judge_findings(
    failures: list[Failure],
    fixes: list[Fix],
    raw_failures: Iterable[Mapping[str, Any]],
    raw_fixes: Iterable[Mapping[str, Any]],
) -> tuple[list[Failure], list[Fix]]:
    """Append normalized judge findings that are not duplicates."""
    merged_failures = list(failures)
    merged_fixes = list(fixes)
    dropped = 0
    for raw in raw_failures:
        if not isinstance(raw, Mapping):
            logger.warning("Ignoring judge finding of type %s", type(raw).__name__)
            continue
        try:
            failure = normalize_failure(raw)
        except ValidationError as exc:
            logger.warning("Ignoring malformed judge finding: %s", exc.errors()[0]["msg"])
            continue
        if failure is None:
            continue
        if is_duplicate_failure(failure, merged_failures):
            dropped += 1
            continue
        merged_failures.append(failure)
    for raw in raw_fixes:
        if not isinstance(raw, Mapping):
            continue
        fix = normalize_fix(raw)
        if fix is None or is_duplicate_fix(fix, merged_fixes):
            continue
        merged_fixes.append(fix)
    if dropped:
        logger.debug("Suppressed %d duplicate judge finding(s)", dropped)
    return merged_failures, merged_fixes
