"""Validation / comparison engine: schema, rules, judge, learned policy."""

from retour.validation.engine import (
    MAX_FAILURES_BEFORE_BLOCK,
    ComparisonEngine,
    VerdictIntegrityError,
    apply_policy,
    decide,
)
from retour.validation.rules import RULE_BATTERY, run_rules
from retour.validation.schema_stage import StageOutcome, check_schema

__all__ = [
    "ComparisonEngine",
    "MAX_FAILURES_BEFORE_BLOCK",
    "RULE_BATTERY",
    "StageOutcome",
    "VerdictIntegrityError",
    "apply_policy",
    "check_schema",
    "decide",
    "run_rules",
]
