"""Progressive learning: policy rule store, strength math, escalation, prompt injection."""

from retour.learning.escalation import LearningEngine, PromotionNotAllowedError
from retour.learning.injector import (
    CorrectiveInstructions,
    build_corrective_instructions,
    format_rules_for_prompt,
)
from retour.learning.rule_store import GLOBAL_OWNER, RuleNotFoundError, RuleStore

__all__ = [
    "CorrectiveInstructions",
    "GLOBAL_OWNER",
    "LearningEngine",
    "PromotionNotAllowedError",
    "RuleNotFoundError",
    "RuleStore",
    "build_corrective_instructions",
    "format_rules_for_prompt",
]
