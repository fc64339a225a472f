"""Retry/recovery orchestration."""

from retour.recovery.retry import RetryAction, RetryDecision, RetryOrchestrator

__all__ = ["RetryAction", "RetryDecision", "RetryOrchestrator"]
