"""Production configuration guard — refuses to start with unsafe settings.

Runs once when the orchestrator is built.  Outside production it does
nothing; in production it collects every violated constraint and raises
``ProductionConfigError`` listing all of them.
"""

from __future__ import annotations

import logging

from retour.config import RetourSettings

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_CEILING = 10


class ProductionConfigError(RuntimeError):
    """Raised when production configuration constraints are violated.

    The process should exit; this error is not meant to be caught.
    """


def enforce_production_constraints(config: RetourSettings) -> None:
    """Validate production-critical settings.

    Constraints enforced
    --------------------
    1. Debug mode must be disabled.
    2. The lock TTL must outlast the judge and generation timeouts, so a
       live worker is never reclaimed mid-call.
    3. ``default_max_attempts`` must be between 1 and 10.

    Raises
    ------
    ProductionConfigError
        If any constraint is violated.
    """
    if not config.is_production:
        return

    violations: list[str] = []

    if config.debug:
        violations.append(
            "debug=True is not allowed in production. Set RETOUR_DEBUG=false."
        )

    for name in ("judge_timeout_seconds", "generation_timeout_seconds"):
        timeout = getattr(config, name)
        if config.lock_ttl_seconds <= timeout:
            violations.append(
                f"lock_ttl_seconds={config.lock_ttl_seconds} must exceed "
                f"{name}={timeout}. Raise RETOUR_LOCK_TTL_SECONDS."
            )

    if not 1 <= config.default_max_attempts <= MAX_ATTEMPTS_CEILING:
        violations.append(
            f"default_max_attempts={config.default_max_attempts} must be "
            f"between 1 and {MAX_ATTEMPTS_CEILING}."
        )

    if violations:
        msg = (
            "Production configuration guard failed.\n"
            + "\n".join(f"  - {v}" for v in violations)
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production configuration guard passed.")
