"""Runtime configuration — env-driven via pydantic-settings.

Reads from a .env file and RETOUR_* environment variables.  Thresholds
that define pipeline semantics (strength thresholds, decay amounts,
decision-policy ceilings) are module constants in the code that uses
them and are deliberately not configurable here.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class RetourSettings(BaseSettings):
    """Runtime settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export RETOUR_ENVIRONMENT=staging
        export RETOUR_LOG_LEVEL=DEBUG
        export RETOUR_DATABASE_PATH=/data/retour.db

    Or via .env file::

        RETOUR_ENVIRONMENT=production
        RETOUR_LOCK_TTL_SECONDS=600
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RETOUR_",
        env_file_encoding="utf-8",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    database_path: Path = Path(".retour/retour.db")
    trace_log_path: Path = Path(".retour/traces.jsonl")

    # Job ledger
    lock_ttl_seconds: int = 300
    default_max_attempts: int = 3
    max_total_attempts_per_run: int = 20

    # External collaborators
    judge_model: str = "gemini-2.5-flash"
    judge_timeout_seconds: float = 120.0
    generation_timeout_seconds: float = 240.0
    collaborator_max_retries: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 30.0

    # Cross-scope rule promotion
    user_promotion_min_runs: int = 3
    global_promotion_min_owners: int = 3

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"


# Module-level singleton, import as `from retour.config import settings`
settings = RetourSettings()
