"""Runtime configuration: env-driven.

Centralized settings using pydantic-settings. Reads from a .env file and
CDPIPE_* environment variables.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export CDPIPE_LOG_LEVEL=DEBUG
        export CDPIPE_LEDGER_PATH=/data/ledger.db
        export CDPIPE_MAX_PARALLEL_ACTIONS=2

    Or via .env file::

        CDPIPE_ENVIRONMENT=production
        CDPIPE_DEFAULT_ACTION_TIMEOUT_SECONDS=1800
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CDPIPE_",
        env_file_encoding="utf-8",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"

    # Storage paths
    ledger_path: Path = Path(".cdpipe/ledger.db")
    artifact_store_path: Path = Path(".cdpipe/artifacts")

    # Scheduling
    max_parallel_actions: int = 4
    default_action_timeout_seconds: float | None = None
    poll_interval_seconds: float = 60.0

    # Name of the secret holding the source provider token. Only the name is
    # ever handled here; resolution is the source provider's job.
    source_token_secret_name: str = "my-github-token"

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"


# Module-level singleton; import as `from cdpipe.config import settings`
settings = Settings()
