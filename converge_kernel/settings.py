"""Process settings loaded from environment variables or a .env file."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from converge_kernel.models.reconciler import FailurePolicy, ReconcilerConfig


class Settings(BaseSettings):
    """
    Settings for the reconciler service.

    Every field can be set with a `CONVERGE_` prefixed environment variable,
    e.g. `CONVERGE_INTERVAL_SECONDS=30`.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONVERGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"
    history_db_path: str = ":memory:"
    autostart: bool = False                 # Start the loop with the API app

    # Reconciler defaults
    interval_seconds: float = 60.0
    schedule: Optional[str] = None
    max_in_flight: int = 5
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    operation_timeout_seconds: float = 30.0
    failure_policy: FailurePolicy = FailurePolicy.SKIP_DEPENDENTS
    prune: bool = True
    refresh_before_plan: bool = True
    history_limit: int = 50

    def reconciler_config(self) -> ReconcilerConfig:
        """Build the reconciler configuration from these settings."""
        return ReconcilerConfig(
            interval_seconds=self.interval_seconds,
            schedule=self.schedule,
            max_in_flight=self.max_in_flight,
            max_attempts=self.max_attempts,
            backoff_base_seconds=self.backoff_base_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
            operation_timeout_seconds=self.operation_timeout_seconds,
            failure_policy=self.failure_policy,
            prune=self.prune,
            refresh_before_plan=self.refresh_before_plan,
            history_limit=self.history_limit,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
