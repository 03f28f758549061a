"""Reconciler configuration and loop status."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from croniter import croniter

from converge_kernel.models.run import ReconciliationRun


class FailurePolicy(str, Enum):
    SKIP_DEPENDENTS = "skip_dependents"   # Keep independent branches going
    ABORT_RUN = "abort_run"               # Stop scheduling anything new


class LoopState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"
    PLANNING = "planning"
    APPLYING = "applying"
    CONVERGED = "converged"
    DEGRADED = "degraded"


class ReconcilerConfig(BaseModel):
    """Configuration for the Reconciler Loop and its Executor."""

    interval_seconds: float = Field(default=60.0, gt=0)
    schedule: Optional[str] = None          # Cron expression, overrides interval
    max_in_flight: int = Field(default=5, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)
    operation_timeout_seconds: float = Field(default=30.0, gt=0)
    failure_policy: FailurePolicy = FailurePolicy.SKIP_DEPENDENTS
    prune: bool = True
    refresh_before_plan: bool = True
    history_limit: int = Field(default=50, ge=1)

    @field_validator("schedule")
    @classmethod
    def _check_schedule(cls, value):
        if value is not None and not croniter.is_valid(value):
            raise ValueError(f"Invalid cron schedule: {value!r}")
        return value

    def backoff_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = self.backoff_base_seconds * (2 ** (attempt - 1))
        return min(delay, self.backoff_max_seconds)


class ReconcilerStatus(BaseModel):
    """Read-only status snapshot for monitoring."""

    state: LoopState                        # Current phase
    health: Optional[LoopState] = None      # CONVERGED or DEGRADED after the last run
    running: bool
    observed_version: int
    tracked_resources: int
    consecutive_failures: int = 0
    last_run: Optional[ReconciliationRun] = None
