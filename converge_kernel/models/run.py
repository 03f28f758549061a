"""Reconciliation Run — the record of one full plan/apply cycle."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from converge_kernel.models.plan import Operation


class OperationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"       # A dependency failed, or the run was aborted
    CANCELLED = "cancelled"   # Run cancelled before this operation started


class RunStatus(str, Enum):
    CONVERGED = "converged"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OperationOutcome(BaseModel):
    """What happened to one operation."""

    operation: Operation
    status: OperationStatus
    attempts: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class ReconciliationRun(BaseModel):
    """
    One cycle. Every non-noop operation's outcome is recorded here;
    nothing is silently dropped.
    """

    id: str
    trigger: str                            # "manual", "timer", "signal"
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: RunStatus = RunStatus.CONVERGED
    outcomes: List[OperationOutcome] = []
    unchanged: int = 0
    drifted: List[str] = []                 # Found changed out-of-band on refresh
    refresh_errors: List[str] = []
    error: Optional[str] = None
    observed_version: int = 0

    def outcome_for(self, ref_text: str) -> Optional[OperationOutcome]:
        """Look up an outcome by `kind.name`."""
        for outcome in self.outcomes:
            if str(outcome.operation.ref) == ref_text:
                return outcome
        return None

    def count(self, status: OperationStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)
