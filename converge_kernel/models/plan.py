"""Operations and change-sets produced by the Planner."""

from datetime import datetime
from enum import Enum
from typing import List

from pydantic import BaseModel

from converge_kernel.models.resource import Resource
from converge_kernel.models.values import ResourceRef


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class Operation(BaseModel):
    """One planned change to one resource."""

    type: OperationType
    resource: Resource
    reason: str
    changed_keys: List[str] = []
    # Edges used for scheduling: dependencies for create/update,
    # dependents for delete. Resolved by the Planner.
    depends_on: List[ResourceRef] = []

    @property
    def ref(self) -> ResourceRef:
        return self.resource.ref

    def describe(self) -> str:
        return f"{self.type.value}({self.ref})"


class ChangeSet(BaseModel):
    """
    Ordered operations for one reconciliation cycle.
    Produced fresh each cycle, consumed once, discarded.
    """

    operations: List[Operation] = []
    unchanged: List[ResourceRef] = []
    observed_version: int = 0
    created_at: datetime

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def summary(self) -> dict:
        counts = {t.value: 0 for t in OperationType if t != OperationType.NOOP}
        for op in self.operations:
            counts[op.type.value] += 1
        counts["unchanged"] = len(self.unchanged)
        return counts
