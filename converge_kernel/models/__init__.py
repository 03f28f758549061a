"""Converge Kernel data models."""

from converge_kernel.models.plan import ChangeSet, Operation, OperationType
from converge_kernel.models.reconciler import (
    FailurePolicy,
    LoopState,
    ReconcilerConfig,
    ReconcilerStatus,
)
from converge_kernel.models.resource import Resource
from converge_kernel.models.run import (
    OperationOutcome,
    OperationStatus,
    ReconciliationRun,
    RunStatus,
)
from converge_kernel.models.state import ObservedResource, ObservedState
from converge_kernel.models.values import ResourceRef, values_equal

__all__ = [
    "ChangeSet",
    "FailurePolicy",
    "LoopState",
    "ObservedResource",
    "ObservedState",
    "Operation",
    "OperationOutcome",
    "OperationStatus",
    "OperationType",
    "ReconcilerConfig",
    "ReconcilerStatus",
    "ReconciliationRun",
    "Resource",
    "ResourceRef",
    "RunStatus",
    "values_equal",
]
