"""
Observed State Store — the engine's record of live state.

Written by: Executor (after successful applies and refreshes)
Read by: Planner (via snapshots) + Status API
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from converge_kernel.models.resource import Resource
from converge_kernel.models.state import ObservedResource, ObservedState
from converge_kernel.models.values import (
    ResourceRef,
    changed_keys,
    normalize_value,
    ref_sort_key,
)


class ObservedStateStore:
    """
    In-memory observed state with a monotonically increasing version.
    Each write touches exactly one resource key and bumps the version.
    """

    def __init__(self, initial: Optional[ObservedState] = None):
        self._state = initial.model_copy(deep=True) if initial else ObservedState()

    @property
    def version(self) -> int:
        return self._state.version

    def __len__(self) -> int:
        return len(self._state.resources)

    def snapshot(self) -> ObservedState:
        """Get a consistent, detached copy of the observed state."""
        return self._state.model_copy(deep=True)

    def get(self, ref: ResourceRef) -> Optional[ObservedResource]:
        """Get a detached copy of one observed resource."""
        entry = self._state.get(ref)
        return entry.model_copy(deep=True) if entry else None

    def refs(self) -> List[ResourceRef]:
        return sorted(self._state.refs(), key=ref_sort_key)

    def record_applied(
        self,
        resource: Resource,
        depends_on: Iterable[ResourceRef],
        outputs: Optional[Dict[str, Any]] = None,
    ) -> ObservedResource:
        """Record a successful create or update."""
        previous = self._state.get(resource.ref)
        entry = ObservedResource(
            kind=resource.kind,
            name=resource.name,
            attributes=resource.model_copy(deep=True).attributes,
            outputs=dict(outputs or {}),
            depends_on=sorted(set(depends_on), key=ref_sort_key),
            revision=previous.revision + 1 if previous else 1,
            updated_at=datetime.utcnow(),
        )
        self._state.resources[str(resource.ref)] = entry
        self._state.version += 1
        return entry.model_copy(deep=True)

    def record_deleted(self, ref: ResourceRef) -> bool:
        """Remove a resource after a successful delete (or when it vanished)."""
        if self._state.resources.pop(str(ref), None) is None:
            return False
        self._state.version += 1
        return True

    def record_refreshed(self, ref: ResourceRef, attributes: Dict[str, Any]) -> bool:
        """
        Overwrite observed attributes with what the provider reads back.
        Returns True if anything changed.
        """
        entry = self._state.get(ref)
        if entry is None:
            return False
        if not isinstance(attributes, Mapping):
            raise ValueError(f"expected a mapping, got {type(attributes).__name__}")
        attributes = normalize_value(attributes)
        if not changed_keys(attributes, entry.attributes):
            return False
        entry.attributes = attributes
        entry.revision += 1
        entry.updated_at = datetime.utcnow()
        self._state.version += 1
        return True
