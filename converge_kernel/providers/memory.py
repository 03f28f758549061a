"""
In-memory provider.

Keeps "live" resources in a dict. Used by the default API application and
by tests; it can be told to fail, to be slow, or to drift out-of-band.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional

from converge_kernel.execution.provider import Provider
from converge_kernel.models.plan import Operation, OperationType
from converge_kernel.models.values import ResourceRef


class InMemoryProvider(Provider):
    """A provider whose managed system is a dictionary."""

    supports_read = True

    def __init__(self, latency: float = 0.0):
        self.live: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight_seen = 0
        self._latency = latency
        self._delays: Dict[str, float] = {}
        self._failures: Dict[str, List[Exception]] = {}
        self._generation = 0

    # --- Test/demo controls ---

    def fail(self, ref: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` operations on `ref` raise `error`."""
        self._failures.setdefault(ref, []).extend([error] * times)

    def delay(self, ref: str, seconds: float) -> None:
        """Make every operation on `ref` take `seconds`."""
        self._delays[ref] = seconds

    def drift(self, ref: str, **changes: Any) -> None:
        """Change live attributes behind the engine's back."""
        self.live[ref].update(changes)

    def remove(self, ref: str) -> None:
        """Delete a live resource behind the engine's back."""
        self.live.pop(ref, None)

    # --- Provider interface ---

    async def apply(self, operation: Operation) -> Dict[str, Any]:
        key = str(operation.ref)
        self.in_flight += 1
        self.max_in_flight_seen = max(self.max_in_flight_seen, self.in_flight)
        try:
            self.calls.append(operation.describe())
            delay = self._delays.get(key, self._latency)
            if delay:
                await asyncio.sleep(delay)

            queued = self._failures.get(key)
            if queued:
                raise queued.pop(0)

            if operation.type == OperationType.DELETE:
                self.live.pop(key, None)
                return {}

            self.live[key] = copy.deepcopy(operation.resource.attributes)
            self._generation += 1
            return {
                "id": f"{operation.resource.kind}-{operation.resource.name}",
                "generation": self._generation,
            }
        finally:
            self.in_flight -= 1

    async def read(self, ref: ResourceRef) -> Optional[Dict[str, Any]]:
        live = self.live.get(str(ref))
        return copy.deepcopy(live) if live is not None else None
