"""Desired-state sources consumed by the Reconciler Loop."""

from typing import Callable, Iterable, List, Optional, Protocol

from converge_kernel.models.resource import Resource


class DesiredStateSource(Protocol):
    """Anything that can produce the current set of declared resources."""

    def load(self) -> List[Resource]:
        ...


class StaticDesiredState:
    """
    In-memory desired state. `replace` swaps the whole set, the way a new
    commit replaces the declared configuration, and notifies subscribers.
    """

    def __init__(self, resources: Optional[Iterable[Resource]] = None):
        self._resources: List[Resource] = list(resources or [])
        self._revision = 0
        self._subscribers: List[Callable[[], None]] = []

    @property
    def revision(self) -> int:
        return self._revision

    def load(self) -> List[Resource]:
        return list(self._resources)

    def replace(self, resources: Iterable[Resource]) -> None:
        """Swap in a new desired set and signal subscribers."""
        self._resources = list(resources)
        self._revision += 1
        for callback in list(self._subscribers):
            callback()

    def subscribe(self, callback: Callable[[], None]) -> None:
        """Call `callback` whenever the desired set changes."""
        self._subscribers.append(callback)
