"""
Planner — diffs the desired graph against an observed snapshot.

Behavioral Contract:
- Pure and idempotent: the same (desired, observed) pair yields the same change-set
- Creates and updates follow topological order, ties broken by (depth, kind, name)
- Deletes follow creates/updates, dependents removed before their dependencies
- Refuses to plan when a desired resource depends on something being deleted
  or on something that exists nowhere; never silently reorders around it
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from converge_kernel.errors import (
    CycleError,
    DanglingDependencyError,
    UnresolvedDependencyError,
)
from converge_kernel.graph.builder import DependencyGraph
from converge_kernel.models.plan import ChangeSet, Operation, OperationType
from converge_kernel.models.resource import Resource
from converge_kernel.models.state import ObservedResource, ObservedState
from converge_kernel.models.values import ResourceRef, changed_keys, ref_sort_key

log = logging.getLogger(__name__)


def plan(
    graph: DependencyGraph,
    observed: ObservedState,
    prune: bool = True,
    now: Optional[datetime] = None,
) -> ChangeSet:
    """Produce the ordered change-set that moves `observed` toward `graph`."""
    if now is None:
        now = datetime.utcnow()

    removed = [
        entry for entry in observed.resources.values()
        if entry.ref not in graph
    ]
    doomed = {entry.key for entry in removed} if prune else set()

    _check_dependencies(graph, observed, doomed)

    operations: List[Operation] = []
    unchanged: List[ResourceRef] = []

    for resource in sorted(graph.order, key=lambda r: (graph.depth(r.ref),) + r.key):
        current = observed.get(resource.ref)
        dependencies = graph.all_dependencies(resource.ref)

        if current is None:
            operations.append(Operation(
                type=OperationType.CREATE,
                resource=resource,
                reason="not present in observed state",
                changed_keys=sorted(resource.attributes),
                depends_on=dependencies,
            ))
            continue

        keys = changed_keys(resource.attributes, current.attributes)
        edges = _edge_changes(dependencies, current.depends_on)
        if keys or edges:
            reasons = []
            if keys:
                reasons.append(f"attributes differ: {', '.join(keys)}")
            if edges:
                reasons.append(f"dependencies changed: {', '.join(edges)}")
            operations.append(Operation(
                type=OperationType.UPDATE,
                resource=resource,
                reason="; ".join(reasons),
                changed_keys=keys,
                depends_on=dependencies,
            ))
        else:
            unchanged.append(resource.ref)

    if prune:
        operations.extend(_plan_deletions(removed, observed))
    elif removed:
        log.info(
            "Pruning disabled; leaving %d undeclared resources in place",
            len(removed),
        )

    change_set = ChangeSet(
        operations=operations,
        unchanged=unchanged,
        observed_version=observed.version,
        created_at=now,
    )
    log.debug("Planned change-set: %s", change_set.summary())
    return change_set


def _check_dependencies(
    graph: DependencyGraph,
    observed: ObservedState,
    doomed: set,
) -> None:
    """Validate references that point outside the desired set."""
    for resource in graph.order:
        for dep in graph.external_dependencies(resource.ref):
            if dep.key in doomed:
                raise DanglingDependencyError(resource.ref, dep)
            if dep not in observed:
                raise UnresolvedDependencyError(resource.ref, dep)


def _edge_changes(
    desired: List[ResourceRef],
    recorded: List[ResourceRef],
) -> List[str]:
    """Added (+) and dropped (-) dependency edges, sorted by ref."""
    wanted = {ref.key: ref for ref in desired}
    known = {ref.key: ref for ref in recorded}
    changes = [(key, f"+{ref}") for key, ref in wanted.items() if key not in known]
    changes += [(key, f"-{ref}") for key, ref in known.items() if key not in wanted]
    return [text for _, text in sorted(changes)]


def _plan_deletions(
    removed: List[ObservedResource],
    observed: ObservedState,
) -> List[Operation]:
    """
    Order deletions in reverse topological order over the edges recorded
    at apply time. A resource's height is the longest chain of removed
    dependents above it; lower heights go first.
    """
    if not removed:
        return []

    dependents: Dict[tuple, List[ResourceRef]] = {}
    for entry in observed.resources.values():
        for dep in entry.depends_on:
            dependents.setdefault(dep.key, []).append(entry.ref)

    removed_keys = {entry.key for entry in removed}
    height: Dict[tuple, int] = {}

    def _height(key: tuple, visiting: tuple) -> int:
        if key in height:
            return height[key]
        if key in visiting:
            cycle = list(visiting[visiting.index(key):])
            raise CycleError([ResourceRef(kind=k, name=n) for k, n in cycle])
        above = [d for d in dependents.get(key, []) if d.key in removed_keys]
        value = 0
        if above:
            value = 1 + max(_height(d.key, visiting + (key,)) for d in above)
        height[key] = value
        return value

    for entry in removed:
        _height(entry.key, ())

    operations = []
    for entry in sorted(removed, key=lambda e: (height[e.key],) + e.key):
        operations.append(Operation(
            type=OperationType.DELETE,
            resource=Resource(
                kind=entry.kind,
                name=entry.name,
                attributes=entry.attributes,
                depends_on=entry.depends_on,
            ),
            reason="no longer declared in desired state",
            depends_on=sorted(dependents.get(entry.key, []), key=ref_sort_key),
        ))
    return operations
