"""
Graph Builder — assembles the dependency graph of a desired-state set.

Behavioral Contract:
- Pure function: never touches observed state or the provider
- Edges come from declared `depends_on` plus references found in attributes
- A cycle is a fatal configuration error naming every node in the cycle
- Output ordering is deterministic for the same input
- References to undeclared resources are kept as external refs, not nodes
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from converge_kernel.errors import CycleError, DuplicateResourceError, SelfDependencyError
from converge_kernel.models.resource import Resource
from converge_kernel.models.values import ResourceRef, find_references, ref_sort_key

log = logging.getLogger(__name__)

_UNVISITED, _VISITING, _DONE = 0, 1, 2


class DependencyGraph:
    """
    Directed acyclic graph over declared resources.
    An edge A -> B means A depends on B, so B applies first.
    """

    def __init__(
        self,
        nodes: Dict[tuple, Resource],
        edges: Dict[tuple, List[ResourceRef]],
        implicit_edges: Set[Tuple[tuple, tuple]],
        external_refs: Dict[tuple, List[ResourceRef]],
        order: List[tuple],
        depth: Dict[tuple, int],
    ):
        self._nodes = nodes
        self._edges = edges
        self._implicit = implicit_edges
        self._external = external_refs
        self._order = order
        self._depth = depth

        self._dependents: Dict[tuple, List[ResourceRef]] = {k: [] for k in nodes}
        for key, deps in edges.items():
            for dep in deps:
                self._dependents[dep.key].append(nodes[key].ref)
        for key in self._dependents:
            self._dependents[key].sort(key=ref_sort_key)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, ref: ResourceRef) -> bool:
        return ref.key in self._nodes

    def get(self, ref: ResourceRef) -> Optional[Resource]:
        return self._nodes.get(ref.key)

    @property
    def order(self) -> List[Resource]:
        """Resources in topological order: dependencies before dependents."""
        return [self._nodes[k] for k in self._order]

    def depth(self, ref: ResourceRef) -> int:
        """Longest dependency chain below this resource (0 for leaves)."""
        return self._depth[ref.key]

    def dependencies(self, ref: ResourceRef) -> List[ResourceRef]:
        """Declared resources this resource depends on."""
        return list(self._edges[ref.key])

    def dependents(self, ref: ResourceRef) -> List[ResourceRef]:
        """Declared resources that depend on this resource."""
        return list(self._dependents[ref.key])

    def external_dependencies(self, ref: ResourceRef) -> List[ResourceRef]:
        """Referenced resources that are not part of the desired set."""
        return list(self._external.get(ref.key, []))

    def all_dependencies(self, ref: ResourceRef) -> List[ResourceRef]:
        """Declared and external dependencies, sorted."""
        return sorted(
            self.dependencies(ref) + self.external_dependencies(ref),
            key=ref_sort_key,
        )

    def is_implicit(self, ref: ResourceRef, dependency: ResourceRef) -> bool:
        """True if the edge was inferred from an attribute reference only."""
        return (ref.key, dependency.key) in self._implicit


def infer_references(resource: Resource) -> Set[ResourceRef]:
    """Scan attribute values for references to other resources."""
    refs = set()
    for value in resource.attributes.values():
        refs.update(find_references(value))
    return refs


def build_graph(resources: Iterable[Resource]) -> DependencyGraph:
    """
    Build a DependencyGraph from declared resources.

    Raises DuplicateResourceError, SelfDependencyError or CycleError.
    """
    nodes: Dict[tuple, Resource] = {}
    for resource in resources:
        if resource.key in nodes:
            raise DuplicateResourceError(resource.ref)
        nodes[resource.key] = resource

    # Pre-pass: materialize attribute references as explicit edges.
    edges: Dict[tuple, List[ResourceRef]] = {}
    implicit: Set[Tuple[tuple, tuple]] = set()
    external: Dict[tuple, List[ResourceRef]] = {}

    for key, resource in nodes.items():
        declared = set(resource.depends_on)
        inferred = infer_references(resource)
        if resource.ref in declared or resource.ref in inferred:
            raise SelfDependencyError(resource.ref)

        for ref in inferred - declared:
            implicit.add((key, ref.key))

        internal, outside = [], []
        for ref in declared | inferred:
            (internal if ref.key in nodes else outside).append(ref)
        edges[key] = sorted(internal, key=ref_sort_key)
        if outside:
            external[key] = sorted(outside, key=ref_sort_key)

    order = _toposort(nodes, edges)

    depth: Dict[tuple, int] = {}
    for key in order:
        deps = edges[key]
        depth[key] = 1 + max(depth[d.key] for d in deps) if deps else 0

    log.debug(
        "Built dependency graph: %d resources, %d implicit edges, %d with external refs",
        len(nodes), len(implicit), len(external),
    )
    return DependencyGraph(nodes, edges, implicit, external, order, depth)


def _toposort(
    nodes: Dict[tuple, Resource],
    edges: Dict[tuple, List[ResourceRef]],
) -> List[tuple]:
    """
    Depth-first topological sort with three-colour marking.
    A back-edge to a node still being visited is a cycle.
    """
    color = {key: _UNVISITED for key in nodes}
    order: List[tuple] = []

    for root in sorted(nodes):
        if color[root] != _UNVISITED:
            continue

        color[root] = _VISITING
        path = [root]
        stack = [(root, iter(edges[root]))]

        while stack:
            key, remaining = stack[-1]
            dep = next(remaining, None)

            if dep is None:
                stack.pop()
                path.pop()
                color[key] = _DONE
                order.append(key)
                continue

            if color[dep.key] == _VISITING:
                cycle = path[path.index(dep.key):]
                raise CycleError([nodes[k].ref for k in cycle])

            if color[dep.key] == _UNVISITED:
                color[dep.key] = _VISITING
                path.append(dep.key)
                stack.append((dep.key, iter(edges[dep.key])))

    return order
