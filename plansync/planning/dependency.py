"""
Dependency resolution for plan graphs.

Builds a depends-on graph over task and gate identifiers, validates it
(unknown targets, cycles) and derives the orderings the reconciler uses:

- ``topological_order()``: reporting order and issue queueing order
- ``levels()``: generations of nodes with no dependency on one another
- ``critical_path()``: longest dependency chain, used as a scheduling
  tie-breaker

Dependency edges never block creation: an issue for a dependent task is
created without waiting for its dependency's remote number, and textual
references are patched in the reconciler's finishing pass.

Example:
    >>> graph = resolve(plan)
    >>> graph.topological_order()
    ['0.1', '0.2', '0.G', '1.1', '1.G']
    >>> sorted(graph.dependents("0.G"))
    ['1.1']
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import structlog

from plansync.exceptions import CycleDetectedError, DependencyError
from plansync.models.plan import Plan

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DependencyGraph:
    """Immutable depends-on graph over plan node identifiers.

    Attributes:
        nodes: Node identifiers in plan order (each sprint's tasks, then its gate)
        edges: Mapping of node -> identifiers it depends on
    """

    nodes: tuple[str, ...]
    edges: Mapping[str, frozenset[str]] = field(hash=False)

    @classmethod
    def from_edges(cls, nodes: Iterable[str], edges: Mapping[str, Iterable[str]]) -> "DependencyGraph":
        """Build and validate a graph.

        Raises:
            DependencyError: If an edge points at an unknown node
            CycleDetectedError: If the edges form a cycle
        """
        ordered = tuple(dict.fromkeys(nodes))
        frozen = {node: frozenset(edges.get(node, ())) for node in ordered}

        known = set(ordered)
        for node, deps in frozen.items():
            unknown = deps - known
            if unknown:
                raise DependencyError(f"Node {node} depends on unknown node(s): {', '.join(sorted(unknown))}")

        graph = cls(nodes=ordered, edges=frozen)
        graph._check_acyclic()
        return graph

    def dependencies(self, node: str) -> frozenset[str]:
        return self.edges[node]

    def dependents(self, node: str) -> frozenset[str]:
        if node not in self.edges:
            raise KeyError(node)
        return frozenset(other for other, deps in self.edges.items() if node in deps)

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; ties are broken by plan order so the result is stable."""
        position = {node: index for index, node in enumerate(self.nodes)}
        remaining = {node: set(deps) for node, deps in self.edges.items()}
        order: list[str] = []

        ready = sorted((node for node, deps in remaining.items() if not deps), key=position.__getitem__)
        while ready:
            node = ready.pop(0)
            order.append(node)
            del remaining[node]
            released = []
            for other, deps in remaining.items():
                if node in deps:
                    deps.discard(node)
                    if not deps:
                        released.append(other)
            ready = sorted(ready + released, key=position.__getitem__)

        if remaining:
            # Unreachable for validated graphs
            raise CycleDetectedError(self._find_cycle() or sorted(remaining))
        return order

    def levels(self) -> list[list[str]]:
        """Group nodes into generations; nodes within a generation are independent."""
        depth: dict[str, int] = {}
        for node in self.topological_order():
            deps = self.edges[node]
            depth[node] = 1 + max((depth[dep] for dep in deps), default=-1)

        grouped: dict[int, list[str]] = {}
        for node in self.nodes:
            grouped.setdefault(depth[node], []).append(node)
        return [grouped[level] for level in sorted(grouped)]

    def critical_path(self) -> list[str]:
        """Longest depends-on chain, from root to terminal node."""
        longest: dict[str, list[str]] = {}
        for node in self.topological_order():
            best: list[str] = []
            for dep in sorted(self.edges[node]):
                if len(longest[dep]) > len(best):
                    best = longest[dep]
            longest[node] = best + [node]

        path: list[str] = []
        for node in self.nodes:
            if len(longest[node]) > len(path):
                path = longest[node]
        return path

    def _check_acyclic(self) -> None:
        cycle = self._find_cycle()
        if cycle:
            log.error("dependency_cycle_detected", path=cycle)
            raise CycleDetectedError(cycle)

    def _find_cycle(self) -> list[str] | None:
        """Depth-first search returning the first cycle found, or None."""
        visiting: list[str] = []
        on_stack: set[str] = set()
        done: set[str] = set()

        def visit(node: str) -> list[str] | None:
            visiting.append(node)
            on_stack.add(node)
            for dep in sorted(self.edges[node]):
                if dep in on_stack:
                    start = visiting.index(dep)
                    return visiting[start:] + [dep]
                if dep not in done:
                    found = visit(dep)
                    if found:
                        return found
            visiting.pop()
            on_stack.discard(node)
            done.add(node)
            return None

        for node in self.nodes:
            if node not in done:
                found = visit(node)
                if found:
                    return found
        return None


def resolve(plan: Plan) -> DependencyGraph:
    """Build the dependency graph of a plan.

    Args:
        plan: Parsed plan (implicit dependencies already applied)

    Returns:
        Validated DependencyGraph

    Raises:
        DependencyError: If a node depends on an identifier not in the plan
        CycleDetectedError: If the dependencies form a cycle
    """
    nodes = [node.id for node in plan.nodes()]
    edges = {node.id: node.depends_on for node in plan.nodes()}
    graph = DependencyGraph.from_edges(nodes, edges)
    log.debug("dependencies_resolved", nodes=len(graph.nodes))
    return graph
