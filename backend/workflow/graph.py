"""Dependency graph validation.

Works on anything with ``id``/``title`` (steps) and
``source_step_id``/``target_step_id`` (edges), so the same checks run
against template graphs and instance graphs.

Validation never raises for a bad graph: problems come back as a list of
``DependencyGraphError`` objects on the result. Only malformed input
(``None`` collections, edges without endpoints) raises.
"""

import heapq
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from core.exceptions import (
    CyclicDependencyError,
    DependencyGraphError,
    DuplicateDependencyError,
    GraphValidationError,
    InvalidReferenceError,
    SelfDependencyError,
)

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass
class GraphValidationResult:
    valid: bool
    errors: list[DependencyGraphError] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        if not self.valid:
            raise GraphValidationError(self.errors)

    @property
    def messages(self) -> list[str]:
        return [error.message for error in self.errors]


def _check_input(steps, edges) -> None:
    if steps is None:
        raise ValueError("steps must not be None")
    if edges is None:
        raise ValueError("edges must not be None")


def _adjacency(steps: Sequence, edges: Sequence) -> tuple[dict, dict, list]:
    """Build the adjacency list of well-formed edges and collect edge errors."""
    titles = {step.id: step.title for step in steps}
    adjacency: dict[str, list[str]] = {step_id: [] for step_id in titles}
    errors: list[DependencyGraphError] = []
    seen: set[tuple[str, str]] = set()

    for edge in edges:
        source, target = edge.source_step_id, edge.target_step_id
        if not source or not target:
            raise ValueError(f"Dependency {getattr(edge, 'id', '?')} is missing an endpoint")

        unknown = [ref for ref in (source, target) if ref not in titles]
        if unknown:
            errors.extend(InvalidReferenceError(ref, getattr(edge, "id", None)) for ref in unknown)
            continue
        if source == target:
            errors.append(SelfDependencyError(source, titles[source]))
            continue
        if (source, target) in seen:
            errors.append(DuplicateDependencyError(source, target))
            continue

        seen.add((source, target))
        adjacency[source].append(target)

    return titles, adjacency, errors


def find_cycles(adjacency: dict[str, list[str]], titles: dict[str, str]) -> list[CyclicDependencyError]:
    """Three-colour DFS; every back edge yields one cycle.

    Iterative so long chains do not hit the recursion limit.
    """
    color = {node: _WHITE for node in adjacency}
    cycles: list[CyclicDependencyError] = []

    for root in adjacency:
        if color[root] != _WHITE:
            continue
        color[root] = _GRAY
        path = [root]
        stack = [iter(adjacency[root])]

        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                color[path.pop()] = _BLACK
                continue
            if color[child] == _GRAY:
                cycle = path[path.index(child):]
                cycles.append(CyclicDependencyError(cycle, [titles[n] for n in cycle]))
            elif color[child] == _WHITE:
                color[child] = _GRAY
                path.append(child)
                stack.append(iter(adjacency[child]))

    return cycles


def validate_graph(steps: Sequence, edges: Sequence) -> GraphValidationResult:
    """Check references, self-edges, duplicates and cycles."""
    _check_input(steps, edges)
    titles, adjacency, errors = _adjacency(steps, edges)
    errors.extend(find_cycles(adjacency, titles))
    return GraphValidationResult(valid=not errors, errors=errors)


def topological_order(steps: Sequence, edges: Sequence) -> list[str]:
    """Kahn's algorithm; ties are broken by step ``order``.

    Raises:
        GraphValidationError: if the graph is not a valid DAG.
    """
    result = validate_graph(steps, edges)
    result.raise_for_errors()

    order_of = {step.id: getattr(step, "order", 0) for step in steps}
    in_degree = {step.id: 0 for step in steps}
    outgoing: dict[str, list[str]] = {step.id: [] for step in steps}
    for edge in edges:
        outgoing[edge.source_step_id].append(edge.target_step_id)
        in_degree[edge.target_step_id] += 1

    heap = [(order_of[n], n) for n, degree in in_degree.items() if degree == 0]
    heapq.heapify(heap)
    ordered: list[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        ordered.append(node)
        for child in outgoing[node]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(heap, (order_of[child], child))
    return ordered


def incoming_edges(step_id: str, edges: Iterable) -> list:
    return [edge for edge in edges if edge.target_step_id == step_id]
