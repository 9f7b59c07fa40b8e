"""
Graph validation and canonical ordering.
"""

from __future__ import annotations

import heapq
from typing import Dict, Iterator, List

from ..errors import CycleError, DanglingDependencyError, GraphValidationError
from .model import Graph, StepKind


def validate(graph: Graph) -> None:
    """
    Check that ``graph`` is a well-formed DAG.

    Returns None when the graph is valid.

    Raises:
        DanglingDependencyError: a dependency or branch target is not a
            top-level step of the graph
        CycleError: the dependency relation (including implicit
            conditional -> branch edges) has a cycle
        GraphValidationError: other structural problems
    """
    if not graph.steps:
        raise GraphValidationError(f"Graph {graph.name} has no steps")

    for step in graph.steps:
        for dependency in sorted(step.depends_on):
            if dependency not in graph:
                raise DanglingDependencyError(step.id, dependency)
        if step.kind == StepKind.CONDITIONAL:
            for label, target in step.branches.items():
                if target not in graph:
                    raise DanglingDependencyError(step.id, target)
                if target == step.id:
                    raise CycleError([step.id, step.id])
            if len(set(step.branches.values())) != len(step.branches):
                raise GraphValidationError(f"Conditional step {step.id} routes two branches to the same step")

    _find_cycle(graph)


def _find_cycle(graph: Graph) -> None:
    white, grey, black = 0, 1, 2
    color: Dict[str, int] = {step_id: white for step_id in graph.ids}
    path: List[str] = []

    for root in graph.ids:
        if color[root] != white:
            continue
        color[root] = grey
        path.append(root)
        pending: List[Iterator[str]] = [iter(sorted(graph.dependencies(root)))]

        while pending:
            dependency = next(pending[-1], None)
            if dependency is None:
                pending.pop()
                color[path.pop()] = black
                continue
            if color[dependency] == grey:
                start = path.index(dependency)
                cycle = path[start:] + [dependency]
                # Report in execution direction: dependency first
                raise CycleError(list(reversed(cycle)))
            if color[dependency] == white:
                color[dependency] = grey
                path.append(dependency)
                pending.append(iter(sorted(graph.dependencies(dependency))))


def topological_order(graph: Graph) -> List[str]:
    """
    Canonical execution order of top-level steps.

    Kahn's algorithm with ties broken by declared position, so the same graph
    always yields the same order. Context merges and compensation both follow
    this order (compensation in reverse).
    """
    indegree = {step_id: len(graph.dependencies(step_id)) for step_id in graph.ids}
    dependents: Dict[str, List[str]] = {step_id: [] for step_id in graph.ids}
    for step_id in graph.ids:
        for dependency in graph.dependencies(step_id):
            if dependency in dependents:
                dependents[dependency].append(step_id)

    ready = [(graph.declared_index(step_id), step_id) for step_id, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)

    order: List[str] = []
    while ready:
        _, step_id = heapq.heappop(ready)
        order.append(step_id)
        for dependent in dependents[step_id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, (graph.declared_index(dependent), dependent))

    if len(order) != len(indegree):
        remaining = [step_id for step_id in graph.ids if step_id not in set(order)]
        raise CycleError(remaining + [remaining[0]])

    return order
