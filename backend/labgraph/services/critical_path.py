"""Longest dependency chain over a selected set of tasks.

Every task costs one step, so the duration of a chain is the number of tasks
in it. Only dependency types in the participating set order tasks; the rest
are listed on the task summaries but never lengthen a chain.
"""

from __future__ import annotations

import heapq
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

import networkx as nx

from ..errors import ConfigurationError, CycleError

DEPENDENCY_TYPES = ("blocks", "requires", "suggests", "relates")
DEFAULT_PARTICIPATING_TYPES = frozenset({"blocks", "requires"})


@dataclass
class TaskSummary:
    id: str
    title: Optional[str] = None
    status: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    critical: bool = False


@dataclass
class CriticalPathResult:
    critical_path: List[str]
    duration: int
    tasks: List[TaskSummary]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def participating_types(raw: Optional[str] = None) -> FrozenSet[str]:
    """Dependency types that count for ordering, from CRITICAL_DEPENDENCY_TYPES."""
    value = raw if raw is not None else os.getenv("CRITICAL_DEPENDENCY_TYPES")
    if not value:
        return DEFAULT_PARTICIPATING_TYPES
    types = frozenset(t.strip() for t in value.split(",") if t.strip())
    unknown = sorted(types - set(DEPENDENCY_TYPES))
    if unknown or not types:
        raise ConfigurationError(
            f"Invalid CRITICAL_DEPENDENCY_TYPES: {value}",
            details={"allowed": list(DEPENDENCY_TYPES)},
        )
    return types


def topological_order(nodes: Sequence[str], edges: Iterable[Tuple[str, str]]) -> List[str]:
    """Kahn's algorithm, smallest id first among ready nodes."""
    successors: Dict[str, List[str]] = {n: [] for n in nodes}
    indegree: Dict[str, int] = {n: 0 for n in nodes}
    edge_list = list(edges)
    for u, v in edge_list:
        successors[u].append(v)
        indegree[v] += 1

    ready = [n for n in nodes if indegree[n] == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for nxt in successors[node]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                heapq.heappush(ready, nxt)

    if len(order) < len(indegree):
        placed = set(order)
        stuck = nx.DiGraph()
        stuck.add_edges_from((u, v) for u, v in edge_list if u not in placed and v not in placed)
        cycle = [u for u, _ in nx.find_cycle(stuck)]
        raise CycleError("Dependency cycle detected", details={"cycle": cycle})
    return order


def compute_critical_path(
    tasks: Sequence[Mapping[str, Any]],
    dependencies: Sequence[Mapping[str, Any]],
    participating: Optional[FrozenSet[str]] = None,
) -> CriticalPathResult:
    """Critical path of ``tasks`` under ``dependencies``.

    ``tasks`` are rows with at least ``id`` (``title`` and ``status`` are
    copied through). ``dependencies`` are rows with ``from_task_id``,
    ``to_task_id`` and ``dependency_type``; edges leaving the task set are
    ignored for ordering. Ties between equally long chains go to the chain
    whose first task id sorts lowest.
    """
    if participating is None:
        participating = DEFAULT_PARTICIPATING_TYPES
    if not tasks:
        return CriticalPathResult(critical_path=[], duration=0, tasks=[])

    by_id: Dict[str, Mapping[str, Any]] = {}
    for task in tasks:
        by_id.setdefault(task["id"], task)
    ids = list(by_id)

    edges = list(
        dict.fromkeys(
            (dep["from_task_id"], dep["to_task_id"])
            for dep in dependencies
            if dep.get("dependency_type", "blocks") in participating
            and dep["from_task_id"] in by_id
            and dep["to_task_id"] in by_id
            and dep["from_task_id"] != dep["to_task_id"]
        )
    )
    predecessors: Dict[str, List[str]] = {n: [] for n in ids}
    for u, v in edges:
        predecessors[v].append(u)

    length: Dict[str, int] = {}
    start: Dict[str, str] = {}
    previous: Dict[str, Optional[str]] = {}
    for node in topological_order(ids, edges):
        best = None
        for pred in predecessors[node]:
            if best is None or (-length[pred], start[pred], pred) < (-length[best], start[best], best):
                best = pred
        if best is None:
            length[node], start[node], previous[node] = 1, node, None
        else:
            length[node], start[node], previous[node] = length[best] + 1, start[best], best

    end = min(ids, key=lambda n: (-length[n], start[n], n))
    path: List[str] = []
    cursor: Optional[str] = end
    while cursor is not None:
        path.append(cursor)
        cursor = previous[cursor]
    path.reverse()

    on_path = set(path)
    outgoing: Dict[str, List[str]] = {n: [] for n in ids}
    for dep in dependencies:
        source = dep["from_task_id"]
        if source in outgoing and dep["to_task_id"] not in outgoing[source]:
            outgoing[source].append(dep["to_task_id"])

    summaries = [
        TaskSummary(
            id=task_id,
            title=by_id[task_id].get("title"),
            status=by_id[task_id].get("status"),
            dependencies=outgoing[task_id],
            critical=task_id in on_path,
        )
        for task_id in ids
    ]
    return CriticalPathResult(critical_path=path, duration=length[end], tasks=summaries)
