# critical_path.py — Critical Path Method over a task dependency graph
"""
Pure computation, no database access. Times are integer day offsets from
an arbitrary origin; callers convert dates to offsets and back.

Forward pass (successor S of predecessor P, lag L):

    finish_to_start   S.es >= P.ef + L
    start_to_start    S.es >= P.es + L
    finish_to_finish  S.es >= P.ef - dur(S) + L
    start_to_finish   S.es >= P.es - dur(S) + L

The backward pass applies the same constraints in reverse to derive each
predecessor's latest finish. Nodes with zero slack form the critical path.
"""

import heapq
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import errors
from models import DependencyType


@dataclass
class CPMTask:
    id: str
    duration: int
    start: int = 0  # earliest start allowed by the task's own timeline


@dataclass
class CPMDependency:
    task_id: str  # the dependent (successor) task
    depends_on_task_id: str  # the predecessor
    dependency_type: DependencyType = DependencyType.FINISH_TO_START
    lag_days: int = 0


@dataclass
class CPMNode:
    id: str
    duration: int
    earliest_start: int = 0
    earliest_finish: int = 0
    latest_start: int = 0
    latest_finish: int = 0

    @property
    def slack(self) -> int:
        return self.latest_start - self.earliest_start

    @property
    def is_critical(self) -> bool:
        return self.slack == 0


@dataclass
class CPMResult:
    nodes: Dict[str, CPMNode]
    order: List[str]
    project_end: int
    critical_path: List[str] = field(default_factory=list)

    def is_critical_dependency(self, dependency: CPMDependency) -> bool:
        node = self.nodes.get(dependency.task_id)
        return node is not None and node.is_critical


def _relevant(tasks: Sequence[CPMTask], dependencies: Iterable[CPMDependency]) -> List[CPMDependency]:
    ids = {t.id for t in tasks}
    return [
        d for d in dependencies
        if d.task_id in ids and d.depends_on_task_id in ids and d.task_id != d.depends_on_task_id
    ]


def topological_order(tasks: Sequence[CPMTask], dependencies: Iterable[CPMDependency]) -> List[str]:
    """Kahn's algorithm, ties broken by input position. Raises ValidationError on cycles."""
    position = {t.id: i for i, t in enumerate(tasks)}
    indegree = {t.id: 0 for t in tasks}
    successors: Dict[str, List[str]] = {t.id: [] for t in tasks}
    for dep in _relevant(tasks, dependencies):
        successors[dep.depends_on_task_id].append(dep.task_id)
        indegree[dep.task_id] += 1

    ready = [position[t] for t, n in indegree.items() if n == 0]
    heapq.heapify(ready)
    order = []
    while ready:
        task_id = tasks[heapq.heappop(ready)].id
        order.append(task_id)
        for succ in successors[task_id]:
            indegree[succ] -= 1
            if indegree[succ] == 0:
                heapq.heappush(ready, position[succ])

    if len(order) != len(tasks):
        stuck = sorted((t for t, n in indegree.items() if n > 0), key=position.get)
        raise errors.ValidationError("Task dependencies contain a cycle", {"taskIds": stuck})
    return order


def _forward_candidate(dep: CPMDependency, pred: CPMNode, duration: int) -> int:
    kind = DependencyType(dep.dependency_type)
    lag = dep.lag_days or 0
    if kind == DependencyType.START_TO_START:
        return pred.earliest_start + lag
    if kind == DependencyType.FINISH_TO_FINISH:
        return pred.earliest_finish - duration + lag
    if kind == DependencyType.START_TO_FINISH:
        return pred.earliest_start - duration + lag
    return pred.earliest_finish + lag


def _backward_limit(dep: CPMDependency, node: CPMNode, succ: CPMNode) -> int:
    """Latest finish the predecessor ``node`` may have without delaying ``succ``"""
    kind = DependencyType(dep.dependency_type)
    lag = dep.lag_days or 0
    if kind == DependencyType.START_TO_START:
        return succ.latest_start - lag + node.duration
    if kind == DependencyType.FINISH_TO_FINISH:
        return succ.latest_finish - lag
    if kind == DependencyType.START_TO_FINISH:
        return succ.latest_finish - lag + node.duration
    return succ.latest_start - lag


def compute(tasks: Sequence[CPMTask], dependencies: Iterable[CPMDependency],
            project_end: Optional[int] = None) -> CPMResult:
    dependencies = _relevant(tasks, dependencies)
    order = topological_order(tasks, dependencies)
    nodes = {t.id: CPMNode(id=t.id, duration=max(0, t.duration), earliest_start=t.start) for t in tasks}

    incoming: Dict[str, List[CPMDependency]] = {t.id: [] for t in tasks}
    outgoing: Dict[str, List[CPMDependency]] = {t.id: [] for t in tasks}
    for dep in dependencies:
        incoming[dep.task_id].append(dep)
        outgoing[dep.depends_on_task_id].append(dep)

    for task_id in order:
        node = nodes[task_id]
        for dep in incoming[task_id]:
            candidate = _forward_candidate(dep, nodes[dep.depends_on_task_id], node.duration)
            node.earliest_start = max(node.earliest_start, candidate)
        node.earliest_finish = node.earliest_start + node.duration

    end = max((n.earliest_finish for n in nodes.values()), default=0)
    if project_end is not None:
        end = max(end, project_end)

    for task_id in reversed(order):
        node = nodes[task_id]
        limits = [_backward_limit(dep, node, nodes[dep.task_id]) for dep in outgoing[task_id]]
        node.latest_finish = min(limits) if limits else end
        node.latest_start = node.latest_finish - node.duration

    critical = [task_id for task_id in order if nodes[task_id].is_critical]
    return CPMResult(nodes=nodes, order=order, project_end=end, critical_path=critical)
