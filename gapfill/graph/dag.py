"""Task dependency graph with cycle detection."""

import heapq
import logging
from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import Optional

from .models import Task, ordinal_key

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Structural graph error (duplicate ids, dangling dependencies)."""

    pass


class CycleError(GraphError):
    """Dependency edges would form a cycle.

    Attributes:
        cycle: Task ids along one cycle, first id repeated at the end
        edge: Offending (dependency, dependent) edge, if known
        candidate_id: Bridging candidate whose task sits on the cycle, if any
    """

    def __init__(
        self,
        message: str,
        cycle: Optional[list[str]] = None,
        edge: Optional[tuple[str, str]] = None,
        candidate_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.cycle = cycle or []
        self.edge = edge
        self.candidate_id = candidate_id


def toposort(
    node_ids: Iterable[str],
    dependencies: Mapping[str, Iterable[str]],
) -> tuple[list[str], set[str]]:
    """Kahn's algorithm with ordinal tie-breaking.

    Args:
        node_ids: All node ids
        dependencies: node id -> ids it depends on

    Returns:
        topo_order, cycle_nodes (nodes never reaching in-degree zero)
    """
    nodes = set(node_ids)
    dependents: dict[str, list[str]] = {node: [] for node in nodes}
    indegree: dict[str, int] = {node: 0 for node in nodes}

    for node in nodes:
        for dep in dependencies.get(node, ()):
            if dep not in nodes or dep == node:
                continue
            dependents[dep].append(node)
            indegree[node] += 1

    ready = [(ordinal_key(node), node) for node in nodes if indegree[node] == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        _, node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, (ordinal_key(dependent), dependent))

    return order, nodes - set(order)


def depends_transitively(
    dependencies: Mapping[str, Iterable[str]],
    task_id: str,
    on_id: str,
) -> bool:
    """Check whether task_id reaches on_id by following dependencies."""
    seen: set[str] = set()
    stack = list(dependencies.get(task_id, ()))
    while stack:
        current = stack.pop()
        if current == on_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(dependencies.get(current, ()))
    return False


def find_cycle(dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """Extract one cycle as a path in dependency-flow order.

    The returned path starts and ends with the same id; each id is a
    dependency of the next one. Returns an empty list when acyclic.
    """
    dependents: dict[str, list[str]] = {node: [] for node in dependencies}
    for node, deps in dependencies.items():
        for dep in deps:
            dependents.setdefault(dep, []).append(node)
    for node in dependents:
        dependents[node].sort(key=ordinal_key)

    visited: set[str] = set()
    on_stack: list[str] = []
    on_stack_set: set[str] = set()

    def visit(node: str) -> list[str]:
        visited.add(node)
        on_stack.append(node)
        on_stack_set.add(node)
        for nxt in dependents.get(node, []):
            if nxt in on_stack_set:
                start = on_stack.index(nxt)
                return on_stack[start:] + [nxt]
            if nxt not in visited:
                found = visit(nxt)
                if found:
                    return found
        on_stack.pop()
        on_stack_set.discard(node)
        return []

    for node in sorted(dependents, key=ordinal_key):
        if node not in visited:
            cycle = visit(node)
            if cycle:
                return cycle
    return []


class TaskGraph:
    """Immutable adjacency view of one plan's tasks.

    The graph owns its tasks; dependency edges live in ``Task.depends_on``.
    Mutation produces a new graph via ``replace_tasks``.
    """

    def __init__(self, tasks: Iterable[Task] = ()):
        """Initialize graph.

        Args:
            tasks: Tasks of the plan

        Raises:
            GraphError: On duplicate ids or dependencies on unknown tasks
        """
        table: dict[str, Task] = {}
        for task in tasks:
            if task.id in table:
                raise GraphError(f"Duplicate task id: {task.id}")
            table[task.id] = task

        for task in table.values():
            unknown = sorted(dep for dep in task.depends_on if dep not in table)
            if unknown:
                raise GraphError(
                    f"Task {task.id} depends on unknown tasks: {', '.join(unknown)}"
                )

        self._tasks = MappingProxyType(table)

    @property
    def tasks(self) -> Mapping[str, Task]:
        """Read-only id -> task mapping."""
        return self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        for task_id in sorted(self._tasks, key=ordinal_key):
            yield self._tasks[task_id]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TaskGraph):
            return NotImplemented
        return dict(self._tasks) == dict(other._tasks)

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def dependency_map(self) -> dict[str, frozenset[str]]:
        """Return task id -> dependency ids."""
        return {task_id: task.depends_on for task_id, task in self._tasks.items()}

    def edges(self) -> list[tuple[str, str]]:
        """Return sorted (dependency, dependent) edges."""
        edges = [
            (dep, task.id) for task in self._tasks.values() for dep in task.depends_on
        ]
        return sorted(edges, key=lambda e: (ordinal_key(e[0]), ordinal_key(e[1])))

    def topological_order(self) -> list[str]:
        """Return a stable topological order of task ids.

        Raises:
            CycleError: If the dependency edges contain a cycle
        """
        order, cycle_nodes = toposort(self._tasks.keys(), self.dependency_map())
        if cycle_nodes:
            cycle = find_cycle(self.dependency_map())
            raise CycleError(
                "Cycle detected in task dependencies: " + " -> ".join(cycle),
                cycle=cycle,
                edge=(cycle[-2], cycle[-1]) if len(cycle) >= 2 else None,
            )
        return order

    def ordered_tasks(self) -> list[Task]:
        """Return tasks in topological order."""
        return [self._tasks[task_id] for task_id in self.topological_order()]

    def depends_transitively(self, task_id: str, on_id: str) -> bool:
        """Check whether ``task_id`` reaches ``on_id`` through depends_on edges."""
        return depends_transitively(self.dependency_map(), task_id, on_id)

    def replace_tasks(self, tasks: Iterable[Task]) -> "TaskGraph":
        """Return a new graph with tasks added or replaced by id.

        The new graph is not checked for cycles; callers validate before
        committing it.
        """
        table = dict(self._tasks)
        for task in tasks:
            table[task.id] = task
        return TaskGraph(table.values())

    def to_list(self) -> list[dict]:
        """Serialize tasks in ordinal order."""
        return [task.model_dump(mode="json") for task in self]

    @classmethod
    def from_list(cls, data: Iterable[dict]) -> "TaskGraph":
        return cls(Task(**item) for item in data)
