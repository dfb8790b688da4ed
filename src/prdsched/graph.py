"""Dependency graph engine over a PRD task list.

Every function here is pure: it rebuilds the graph from the task list it is
given and never mutates the tasks. A task is addressed by its explicit ``id``
or, failing that, by ``__index_<position>`` derived from its position in the
list. Positional identifiers shift when tasks are inserted or reordered, so a
scheduling run should compute them once from a snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

from prdsched.prd import Task

logger = logging.getLogger(__name__)

DependencyErrorKind = Literal[
    "missing_dependency", "cycle", "self_reference", "missing_id", "duplicate_id"
]

_UNVISITED = 0
_IN_PROGRESS = 1
_DONE = 2


@dataclass(frozen=True, slots=True)
class GraphNode:
    task: Task
    index: int


@dataclass(slots=True)
class DependencyGraph:
    nodes: dict[str, GraphNode] = field(default_factory=dict)
    edges: dict[str, list[str]] = field(default_factory=dict)
    reverse_edges: dict[str, list[str]] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DependencyError:
    kind: DependencyErrorKind
    task_title: str
    details: str
    task_id: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "type": self.kind,
            "task_id": self.task_id,
            "task_title": self.task_title,
            "details": self.details,
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    is_valid: bool
    errors: list[DependencyError] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class CycleResult:
    has_cycle: bool
    cycle_nodes: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class TaskDependencyInfo:
    task: Task
    index: int
    dependency_ids: list[str]
    is_ready: bool
    blocked_by: list[str]


@dataclass(frozen=True, slots=True)
class ExecutionCheck:
    can_execute: bool
    reason: str | None = None


def node_id(task: Task, index: int) -> str:
    return task.id or f"__index_{index}"


def _priority_key(task: Task, index: int) -> tuple[bool, float, int]:
    # Missing priority sorts after every explicit value.
    return (task.priority is None, task.priority or 0, index)


def build_graph(tasks: Sequence[Task]) -> DependencyGraph:
    graph = DependencyGraph()
    for index, task in enumerate(tasks):
        identifier = node_id(task, index)
        if identifier in graph.nodes:
            logger.warning("[graph] Duplicate task id %r at position %d", identifier, index)
        graph.nodes[identifier] = GraphNode(task=task, index=index)
        graph.edges[identifier] = []
        graph.reverse_edges[identifier] = []

    for index, task in enumerate(tasks):
        if not task.depends_on:
            continue
        identifier = node_id(task, index)
        forward = graph.edges[identifier]
        for dependency_id in task.depends_on:
            # Unknown ids are reported by validate(); they carry no edge.
            if dependency_id not in graph.nodes or dependency_id in forward:
                continue
            forward.append(dependency_id)
            graph.reverse_edges[dependency_id].append(identifier)
    return graph


def validate(tasks: Sequence[Task]) -> ValidationResult:
    """Check declared dependencies. Cycles are reported by detect_cycles()."""
    errors: list[DependencyError] = []
    known_ids = {task.id for task in tasks if task.id}

    for task in tasks:
        if not task.depends_on:
            continue

        if not task.id:
            errors.append(
                DependencyError(
                    kind="missing_id",
                    task_title=task.title,
                    details=f'Task "{task.title}" has dependencies but no id field',
                )
            )

        for dependency_id in task.depends_on:
            if task.id and dependency_id == task.id:
                errors.append(
                    DependencyError(
                        kind="self_reference",
                        task_id=task.id,
                        task_title=task.title,
                        details=f'Task "{task.title}" depends on itself',
                    )
                )
                continue
            if dependency_id not in known_ids:
                errors.append(
                    DependencyError(
                        kind="missing_dependency",
                        task_id=task.id,
                        task_title=task.title,
                        details=(
                            f'Task "{task.title}" depends on non-existent task '
                            f'with id "{dependency_id}"'
                        ),
                    )
                )

    return ValidationResult(is_valid=not errors, errors=errors)


def detect_cycles(tasks: Sequence[Task]) -> CycleResult:
    """Three-colour depth-first search along task -> dependency edges.

    Stops at the first cycle found and returns its nodes in traversal order;
    the last node depends on the first.
    """
    graph = build_graph(tasks)
    marks: dict[str, int] = {}

    for root in graph.nodes:
        if marks.get(root, _UNVISITED) != _UNVISITED:
            continue

        marks[root] = _IN_PROGRESS
        path = [root]
        stack = [iter(graph.edges[root])]
        while stack:
            for dependency_id in stack[-1]:
                mark = marks.get(dependency_id, _UNVISITED)
                if mark == _IN_PROGRESS:
                    start = path.index(dependency_id)
                    return CycleResult(has_cycle=True, cycle_nodes=path[start:])
                if mark == _UNVISITED:
                    marks[dependency_id] = _IN_PROGRESS
                    path.append(dependency_id)
                    stack.append(iter(graph.edges[dependency_id]))
                    break
            else:
                marks[path.pop()] = _DONE
                stack.pop()

    return CycleResult(has_cycle=False)


def cycle_error(result: CycleResult) -> DependencyError:
    closed = [*result.cycle_nodes, result.cycle_nodes[0]] if result.cycle_nodes else []
    return DependencyError(
        kind="cycle",
        task_title=result.cycle_nodes[0] if result.cycle_nodes else "unknown",
        details=f"Dependency cycle detected: {' -> '.join(closed)}",
    )


def duplicate_id_errors(tasks: Sequence[Task]) -> list[DependencyError]:
    """One error per repeated explicit id; the graph keeps only the last such task."""
    first_title: dict[str, str] = {}
    errors: list[DependencyError] = []
    for task in tasks:
        if not task.id:
            continue
        if task.id not in first_title:
            first_title[task.id] = task.title
            continue
        errors.append(
            DependencyError(
                kind="duplicate_id",
                task_id=task.id,
                task_title=task.title,
                details=(
                    f'Task "{task.title}" reuses id "{task.id}" '
                    f'already taken by "{first_title[task.id]}"'
                ),
            )
        )
    return errors


def validate_for_scheduling(tasks: Sequence[Task]) -> ValidationResult:
    """validate() plus duplicate ids and cycle detection; all must pass before a run."""
    result = validate(tasks)
    errors = [*result.errors, *duplicate_id_errors(tasks)]
    cycles = detect_cycles(tasks)
    if cycles.has_cycle:
        errors.append(cycle_error(cycles))
    return ValidationResult(is_valid=not errors, errors=errors)


def topological_order(tasks: Sequence[Task]) -> list[Task]:
    graph = build_graph(tasks)
    visited: set[str] = set()
    ordered: list[Task] = []

    for root in graph.nodes:
        if root in visited:
            continue
        visited.add(root)
        path = [root]
        stack = [iter(graph.edges[root])]
        while stack:
            for dependency_id in stack[-1]:
                if dependency_id not in visited:
                    visited.add(dependency_id)
                    path.append(dependency_id)
                    stack.append(iter(graph.edges[dependency_id]))
                    break
            else:
                ordered.append(graph.nodes[path.pop()].task)
                stack.pop()
    return ordered


def _describe(graph: DependencyGraph, identifier: str, node: GraphNode) -> TaskDependencyInfo:
    dependencies = graph.edges.get(identifier, [])
    blocked_by = [
        graph.nodes[dependency_id].task.title
        for dependency_id in dependencies
        if not graph.nodes[dependency_id].task.done
    ]
    return TaskDependencyInfo(
        task=node.task,
        index=node.index,
        dependency_ids=list(dependencies),
        is_ready=node.task.done or not blocked_by,
        blocked_by=blocked_by,
    )


def get_all_tasks_with_dependency_info(tasks: Sequence[Task]) -> list[TaskDependencyInfo]:
    graph = build_graph(tasks)
    infos = [_describe(graph, identifier, node) for identifier, node in graph.nodes.items()]
    return sorted(infos, key=lambda info: info.index)


def get_ready_tasks(tasks: Sequence[Task]) -> list[TaskDependencyInfo]:
    return [
        info
        for info in get_all_tasks_with_dependency_info(tasks)
        if not info.task.done and info.is_ready
    ]


def get_blocked_tasks(tasks: Sequence[Task]) -> list[TaskDependencyInfo]:
    return [
        info
        for info in get_all_tasks_with_dependency_info(tasks)
        if not info.task.done and not info.is_ready
    ]


def get_dependents(tasks: Sequence[Task], task_id: str) -> list[Task]:
    graph = build_graph(tasks)
    return [graph.nodes[dependent].task for dependent in graph.reverse_edges.get(task_id, [])]


def get_dependencies(tasks: Sequence[Task], task_id: str) -> list[Task]:
    graph = build_graph(tasks)
    return [graph.nodes[dependency].task for dependency in graph.edges.get(task_id, [])]


def get_next_ready_task(tasks: Sequence[Task]) -> TaskDependencyInfo | None:
    ready = get_ready_tasks(tasks)
    if not ready:
        return None
    return min(ready, key=lambda info: _priority_key(info.task, info.index))


def can_execute_task(tasks: Sequence[Task], task_id: str) -> ExecutionCheck:
    graph = build_graph(tasks)
    node = graph.nodes.get(task_id)
    if node is None:
        return ExecutionCheck(False, f'Task with id "{task_id}" not found')
    if node.task.done:
        return ExecutionCheck(False, "Task is already completed")

    info = _describe(graph, task_id, node)
    if info.blocked_by:
        return ExecutionCheck(
            False,
            f"Task is blocked by incomplete dependencies: {', '.join(info.blocked_by)}",
        )
    return ExecutionCheck(True)


def get_execution_order(tasks: Sequence[Task]) -> list[Task]:
    return [task for task in topological_order(tasks) if not task.done]


def parallel_levels(graph: DependencyGraph) -> list[list[str]]:
    """Kahn's algorithm by levels, over node identifiers of not-done tasks.

    Each level is sorted by priority, then by position. The graph must be
    valid and acyclic; if layering stalls the remaining tasks are dropped.
    """
    placed = {identifier for identifier, node in graph.nodes.items() if node.task.done}
    remaining = [identifier for identifier, node in graph.nodes.items() if not node.task.done]
    levels: list[list[str]] = []

    while remaining:
        ready = [
            identifier
            for identifier in remaining
            if all(dependency_id in placed for dependency_id in graph.edges[identifier])
        ]
        if not ready:
            logger.warning(
                "[graph] Cannot layer %d task(s); dependency cycle suspected", len(remaining)
            )
            break

        ready.sort(key=lambda identifier: _priority_key(
            graph.nodes[identifier].task, graph.nodes[identifier].index
        ))
        levels.append(ready)
        placed.update(ready)
        scheduled = set(ready)
        remaining = [identifier for identifier in remaining if identifier not in scheduled]
    return levels


def get_parallel_execution_groups(tasks: Sequence[Task]) -> list[list[Task]]:
    graph = build_graph(tasks)
    return [
        [graph.nodes[identifier].task for identifier in level]
        for level in parallel_levels(graph)
    ]
