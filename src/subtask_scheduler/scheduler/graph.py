"""Dependency graph builder and plan validator.

Everything here is pure: graphs are rebuilt from a fresh snapshot on every call
and keyed by opaque identifiers (an edge list plus forward/inverse adjacency),
never by live object references.

Cycle detection is a three-color depth-first search (white = unvisited,
gray = on the current path, black = finished) driven by an explicit stack, so
deep chains never hit the interpreter recursion limit. Leveling is a Kahn-style
sweep: each round takes every node whose remaining in-degree is zero, orders it
by priority weight descending with input order breaking ties.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Protocol, TypeVar

from subtask_scheduler.scheduler.errors import CycleError, ValidationError
from subtask_scheduler.scheduler.models import (
    DependencyGraph,
    DependencyNode,
    GraphTask,
    OrchestrationPlan,
    TaskPriority,
    ValidationResult,
)

CYCLE_SEPARATOR = " → "
DEEP_CHAIN_LEVELS = 5

_WHITE = 0
_GRAY = 1
_BLACK = 2


class SupportsDependencies(Protocol):
    """Anything exposing the attributes the graph builder reads."""

    @property
    def task_id(self) -> str: ...

    @property
    def title(self) -> str: ...

    @property
    def priority(self) -> TaskPriority: ...

    @property
    def depends_on(self) -> list[str]: ...


TaskT = TypeVar("TaskT", bound=SupportsDependencies)


def build_dependency_graph(tasks: Iterable[SupportsDependencies]) -> DependencyGraph:
    """Build nodes, derive inverse edges, detect cycles, then compute levels.

    Dependencies on identifiers outside ``tasks`` are dropped from the snapshot.
    A repeated ``task_id`` raises ``ValidationError``.
    """

    nodes: dict[str, DependencyNode] = {}
    for task in tasks:
        if task.task_id in nodes:
            raise ValidationError(f"Duplicate task id in graph: {task.task_id}")
        nodes[task.task_id] = DependencyNode(
            task_id=task.task_id,
            title=task.title,
            priority=TaskPriority.parse(task.priority),
            depends_on=_unique(task.depends_on),
        )

    for node in nodes.values():
        node.depends_on = [dep_id for dep_id in node.depends_on if dep_id in nodes]
        for dep_id in node.depends_on:
            dependents = nodes[dep_id].dependents
            if node.task_id not in dependents:
                dependents.append(node.task_id)

    cycle = find_cycle(
        list(nodes),
        {task_id: node.depends_on for task_id, node in nodes.items()},
    )
    if cycle is not None:
        return DependencyGraph(
            nodes=nodes,
            levels=[],
            has_cycle=True,
            cycle_details=CYCLE_SEPARATOR.join(nodes[task_id].title for task_id in cycle),
            cycle=cycle,
        )

    return DependencyGraph(nodes=nodes, levels=_compute_levels(nodes), has_cycle=False)


def get_execution_order(tasks: Sequence[TaskT]) -> list[TaskT]:
    """Return ``tasks`` in a valid topological order, priority-ordered within a level."""

    graph = build_dependency_graph(tasks)
    if graph.has_cycle:
        raise CycleError(graph.cycle_details or "")

    task_by_id = {task.task_id: task for task in tasks}
    return [task_by_id[task_id] for level in graph.levels for task_id in level]


def validate_dependencies(plan: OrchestrationPlan) -> ValidationResult:
    """Validate a plan by subtask title before anything is persisted.

    Structural errors (duplicates, unknown titles, self-dependency, cycles) make the
    plan invalid and stop further analysis. A sound plan is leveled to surface
    warnings about orphans, deep chains and fully parallel plans.
    """

    subtasks = plan.all_subtasks()
    titles = [subtask.title for subtask in subtasks]
    known_titles = set(titles)
    errors: list[str] = []

    counts: dict[str, int] = {}
    for title in titles:
        counts[title] = counts.get(title, 0) + 1
    for title, count in counts.items():
        if count > 1:
            errors.append(f'Duplicate title: "{title}" appears {count} times')

    for subtask in subtasks:
        for dep in subtask.depends_on:
            if dep not in known_titles:
                errors.append(f'"{subtask.title}" depends on "{dep}", which is not in the plan')

    for subtask in subtasks:
        if subtask.title in subtask.depends_on:
            errors.append(f'"{subtask.title}" depends on itself')

    errors = _unique(errors)
    if errors:
        return ValidationResult(valid=False, errors=errors)

    adjacency = {subtask.title: _unique(subtask.depends_on) for subtask in subtasks}
    cycle = find_cycle(titles, adjacency)
    if cycle is not None:
        cycle_details = CYCLE_SEPARATOR.join(cycle)
        return ValidationResult(
            valid=False,
            errors=[f"Circular dependency detected: {cycle_details}"],
            cycle_details=cycle_details,
        )

    warnings: list[str] = []
    depended_upon = {dep for subtask in subtasks for dep in subtask.depends_on}
    orphans = [
        subtask.title
        for subtask in subtasks
        if not subtask.depends_on and subtask.title not in depended_upon
    ]
    if len(orphans) > 1:
        warnings.append(
            f"{len(orphans)} subtasks have no dependencies and can run in parallel: "
            + ", ".join(f'"{title}"' for title in orphans),
        )

    graph = build_dependency_graph(
        GraphTask(
            task_id=subtask.title,
            title=subtask.title,
            priority=subtask.priority,
            depends_on=list(subtask.depends_on),
        )
        for subtask in subtasks
    )
    if graph.total_levels > DEEP_CHAIN_LEVELS:
        warnings.append(
            f"Deep dependency chain ({graph.total_levels} levels); consider parallelizing",
        )

    if len(subtasks) > 1 and not any(subtask.depends_on for subtask in subtasks):
        warnings.append("No dependencies declared; all subtasks will run in parallel")

    return ValidationResult(valid=True, warnings=warnings, graph=graph)


def find_cycle(
    order: Sequence[str],
    adjacency: Mapping[str, Sequence[str]],
) -> list[str] | None:
    """Return the first cycle found as ``[start, ..., start]``, or None.

    Roots are visited in ``order``; edges to keys missing from ``adjacency`` are ignored.
    """

    color = dict.fromkeys(adjacency, _WHITE)
    for root in order:
        if color.get(root) != _WHITE:
            continue
        color[root] = _GRAY
        path = [root]
        stack = [iter(adjacency[root])]
        while stack:
            descended = False
            for neighbour in stack[-1]:
                state = color.get(neighbour)
                if state == _GRAY:
                    return [*path[path.index(neighbour) :], neighbour]
                if state == _WHITE:
                    color[neighbour] = _GRAY
                    path.append(neighbour)
                    stack.append(iter(adjacency[neighbour]))
                    descended = True
                    break
            if not descended:
                stack.pop()
                color[path.pop()] = _BLACK
    return None


def _compute_levels(nodes: dict[str, DependencyNode]) -> list[list[str]]:
    position = {task_id: index for index, task_id in enumerate(nodes)}

    def sort_key(task_id: str) -> tuple[int, int]:
        return -nodes[task_id].priority.weight, position[task_id]

    in_degree = {task_id: len(node.depends_on) for task_id, node in nodes.items()}

    levels: list[list[str]] = []
    current = [task_id for task_id, degree in in_degree.items() if degree == 0]
    while current:
        current.sort(key=sort_key)
        level_index = len(levels)
        levels.append(current)
        released: list[str] = []
        for task_id in current:
            node = nodes[task_id]
            node.level = level_index
            for dependent_id in node.dependents:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    released.append(dependent_id)
        current = released
    return levels


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result
