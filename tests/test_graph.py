from __future__ import annotations

import allure
import pytest

from subtask_scheduler.scheduler.errors import CycleError, ValidationError
from subtask_scheduler.scheduler.graph import (
    build_dependency_graph,
    find_cycle,
    get_execution_order,
)
from subtask_scheduler.scheduler.models import GraphTask, TaskPriority

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Dependency Graph"),
]


def _task(
    task_id: str,
    *depends_on: str,
    priority: TaskPriority = TaskPriority.MEDIUM,
) -> GraphTask:
    return GraphTask(task_id=task_id, title=task_id, priority=priority, depends_on=list(depends_on))


def test_fan_out_levels_and_parallelism() -> None:
    graph = build_dependency_graph([_task("A"), _task("B", "A"), _task("C", "A")])

    assert graph.has_cycle is False
    assert graph.levels == [["A"], ["B", "C"]]
    assert graph.can_parallelize is True
    assert graph.nodes["A"].dependents == ["B", "C"]
    assert graph.nodes["B"].level == 1


def test_two_node_cycle_is_reported_closed() -> None:
    graph = build_dependency_graph([_task("X", "Y"), _task("Y", "X")])

    assert graph.has_cycle is True
    assert graph.levels == []
    assert graph.cycle == ["X", "Y", "X"]
    assert graph.cycle_details == "X → Y → X"


def test_cycle_details_use_titles() -> None:
    graph = build_dependency_graph(
        [
            GraphTask(task_id="t1", title="Design", depends_on=["t3"]),
            GraphTask(task_id="t2", title="Build", depends_on=["t1"]),
            GraphTask(task_id="t3", title="Ship", depends_on=["t2"]),
        ],
    )

    assert graph.has_cycle is True
    assert graph.cycle_details == "Design → Ship → Build → Design"


def test_level_is_ordered_by_priority_then_input_order() -> None:
    graph = build_dependency_graph(
        [
            _task("low", priority=TaskPriority.LOW),
            _task("urgent-1", priority=TaskPriority.URGENT),
            _task("medium", priority=TaskPriority.MEDIUM),
            _task("urgent-2", priority=TaskPriority.URGENT),
            _task("high", priority=TaskPriority.HIGH),
        ],
    )

    assert graph.levels == [["urgent-1", "urgent-2", "high", "medium", "low"]]


def test_level_exceeds_levels_of_all_dependencies() -> None:
    tasks = [
        _task("a"),
        _task("b"),
        _task("c", "a"),
        _task("d", "c", "b"),
        _task("e", "a", "d"),
        _task("f"),
    ]
    graph = build_dependency_graph(tasks)

    for node in graph.nodes.values():
        if node.depends_on:
            assert node.level > max(graph.nodes[dep].level for dep in node.depends_on)
        else:
            assert node.level == 0
    assert sorted(graph.levels[0]) == ["a", "b", "f"]
    assert graph.total_levels == 4


def test_unknown_and_repeated_dependencies_are_ignored() -> None:
    graph = build_dependency_graph([_task("a"), _task("b", "a", "a", "missing")])

    assert graph.nodes["b"].depends_on == ["a"]
    assert graph.nodes["a"].dependents == ["b"]
    assert graph.levels == [["a"], ["b"]]


def test_linear_chain_cannot_parallelize() -> None:
    graph = build_dependency_graph([_task("a"), _task("b", "a"), _task("c", "b")])

    assert graph.can_parallelize is False
    assert graph.levels == [["a"], ["b"], ["c"]]


def test_execution_order_is_a_valid_topological_permutation() -> None:
    tasks = [
        _task("deploy", "test", "build"),
        _task("test", "build", priority=TaskPriority.HIGH),
        _task("build", "design"),
        _task("docs", priority=TaskPriority.LOW),
        _task("design", priority=TaskPriority.URGENT),
    ]

    order = get_execution_order(tasks)

    assert sorted(task.task_id for task in order) == sorted(task.task_id for task in tasks)
    seen: set[str] = set()
    for task in order:
        assert set(task.depends_on) <= seen
        seen.add(task.task_id)
    assert [task.task_id for task in order] == ["design", "docs", "build", "test", "deploy"]


def test_execution_order_returns_input_objects() -> None:
    tasks = [_task("a"), _task("b", "a")]

    order = get_execution_order(tasks)

    assert order[0] is tasks[0]
    assert order[1] is tasks[1]


def test_execution_order_raises_on_cycle() -> None:
    with pytest.raises(CycleError) as error:
        get_execution_order([_task("a", "c"), _task("b", "a"), _task("c", "b")])

    assert error.value.cycle_details == "a → c → b → a"
    assert "Circular dependencies detected" in str(error.value)


def test_repeated_task_id_is_rejected() -> None:
    with pytest.raises(ValidationError, match="Duplicate task id in graph: a"):
        get_execution_order([_task("a"), _task("b", "a"), _task("a")])


def test_self_loop_is_a_cycle() -> None:
    graph = build_dependency_graph([_task("solo", "solo")])

    assert graph.has_cycle is True
    assert graph.cycle == ["solo", "solo"]


def test_deep_chain_does_not_hit_recursion_limit() -> None:
    size = 5_000
    tasks = [_task("n0")] + [_task(f"n{index}", f"n{index - 1}") for index in range(1, size)]

    graph = build_dependency_graph(tasks)

    assert graph.has_cycle is False
    assert graph.total_levels == size


def test_find_cycle_reports_only_the_looping_suffix() -> None:
    adjacency = {"entry": ["loop-1"], "loop-1": ["loop-2"], "loop-2": ["loop-1"]}

    assert find_cycle(["entry", "loop-1", "loop-2"], adjacency) == ["loop-1", "loop-2", "loop-1"]
    assert find_cycle(["a"], {"a": ["b"], "b": []}) is None
