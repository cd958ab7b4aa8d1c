from __future__ import annotations

import allure

from subtask_scheduler.scheduler.graph import validate_dependencies
from subtask_scheduler.scheduler.models import OrchestrationPlan, PlanPhase, SubtaskPlan

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Plan Validation"),
]


def _plan(*subtasks: SubtaskPlan) -> OrchestrationPlan:
    return OrchestrationPlan(analysis="", phases=[PlanPhase(name="Only", subtasks=list(subtasks))])


def _subtask(title: str, *depends_on: str) -> SubtaskPlan:
    return SubtaskPlan(title=title, depends_on=list(depends_on))


def test_duplicate_title_is_rejected() -> None:
    result = validate_dependencies(
        _plan(_subtask("Design"), _subtask("Build", "Design"), _subtask("Build")),
    )

    assert result.valid is False
    assert result.errors == ['Duplicate title: "Build" appears 2 times']
    assert result.graph is None


def test_missing_dependency_is_rejected() -> None:
    result = validate_dependencies(_plan(_subtask("Build", "Design")))

    assert result.valid is False
    assert result.errors == ['"Build" depends on "Design", which is not in the plan']


def test_self_dependency_is_rejected() -> None:
    result = validate_dependencies(_plan(_subtask("Build", "Build")))

    assert result.valid is False
    assert result.errors == ['"Build" depends on itself']


def test_structural_errors_are_distinct_and_stop_cycle_analysis() -> None:
    result = validate_dependencies(
        _plan(
            _subtask("A", "B", "Ghost"),
            _subtask("B", "A"),
            _subtask("C", "C"),
            _subtask("C", "C"),
        ),
    )

    assert result.valid is False
    assert result.errors == [
        'Duplicate title: "C" appears 2 times',
        '"A" depends on "Ghost", which is not in the plan',
        '"C" depends on itself',
    ]
    assert result.cycle_details is None


def test_title_cycle_is_rejected_with_its_path() -> None:
    result = validate_dependencies(
        _plan(
            _subtask("Design", "Review"),
            _subtask("Build", "Design"),
            _subtask("Review", "Build"),
        ),
    )

    assert result.valid is False
    assert result.cycle_details == "Design → Review → Build → Design"
    assert result.errors == ["Circular dependency detected: Design → Review → Build → Design"]


def test_cycle_across_phases_is_detected() -> None:
    plan = OrchestrationPlan(
        analysis="",
        phases=[
            PlanPhase(name="One", subtasks=[_subtask("X", "Y")]),
            PlanPhase(name="Two", subtasks=[_subtask("Y", "X")]),
        ],
    )

    result = validate_dependencies(plan)

    assert result.valid is False
    assert result.cycle_details == "X → Y → X"


def test_sound_plan_has_graph_and_no_warnings() -> None:
    result = validate_dependencies(
        _plan(_subtask("Design"), _subtask("Build", "Design"), _subtask("Ship", "Build")),
    )

    assert result.valid is True
    assert result.errors == []
    assert result.warnings == []
    assert result.graph is not None
    assert result.graph.levels == [["Design"], ["Build"], ["Ship"]]


def test_independent_subtasks_warn_about_orphans_and_parallelism() -> None:
    result = validate_dependencies(_plan(_subtask("A"), _subtask("B"), _subtask("C")))

    assert result.valid is True
    assert result.warnings == [
        '3 subtasks have no dependencies and can run in parallel: "A", "B", "C"',
        "No dependencies declared; all subtasks will run in parallel",
    ]


def test_single_orphan_does_not_warn() -> None:
    result = validate_dependencies(
        _plan(_subtask("Design"), _subtask("Build", "Design"), _subtask("Notes")),
    )

    assert result.valid is True
    assert result.warnings == []


def test_deep_chain_warns() -> None:
    titles = [f"Step {index}" for index in range(7)]
    subtasks = [_subtask(titles[0])] + [
        _subtask(title, previous) for previous, title in zip(titles, titles[1:], strict=False)
    ]

    result = validate_dependencies(_plan(*subtasks))

    assert result.valid is True
    assert result.warnings == ["Deep dependency chain (7 levels); consider parallelizing"]


def test_single_subtask_is_valid_without_warnings() -> None:
    result = validate_dependencies(_plan(_subtask("Only")))

    assert result.valid is True
    assert result.warnings == []
