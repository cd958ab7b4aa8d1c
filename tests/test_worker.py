from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest

from subtask_scheduler.scheduler.controllers import SchedulerCliController, TaskRefCommand
from subtask_scheduler.scheduler.events import EventBus, EventKind, TaskFinished
from subtask_scheduler.scheduler.models import (
    QueueEntryView,
    QueueStatus,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from subtask_scheduler.scheduler.queue import ExecutionQueue
from subtask_scheduler.scheduler.repository import SchedulerRepository
from subtask_scheduler.scheduler.worker import QueueWorker, TaskHandler

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Queue Worker"),
]


def _worker(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
    event_bus: EventBus,
    handler: TaskHandler,
    **kwargs: str,
) -> QueueWorker:
    return QueueWorker(
        queue=execution_queue,
        repository=repository,
        event_bus=event_bus,
        handler=handler,
        **kwargs,
    )


def _queued_task(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
    title: str,
    *,
    agent_id: str = "agent-1",
    max_attempts: int | None = None,
) -> str:
    task_id = repository.create_task(TaskCreate(title=title)).task_id
    execution_queue.add_to_queue(task_id, agent_id, max_attempts=max_attempts)
    return task_id


def test_successful_task_is_done_and_announced(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
    event_bus: EventBus,
) -> None:
    task_id = _queued_task(repository, execution_queue, "Render")
    seen: list[tuple[TaskStatus, int]] = []

    def handler(task: TaskView, entry: QueueEntryView) -> None:
        seen.append((task.status, entry.attempts))

    summary = _worker(repository, execution_queue, event_bus, handler, worker_id="w-7").run_once()

    assert (summary.processed, summary.succeeded, summary.idle_polls) == (1, 1, 0)
    assert seen == [(TaskStatus.IN_PROGRESS, 1)]
    assert repository.require_task(task_id).status == TaskStatus.DONE
    entry = execution_queue.get_entry(task_id)
    assert entry is not None
    assert entry.status == QueueStatus.COMPLETED
    notes = [change.notes for change in repository.list_status_changes(task_id)]
    assert notes == ["Claimed by w-7 (attempt 1)", "Completed by w-7"]

    (event,) = event_bus.history(kind=EventKind.TASK_FINISHED)
    assert event.payload == TaskFinished(status=QueueStatus.COMPLETED)
    assert event.task_id == task_id
    assert event.agent_id == "agent-1"


def test_failing_task_is_retried_then_blocked(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
    event_bus: EventBus,
    caplog: pytest.LogCaptureFixture,
) -> None:
    task_id = _queued_task(repository, execution_queue, "Flaky", max_attempts=2)

    def handler(task: TaskView, entry: QueueEntryView) -> None:
        raise RuntimeError(f"attempt {entry.attempts} broke")

    worker = _worker(repository, execution_queue, event_bus, handler)
    with caplog.at_level(logging.ERROR, logger="subtask_scheduler.scheduler.worker"):
        first = worker.run_once()
        assert first.retried == 1
        assert repository.require_task(task_id).status == TaskStatus.TODO
        assert event_bus.history(kind=EventKind.TASK_FINISHED) == []

        second = worker.run_once()

    assert second.failed == 1
    assert "Handler failed for task" in caplog.text
    assert repository.require_task(task_id).status == TaskStatus.BLOCKED
    entry = execution_queue.get_entry(task_id)
    assert entry is not None
    assert entry.status == QueueStatus.FAILED
    assert entry.last_error == "attempt 2 broke"
    (event,) = event_bus.history(kind=EventKind.TASK_FINISHED)
    assert event.payload == TaskFinished(status=QueueStatus.FAILED, error="attempt 2 broke")


def test_run_until_idle_honours_max_tasks_and_agent(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
    event_bus: EventBus,
) -> None:
    mine = [
        _queued_task(repository, execution_queue, f"mine {index}", agent_id="agent-1")
        for index in range(3)
    ]
    other = _queued_task(repository, execution_queue, "other", agent_id="agent-2")
    handled: list[str] = []

    def handler(task: TaskView, _: QueueEntryView) -> None:
        handled.append(task.task_id)

    worker = _worker(repository, execution_queue, event_bus, handler, agent_id="agent-1")

    limited = worker.run_until_idle(max_tasks=2)
    assert (limited.processed, limited.idle_polls) == (2, 0)
    assert handled == mine[:2]

    rest = worker.run_until_idle()
    assert (rest.processed, rest.succeeded, rest.idle_polls) == (1, 1, 1)
    assert handled == mine
    pending = execution_queue.get_entry(other)
    assert pending is not None
    assert pending.status == QueueStatus.PENDING


def test_empty_queue_is_an_idle_poll(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
    event_bus: EventBus,
) -> None:
    summary = _worker(repository, execution_queue, event_bus, lambda task, entry: None).run_once()

    assert (summary.processed, summary.idle_polls) == (0, 1)


def test_entry_of_finished_task_is_closed_without_running(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
    event_bus: EventBus,
) -> None:
    task_id = _queued_task(repository, execution_queue, "Already done")
    repository.update_task_status(task_id=task_id, status=TaskStatus.DONE)
    handled: list[str] = []

    def handler(task: TaskView, _: QueueEntryView) -> None:
        handled.append(task.task_id)

    summary = _worker(repository, execution_queue, event_bus, handler).run_until_idle()

    assert (summary.processed, summary.skipped, summary.idle_polls) == (0, 1, 1)
    assert handled == []
    entry = execution_queue.get_entry(task_id)
    assert entry is not None
    assert entry.status == QueueStatus.COMPLETED
    statuses = [
        (change.from_status, change.to_status)
        for change in repository.list_status_changes(task_id)
    ]
    assert statuses == [(TaskStatus.TODO, TaskStatus.DONE)]
    assert event_bus.history(kind=EventKind.TASK_FINISHED) == []


def test_manual_completion_removes_pending_entry(
    db_path: Path,
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
    event_bus: EventBus,
) -> None:
    task_id = _queued_task(repository, execution_queue, "Done by hand")
    handled: list[str] = []

    lines = SchedulerCliController().complete_task(TaskRefCommand(db_path=db_path, task_id=task_id))

    assert lines[-1] == "Pending queue entries: 0"
    assert execution_queue.get_entry(task_id) is None
    summary = _worker(
        repository,
        execution_queue,
        event_bus,
        lambda task, _: handled.append(task.task_id),
    ).run_until_idle()
    assert (summary.processed, summary.skipped) == (0, 0)
    assert handled == []
    assert len(repository.list_status_changes(task_id)) == 1
