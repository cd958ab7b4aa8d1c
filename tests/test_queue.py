from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest

from subtask_scheduler.scheduler.errors import NotFoundError
from subtask_scheduler.scheduler.events import EventBus, EventKind
from subtask_scheduler.scheduler.models import EnqueueResult, QueueStatus, TaskCreate
from subtask_scheduler.scheduler.queue import ExecutionQueue
from subtask_scheduler.scheduler.repository import SchedulerRepository
from subtask_scheduler.storage.common import utc_now

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Execution Queue"),
]


def _task_id(repository: SchedulerRepository, title: str = "Task") -> str:
    return repository.create_task(TaskCreate(title=title)).task_id


def test_add_to_queue_twice_keeps_one_entry(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
    event_bus: EventBus,
) -> None:
    task_id = _task_id(repository)

    first = execution_queue.add_to_queue(task_id, "agent-1", priority=7)
    second = execution_queue.add_to_queue(task_id, "agent-2", priority=1)

    assert first.created is True
    assert second.created is False
    assert second.entry.entry_id == first.entry.entry_id
    assert second.entry.agent_id == "agent-1"
    assert execution_queue.get_queue_status().total == 1
    assert len(event_bus.history(kind=EventKind.QUEUE_ENTRY_ADDED)) == 1


def test_concurrent_add_to_queue_creates_exactly_one_entry(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
) -> None:
    task_id = _task_id(repository)
    start = threading.Barrier(8)
    results: list[EnqueueResult] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def enqueue() -> None:
        queue = ExecutionQueue(repository.engine)
        start.wait(timeout=5)
        try:
            result = queue.add_to_queue(task_id, "agent-1", priority=4)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)
            return
        with lock:
            results.append(result)

    threads = [threading.Thread(target=enqueue) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(results) == 8
    assert sum(result.created for result in results) == 1
    assert len({result.entry.entry_id for result in results}) == 1
    assert execution_queue.get_queue_status().pending == 1


def test_unknown_task_cannot_be_queued(execution_queue: ExecutionQueue) -> None:
    with pytest.raises(NotFoundError):
        execution_queue.add_to_queue("ghost", "agent-1")


def test_drain_order_is_priority_then_creation(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
) -> None:
    low = _task_id(repository, "low")
    urgent_first = _task_id(repository, "urgent first")
    medium = _task_id(repository, "medium")
    urgent_second = _task_id(repository, "urgent second")
    execution_queue.add_to_queue(low, "a", priority=1)
    execution_queue.add_to_queue(urgent_first, "a", priority=10)
    execution_queue.add_to_queue(medium, "a", priority=4)
    execution_queue.add_to_queue(urgent_second, "a", priority=10)

    expected = [urgent_first, urgent_second, medium, low]
    assert [entry.task_id for entry in execution_queue.list_entries()] == expected

    claimed = []
    while (entry := execution_queue.claim_next()) is not None:
        claimed.append(entry.task_id)
        assert entry.status == QueueStatus.PROCESSING
        assert entry.attempts == 1
    assert claimed == expected


def test_claim_respects_schedule_and_agent(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
) -> None:
    later = _task_id(repository, "later")
    mine = _task_id(repository, "mine")
    execution_queue.add_to_queue(
        later,
        "agent-1",
        priority=10,
        scheduled_for=utc_now() + timedelta(hours=1),
    )
    execution_queue.add_to_queue(mine, "agent-2", priority=1)

    assert execution_queue.claim_next(agent_id="agent-1") is None
    claimed = execution_queue.claim_next()
    assert claimed is not None
    assert claimed.task_id == mine

    due = execution_queue.claim_next(now=utc_now() + timedelta(hours=2))
    assert due is not None
    assert due.task_id == later


def test_failed_entries_retry_until_attempts_are_exhausted(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
) -> None:
    task_id = _task_id(repository)
    execution_queue.add_to_queue(task_id, "agent-1", max_attempts=2)

    first = execution_queue.claim_next()
    assert first is not None
    retried = execution_queue.fail_entry(first.entry_id, error="flaky")
    assert retried is not None
    assert retried.status == QueueStatus.PENDING
    assert retried.last_error == "flaky"

    second = execution_queue.claim_next()
    assert second is not None
    assert second.attempts == 2
    failed = execution_queue.fail_entry(second.entry_id, error="still broken")
    assert failed is not None
    assert failed.status == QueueStatus.FAILED
    assert execution_queue.fail_entry(second.entry_id, error="again") is None
    assert execution_queue.claim_next() is None


def test_complete_entry_requires_processing(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
) -> None:
    task_id = _task_id(repository)
    entry = execution_queue.add_to_queue(task_id, "agent-1").entry

    assert execution_queue.complete_entry(entry.entry_id) is False
    execution_queue.claim_next()
    assert execution_queue.complete_entry(entry.entry_id) is True
    completed = execution_queue.get_entry(task_id)
    assert completed is not None
    assert completed.status == QueueStatus.COMPLETED


def test_status_counts_clear_and_remove(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
) -> None:
    ids = [_task_id(repository, f"task {index}") for index in range(4)]
    for task_id in ids:
        execution_queue.add_to_queue(task_id, "agent-1")
    claimed = execution_queue.claim_next()
    assert claimed is not None
    execution_queue.complete_entry(claimed.entry_id)
    execution_queue.claim_next()

    stats = execution_queue.get_queue_status()
    assert (stats.pending, stats.processing, stats.completed, stats.failed, stats.total) == (
        2,
        1,
        1,
        0,
        4,
    )
    assert execution_queue.count_active(ids) == 3
    assert execution_queue.count_active([]) == 0

    assert execution_queue.clear_queue(QueueStatus.COMPLETED) == 1
    assert execution_queue.remove_from_queue(ids[-1]) == 1
    assert execution_queue.get_entry(ids[-1]) is None
    assert execution_queue.clear_queue() == 2
    assert execution_queue.get_queue_status().total == 0


def test_queued_task_titles(
    repository: SchedulerRepository,
    execution_queue: ExecutionQueue,
) -> None:
    task_id = _task_id(repository, "Render report")
    execution_queue.add_to_queue(task_id, "agent-1")

    titles = execution_queue.queued_task_titles(execution_queue.list_entries())

    assert titles == {task_id: "Render report"}
