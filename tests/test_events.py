from __future__ import annotations

import logging

import allure
import pytest

from subtask_scheduler.scheduler.events import (
    EventBus,
    EventKind,
    ExecutionCompleted,
    QueueEntryAdded,
    SchedulerEvent,
    TaskFinished,
)
from subtask_scheduler.scheduler.models import QueueStatus

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Event Bus"),
]


def test_emit_dispatches_typed_payload_to_matching_subscribers() -> None:
    bus = EventBus()
    received: list[SchedulerEvent] = []
    bus.subscribe(EventKind.TASK_FINISHED, received.append)

    event = bus.emit(TaskFinished(status=QueueStatus.COMPLETED), task_id="t-1", agent_id="a-1")
    bus.emit(QueueEntryAdded(entry_id="e-1", priority=4), task_id="t-2")

    assert received == [event]
    assert event.kind == EventKind.TASK_FINISHED
    assert event.payload == TaskFinished(status=QueueStatus.COMPLETED)
    assert event.task_id == "t-1"
    assert event.agent_id == "a-1"


def test_subscribe_is_idempotent_and_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    received: list[SchedulerEvent] = []

    bus.subscribe(EventKind.EXECUTION_COMPLETED, received.append)
    bus.subscribe(EventKind.EXECUTION_COMPLETED, received.append)
    assert bus.listener_count(EventKind.EXECUTION_COMPLETED) == 1

    bus.emit(ExecutionCompleted(orchestration_id="o-1", total_subtasks=2))
    bus.unsubscribe(EventKind.EXECUTION_COMPLETED, received.append)
    bus.emit(ExecutionCompleted(orchestration_id="o-1", total_subtasks=2))

    assert len(received) == 1
    assert bus.listener_count(EventKind.EXECUTION_COMPLETED) == 0


def test_failing_subscriber_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    received: list[SchedulerEvent] = []

    def broken(_: SchedulerEvent) -> None:
        raise RuntimeError("boom")

    bus.subscribe(EventKind.TASK_FINISHED, broken)
    bus.subscribe(EventKind.TASK_FINISHED, received.append)

    with caplog.at_level(logging.ERROR, logger="subtask_scheduler.scheduler.events"):
        bus.emit(TaskFinished(status=QueueStatus.FAILED, error="x"), task_id="t-1")

    assert len(received) == 1
    assert "Event handler" in caplog.text
    assert "boom" in caplog.text


def test_history_is_bounded_and_filterable() -> None:
    bus = EventBus(history_limit=3)
    for index in range(4):
        bus.emit(QueueEntryAdded(entry_id=f"e-{index}", priority=index))
    bus.emit(ExecutionCompleted(orchestration_id="o-1", total_subtasks=1))

    history = bus.history()
    assert [event.kind for event in history] == [
        EventKind.QUEUE_ENTRY_ADDED,
        EventKind.QUEUE_ENTRY_ADDED,
        EventKind.EXECUTION_COMPLETED,
    ]
    added = bus.history(kind=EventKind.QUEUE_ENTRY_ADDED)
    assert [event.payload.entry_id for event in added] == ["e-2", "e-3"]
    assert bus.history(limit=1)[0].kind == EventKind.EXECUTION_COMPLETED
    assert bus.history(limit=0) == []
