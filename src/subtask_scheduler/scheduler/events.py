"""Typed in-process event bus for orchestration lifecycle notifications."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar

from subtask_scheduler.scheduler.models import QueueStatus
from subtask_scheduler.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100


class EventKind(str, Enum):
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    QUEUE_ENTRY_ADDED = "queue_entry_added"
    TASK_FINISHED = "task_finished"


@dataclass(slots=True, frozen=True)
class ExecutionStarted:
    kind: ClassVar[EventKind] = EventKind.EXECUTION_STARTED

    orchestration_id: str
    total_subtasks: int
    queued_subtasks: int


@dataclass(slots=True, frozen=True)
class ExecutionCompleted:
    kind: ClassVar[EventKind] = EventKind.EXECUTION_COMPLETED

    orchestration_id: str
    total_subtasks: int


@dataclass(slots=True, frozen=True)
class ExecutionFailed:
    kind: ClassVar[EventKind] = EventKind.EXECUTION_FAILED

    orchestration_id: str
    error: str


@dataclass(slots=True, frozen=True)
class QueueEntryAdded:
    kind: ClassVar[EventKind] = EventKind.QUEUE_ENTRY_ADDED

    entry_id: str
    priority: int


@dataclass(slots=True, frozen=True)
class TaskFinished:
    """A queue entry finished processing; ``status`` is COMPLETED or FAILED."""

    kind: ClassVar[EventKind] = EventKind.TASK_FINISHED

    status: QueueStatus
    error: str | None = None


EventPayload = (
    ExecutionStarted | ExecutionCompleted | ExecutionFailed | QueueEntryAdded | TaskFinished
)


@dataclass(slots=True, frozen=True)
class SchedulerEvent:
    """Envelope delivered to subscribers."""

    kind: EventKind
    payload: EventPayload
    task_id: str | None = None
    agent_id: str | None = None
    emitted_at: datetime = field(default_factory=utc_now)


EventHandler = Callable[[SchedulerEvent], None]


class EventBus:
    """Synchronous observer channel keyed by ``EventKind``.

    Subscribers run in registration order on the emitting thread. A failing
    subscriber is logged and does not prevent delivery to the others.
    """

    def __init__(self, *, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self._handlers: dict[EventKind, list[EventHandler]] = {kind: [] for kind in EventKind}
        self._history: deque[SchedulerEvent] = deque(maxlen=max(1, history_limit))

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        if handler not in self._handlers[kind]:
            self._handlers[kind].append(handler)

    def unsubscribe(self, kind: EventKind, handler: EventHandler) -> None:
        if handler in self._handlers[kind]:
            self._handlers[kind].remove(handler)

    def emit(
        self,
        payload: EventPayload,
        *,
        task_id: str | None = None,
        agent_id: str | None = None,
    ) -> SchedulerEvent:
        event = SchedulerEvent(
            kind=payload.kind,
            payload=payload,
            task_id=task_id,
            agent_id=agent_id,
        )
        self._history.append(event)
        for handler in list(self._handlers[event.kind]):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed for %s (task_id=%s)",
                    handler,
                    event.kind.value,
                    task_id,
                )
        return event

    def history(
        self,
        *,
        kind: EventKind | None = None,
        limit: int | None = None,
    ) -> list[SchedulerEvent]:
        """Most recent events, oldest first."""

        events = [event for event in self._history if kind is None or event.kind == kind]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def listener_count(self, kind: EventKind) -> int:
        return len(self._handlers[kind])
