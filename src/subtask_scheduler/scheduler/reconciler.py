"""Event-driven unlocking of dependents when a subtask finishes."""

from __future__ import annotations

import logging

from subtask_scheduler.scheduler.events import EventBus, EventKind, SchedulerEvent, TaskFinished
from subtask_scheduler.scheduler.models import QueueStatus, TaskStatus
from subtask_scheduler.scheduler.progress import record_progress
from subtask_scheduler.scheduler.queue import ExecutionQueue
from subtask_scheduler.scheduler.repository import SchedulerRepository

logger = logging.getLogger(__name__)


class CompletionReconciler:
    """Listens for finished tasks, enqueues newly unblocked dependents, advances progress."""

    def __init__(
        self,
        *,
        repository: SchedulerRepository,
        queue: ExecutionQueue,
        event_bus: EventBus,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.event_bus = event_bus

    def attach(self) -> None:
        self.event_bus.subscribe(EventKind.TASK_FINISHED, self.handle_event)

    def detach(self) -> None:
        self.event_bus.unsubscribe(EventKind.TASK_FINISHED, self.handle_event)

    def handle_event(self, event: SchedulerEvent) -> None:
        payload = event.payload
        if not isinstance(payload, TaskFinished) or payload.status != QueueStatus.COMPLETED:
            return
        if event.task_id is None:
            logger.warning("Ignoring task_finished event without task id")
            return
        self.on_task_completed(event.task_id)

    def on_task_completed(self, task_id: str) -> list[str]:
        """Reconcile after ``task_id`` finished; returns ids of dependents enqueued now."""

        snapshot = self.repository.get_task_with_dependents(task_id)
        if snapshot is None:
            logger.warning("Finished task %s no longer exists", task_id)
            return []

        enqueued: list[str] = []
        for dependent in snapshot.dependents:
            if dependent.status != TaskStatus.TODO:
                continue
            if dependent.agent_id is None or dependent.orchestration_id is None:
                continue
            if not dependent.dependencies_done:
                continue
            result = self.queue.add_to_queue(
                dependent.task_id,
                dependent.agent_id,
                priority=dependent.priority.weight,
            )
            if result.created:
                enqueued.append(dependent.task_id)

        if enqueued:
            logger.info("Task %s finished; unlocked %s", task_id, ", ".join(enqueued))

        orchestration_id = snapshot.task.orchestration_id
        if orchestration_id is not None:
            record_progress(self.repository, self.event_bus, orchestration_id)
        return enqueued
