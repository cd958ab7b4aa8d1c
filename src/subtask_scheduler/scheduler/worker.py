"""Queue drain loop; the handler performs the work a subtask stands for."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from subtask_scheduler.scheduler.events import EventBus, TaskFinished
from subtask_scheduler.scheduler.models import QueueEntryView, QueueStatus, TaskStatus, TaskView
from subtask_scheduler.scheduler.queue import ExecutionQueue
from subtask_scheduler.scheduler.repository import SchedulerRepository

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TaskView, QueueEntryView], None]


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    idle_polls: int = 0


class QueueWorker:
    """Claims queue entries one at a time and reports each outcome as ``task_finished``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: ExecutionQueue,
        repository: SchedulerRepository,
        event_bus: EventBus,
        handler: TaskHandler,
        worker_id: str = "worker-1",
        agent_id: str | None = None,
    ) -> None:
        self.queue = queue
        self.repository = repository
        self.event_bus = event_bus
        self.handler = handler
        self.worker_id = worker_id
        self.agent_id = agent_id

    def run_once(self) -> WorkerRunSummary:
        """Process at most one queue entry."""

        summary = WorkerRunSummary()
        entry = self.queue.claim_next(agent_id=self.agent_id)
        if entry is None:
            summary.idle_polls = 1
            return summary

        current = self.repository.get_task(entry.task_id)
        if current is None or current.status != TaskStatus.TODO:
            self.queue.complete_entry(entry.entry_id)
            summary.skipped = 1
            logger.info(
                "Skipping task %s: status is %s",
                entry.task_id,
                current.status.value if current else "missing",
            )
            return summary

        summary.processed = 1
        task = self.repository.update_task_status(
            task_id=entry.task_id,
            status=TaskStatus.IN_PROGRESS,
            notes=f"Claimed by {self.worker_id} (attempt {entry.attempts})",
        )
        try:
            self.handler(task, entry)
        except Exception as error:
            self._handle_failure(entry=entry, error=error, summary=summary)
            return summary

        self.queue.complete_entry(entry.entry_id)
        self.repository.update_task_status(
            task_id=entry.task_id,
            status=TaskStatus.DONE,
            notes=f"Completed by {self.worker_id}",
        )
        summary.succeeded = 1
        logger.info("Task %s completed by %s", entry.task_id, self.worker_id)
        self.event_bus.emit(
            TaskFinished(status=QueueStatus.COMPLETED),
            task_id=entry.task_id,
            agent_id=entry.agent_id,
        )
        return summary

    def run_until_idle(self, *, max_tasks: int | None = None) -> WorkerRunSummary:
        """Drain the queue until it is empty or ``max_tasks`` entries were processed."""

        aggregate = WorkerRunSummary()
        while max_tasks is None or aggregate.processed < max_tasks:
            summary = self.run_once()
            aggregate.processed += summary.processed
            aggregate.succeeded += summary.succeeded
            aggregate.failed += summary.failed
            aggregate.retried += summary.retried
            aggregate.skipped += summary.skipped
            aggregate.idle_polls += summary.idle_polls
            if summary.processed == 0 and summary.skipped == 0:
                break
        return aggregate

    def _handle_failure(
        self,
        *,
        entry: QueueEntryView,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        message = str(error) or error.__class__.__name__
        logger.exception("Handler failed for task %s (attempt %d)", entry.task_id, entry.attempts)
        updated = self.queue.fail_entry(entry.entry_id, error=message)
        if updated is not None and updated.status == QueueStatus.PENDING:
            self.repository.update_task_status(
                task_id=entry.task_id,
                status=TaskStatus.TODO,
                notes=f"Attempt {entry.attempts} failed, retrying: {message}",
            )
            summary.retried = 1
            return

        self.repository.update_task_status(
            task_id=entry.task_id,
            status=TaskStatus.BLOCKED,
            notes=f"Failed after {entry.attempts} attempts: {message}",
        )
        summary.failed = 1
        self.event_bus.emit(
            TaskFinished(status=QueueStatus.FAILED, error=message),
            task_id=entry.task_id,
            agent_id=entry.agent_id,
        )
