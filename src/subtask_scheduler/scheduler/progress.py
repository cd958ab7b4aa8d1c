"""Orchestration progress and completion step shared by the engine tick and the reconciler."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from subtask_scheduler.scheduler.events import EventBus, ExecutionCompleted
from subtask_scheduler.scheduler.models import OrchestrationStatus
from subtask_scheduler.scheduler.repository import SchedulerRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProgressUpdate:
    status: OrchestrationStatus
    total: int
    completed: int
    completed_now: bool = False


def record_progress(
    repository: SchedulerRepository,
    event_bus: EventBus,
    orchestration_id: str,
) -> ProgressUpdate | None:
    """Persist completed/total counts and complete the orchestration when all are DONE.

    Only the caller whose conditional EXECUTING -> COMPLETED update succeeds emits the
    completion event and closes the parent task, so repeated or concurrent calls
    complete an orchestration exactly once. Returns None for an unknown orchestration.
    """

    orchestration = repository.get_orchestration(orchestration_id)
    if orchestration is None:
        logger.warning("Progress requested for unknown orchestration %s", orchestration_id)
        return None

    total, completed = repository.count_subtasks(orchestration_id)
    if orchestration.status.is_terminal:
        return ProgressUpdate(status=orchestration.status, total=total, completed=completed)

    if orchestration.status == OrchestrationStatus.EXECUTING and 0 < total <= completed:
        if not repository.complete_orchestration(
            orchestration_id=orchestration_id,
            total_subtasks=total,
        ):
            current = repository.require_orchestration(orchestration_id)
            return ProgressUpdate(status=current.status, total=total, completed=completed)

        logger.info(
            "Orchestration %s completed (%d subtasks)",
            orchestration_id,
            total,
        )
        event_bus.emit(
            ExecutionCompleted(orchestration_id=orchestration_id, total_subtasks=total),
            task_id=orchestration.parent_task_id,
        )
        if repository.mark_task_done(
            task_id=orchestration.parent_task_id,
            notes=f"All {total} subtasks completed",
        ):
            logger.info("Parent task %s marked done", orchestration.parent_task_id)
        return ProgressUpdate(
            status=OrchestrationStatus.COMPLETED,
            total=total,
            completed=completed,
            completed_now=True,
        )

    phase = orchestration.current_phase
    if orchestration.status == OrchestrationStatus.EXECUTING:
        phase = f"Executing: {completed}/{total} subtasks completed"
    repository.update_orchestration(
        orchestration_id,
        total_subtasks=total,
        completed_subtasks=completed,
        current_phase=phase,
    )
    return ProgressUpdate(status=orchestration.status, total=total, completed=completed)
