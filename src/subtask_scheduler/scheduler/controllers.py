"""Controllers for scheduler CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from subtask_scheduler.config import Settings
from subtask_scheduler.scheduler.collaborators import (
    JsonFilePlanner,
    KeywordAgentClassifier,
    Planner,
    parse_plan,
)
from subtask_scheduler.scheduler.engine import OrchestrationEngine
from subtask_scheduler.scheduler.errors import ExternalServiceError, NotFoundError, ValidationError
from subtask_scheduler.scheduler.events import EventBus, TaskFinished
from subtask_scheduler.scheduler.graph import validate_dependencies
from subtask_scheduler.scheduler.models import (
    QueueEntryView,
    QueueStatus,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskView,
)
from subtask_scheduler.scheduler.queue import ExecutionQueue
from subtask_scheduler.scheduler.reconciler import CompletionReconciler
from subtask_scheduler.scheduler.repository import SchedulerRepository
from subtask_scheduler.scheduler.worker import QueueWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentAddCommand:
    db_path: Path | None
    name: str
    role: str


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None
    role: str | None
    include_inactive: bool


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for creating a standalone task."""

    db_path: Path | None
    title: str
    description: str | None
    priority: str
    estimated_hours: float | None
    depends_on: tuple[str, ...]


@dataclass(slots=True)
class TaskRefCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class PlanValidateCommand:
    plan_path: Path


@dataclass(slots=True)
class OrchestrateRunCommand:
    db_path: Path | None
    task_id: str
    plan_path: Path


@dataclass(slots=True)
class OrchestrateMonitorCommand:
    db_path: Path | None
    orchestration_id: str


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueClearCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class QueueWorkCommand:
    """CLI input for draining the queue."""

    db_path: Path | None
    max_tasks: int | None
    agent_id: str | None


@dataclass(slots=True)
class SchedulerServices:
    """Explicitly wired scheduler components sharing one store and event bus."""

    settings: Settings
    repository: SchedulerRepository
    event_bus: EventBus
    queue: ExecutionQueue
    reconciler: CompletionReconciler

    def engine(self, planner: Planner) -> OrchestrationEngine:
        return OrchestrationEngine(
            repository=self.repository,
            queue=self.queue,
            event_bus=self.event_bus,
            planner=planner,
            classifier=KeywordAgentClassifier(),
            settings=self.settings.scheduler,
        )


class SchedulerCliController:
    """Coordinates agent, task, orchestration and queue CLI operations."""

    def add_agent(self, command: AgentAddCommand) -> list[str]:
        with _services(command.db_path) as services:
            agent = services.repository.register_agent(name=command.name, role=command.role)
        return [f"Agent registered: agent_id={agent.agent_id} name={agent.name} role={agent.role}"]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        with _services(command.db_path) as services:
            agents = services.repository.list_agents(
                role=command.role,
                active_only=not command.include_inactive,
            )
        if not agents:
            return ["No agents registered."]
        return [
            f"{agent.agent_id} {agent.name} role={agent.role} "
            f"{'active' if agent.is_active else 'inactive'}"
            for agent in agents
        ]

    def add_task(self, command: TaskAddCommand) -> list[str]:
        with _services(command.db_path) as services:
            task = services.repository.create_task(
                TaskCreate(
                    title=command.title,
                    description=command.description,
                    priority=TaskPriority.parse(command.priority),
                    estimated_hours=command.estimated_hours,
                ),
            )
            if command.depends_on:
                services.repository.add_dependencies(
                    task_id=task.task_id,
                    depends_on_ids=command.depends_on,
                )
        return [
            f"Task created: task_id={task.task_id} priority={task.priority.value} "
            f"dependencies={len(command.depends_on)}",
        ]

    def show_task(self, command: TaskRefCommand) -> list[str]:
        with _services(command.db_path) as services:
            snapshot = services.repository.get_task_with_dependents(command.task_id)
            if snapshot is None:
                raise NotFoundError(f"Task not found: {command.task_id}")
            entry = services.queue.get_entry(command.task_id)
            history = services.repository.list_status_changes(command.task_id)

        task = snapshot.task
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Agent: {task.agent_name or '-'}",
            f"Orchestration: {task.orchestration_id or '-'}",
            "Depends on: "
            + (
                ", ".join(f"{dep.task_id} ({dep.status.value})" for dep in task.dependencies)
                or "-"
            ),
            "Dependents: "
            + (", ".join(dependent.task_id for dependent in snapshot.dependents) or "-"),
            f"Queue: {_format_entry(entry) if entry else '-'}",
        ]
        for change in history:
            lines.append(
                f"  {change.created_at.isoformat()} "
                f"{change.from_status.value if change.from_status else '-'} -> "
                f"{change.to_status.value}"
                + (f" ({change.notes})" if change.notes else ""),
            )
        return lines

    def complete_task(self, command: TaskRefCommand) -> list[str]:
        """Mark a task DONE by hand and let the reconciler unlock its dependents."""

        with _services(command.db_path) as services:
            task = services.repository.update_task_status(
                task_id=command.task_id,
                status=TaskStatus.DONE,
                notes="Completed manually",
            )
            entry = services.queue.get_entry(task.task_id)
            if entry is not None and entry.status == QueueStatus.PROCESSING:
                services.queue.complete_entry(entry.entry_id)
            elif entry is not None and entry.status != QueueStatus.COMPLETED:
                services.queue.remove_from_queue(task.task_id)
            services.event_bus.emit(
                TaskFinished(status=QueueStatus.COMPLETED),
                task_id=task.task_id,
            )
            pending = services.queue.get_queue_status().pending
        return [
            f"Task {task.task_id} marked done.",
            f"Pending queue entries: {pending}",
        ]

    def validate_plan(self, command: PlanValidateCommand) -> list[str]:
        plan = parse_plan(_read_plan(command.plan_path))
        result = validate_dependencies(plan)
        lines = [
            f"Plan: {len(plan.phases)} phases, {len(plan.all_subtasks())} subtasks",
            f"Valid: {'yes' if result.valid else 'no'}",
        ]
        lines.extend(f"Error: {error}" for error in result.errors)
        lines.extend(f"Warning: {warning}" for warning in result.warnings)
        if result.graph is not None:
            for index, level in enumerate(result.graph.levels):
                lines.append(f"Level {index}: {', '.join(level)}")
        if not result.valid:
            raise ValidationError("\n".join(lines), errors=result.errors)
        return lines

    def orchestrate(self, command: OrchestrateRunCommand) -> list[str]:
        with _services(command.db_path) as services:
            engine = services.engine(JsonFilePlanner(command.plan_path))
            result = engine.orchestrate(command.task_id)
        lines = [
            f"Orchestration: {result.orchestration_id}",
            f"Subtasks created: {result.subtasks_created}",
            f"Subtasks queued: {result.subtasks_queued}",
        ]
        lines.extend(f"Warning: {warning}" for warning in result.warnings)
        return lines

    def monitor(self, command: OrchestrateMonitorCommand) -> list[str]:
        with _services(command.db_path) as services:
            report = services.engine(_NoPlanner()).monitor_execution(command.orchestration_id)
        lines = [
            f"Orchestration {report.orchestration_id}: {report.status.value}",
            f"Progress: {report.completed}/{report.total}",
            f"Unlocked: {report.unlocked}",
        ]
        if report.completed_now:
            lines.append("Orchestration completed.")
        if report.stalled:
            lines.append("Warning: orchestration appears stalled.")
        return lines

    def queue_status(self, db_path: Path | None) -> list[str]:
        with _services(db_path) as services:
            stats = services.queue.get_queue_status()
        return [
            f"Queue: total={stats.total} pending={stats.pending} processing={stats.processing} "
            f"completed={stats.completed} failed={stats.failed}",
        ]

    def list_queue(self, command: QueueListCommand) -> list[str]:
        with _services(command.db_path) as services:
            entries = services.queue.list_entries(
                status=_parse_queue_status(command.status),
                limit=command.limit,
            )
            titles = services.queue.queued_task_titles(entries)
        if not entries:
            return ["Queue is empty."]
        return [f"{_format_entry(entry)} {titles.get(entry.task_id, '')}" for entry in entries]

    def clear_queue(self, command: QueueClearCommand) -> list[str]:
        status = _parse_queue_status(command.status)
        with _services(command.db_path) as services:
            removed = services.queue.clear_queue(status)
        return [f"Removed {removed} queue entries."]

    def work(self, command: QueueWorkCommand) -> list[str]:
        with _services(command.db_path) as services:
            worker = QueueWorker(
                queue=services.queue,
                repository=services.repository,
                event_bus=services.event_bus,
                handler=_acknowledge,
                worker_id=services.settings.worker.worker_id,
                agent_id=command.agent_id or services.settings.worker.agent_id,
            )
            summary = worker.run_until_idle(
                max_tasks=command.max_tasks or services.settings.worker.max_tasks,
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} skipped={summary.skipped}",
        ]


class _NoPlanner:
    def plan(self, **_: object) -> dict[str, object]:
        raise ExternalServiceError("No planner configured", service="planner")


def _acknowledge(task: TaskView, entry: QueueEntryView) -> None:
    logger.info(
        "Acknowledged task %s (%r) for agent %s",
        task.task_id,
        task.title,
        entry.agent_id,
    )


def _read_plan(path: Path) -> object:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ValidationError(f"Cannot read plan file {path}: {error}") from error


def _parse_queue_status(value: str | None) -> QueueStatus | None:
    if value is None:
        return None
    return QueueStatus(value.strip().lower())


def _format_entry(entry: QueueEntryView) -> str:
    return (
        f"{entry.task_id} status={entry.status.value} priority={entry.priority} "
        f"attempts={entry.attempts}/{entry.max_attempts} agent={entry.agent_id}"
    )


@contextmanager
def _services(db_path: Path | None) -> Iterator[SchedulerServices]:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    repository = SchedulerRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    event_bus = EventBus(history_limit=settings.scheduler.event_history_limit)
    queue = ExecutionQueue(
        repository.engine,
        event_bus=event_bus,
        default_max_attempts=settings.scheduler.default_max_attempts,
    )
    reconciler = CompletionReconciler(repository=repository, queue=queue, event_bus=event_bus)
    reconciler.attach()
    try:
        yield SchedulerServices(
            settings=settings,
            repository=repository,
            event_bus=event_bus,
            queue=queue,
            reconciler=reconciler,
        )
    finally:
        reconciler.detach()
        repository.close()
