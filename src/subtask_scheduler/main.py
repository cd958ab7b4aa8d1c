"""CLI entrypoint for subtask-scheduler."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from subtask_scheduler import __version__
from subtask_scheduler.config import Settings
from subtask_scheduler.scheduler.controllers import (
    AgentAddCommand,
    AgentListCommand,
    OrchestrateMonitorCommand,
    OrchestrateRunCommand,
    PlanValidateCommand,
    QueueClearCommand,
    QueueListCommand,
    QueueWorkCommand,
    SchedulerCliController,
    TaskAddCommand,
    TaskRefCommand,
)
from subtask_scheduler.scheduler.errors import SchedulerError
from subtask_scheduler.scheduler.models import QueueStatus, TaskPriority

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SchedulerCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_QUEUE_STATUSES = [status.value for status in QueueStatus]


@click.group()
@click.version_option(version=__version__, prog_name="subtask-scheduler")
def subtask_scheduler() -> None:
    """Dependency-aware subtask orchestration CLI."""

    _run(_configure_logging)


@subtask_scheduler.group()
def agents() -> None:
    """Agent directory commands."""


@agents.command("add")
@_DB_PATH_OPTION
@click.argument("name")
@click.option("--role", required=True, help="Agent role, for example architect or reviewer.")
def agents_add(db_path: Path | None, name: str, role: str) -> None:
    """Register an active agent."""

    _emit(lambda: CONTROLLER.add_agent(AgentAddCommand(db_path=db_path, name=name, role=role)))


@agents.command("list")
@_DB_PATH_OPTION
@click.option("--role", default=None, help="Only agents with this role.")
@click.option(
    "--all/--active-only",
    "include_inactive",
    default=False,
    show_default=True,
    help="Include inactive agents.",
)
def agents_list(db_path: Path | None, role: str | None, include_inactive: bool) -> None:
    """List registered agents."""

    _emit(
        lambda: CONTROLLER.list_agents(
            AgentListCommand(db_path=db_path, role=role, include_inactive=include_inactive),
        ),
    )


@subtask_scheduler.group()
def tasks() -> None:
    """Task commands."""


@tasks.command("add")
@_DB_PATH_OPTION
@click.argument("title")
@click.option("--description", default=None, help="Task description for the planner.")
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in TaskPriority], case_sensitive=False),
    default=TaskPriority.MEDIUM.value,
    show_default=True,
)
@click.option("--estimated-hours", type=click.FloatRange(min=0), default=None)
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Id of a task this one depends on. Can be repeated.",
)
def tasks_add(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str | None,
    priority: str,
    estimated_hours: float | None,
    depends_on: tuple[str, ...],
) -> None:
    """Create a task."""

    _emit(
        lambda: CONTROLLER.add_task(
            TaskAddCommand(
                db_path=db_path,
                title=title,
                description=description,
                priority=priority,
                estimated_hours=estimated_hours,
                depends_on=depends_on,
            ),
        ),
    )


@tasks.command("show")
@_DB_PATH_OPTION
@click.argument("task_id")
def tasks_show(db_path: Path | None, task_id: str) -> None:
    """Show a task with its dependencies, dependents, queue entry and history."""

    _emit(lambda: CONTROLLER.show_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@tasks.command("done")
@_DB_PATH_OPTION
@click.argument("task_id")
def tasks_done(db_path: Path | None, task_id: str) -> None:
    """Mark a task done and unlock its dependents."""

    _emit(lambda: CONTROLLER.complete_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@subtask_scheduler.group()
def plan() -> None:
    """Plan document commands."""


@plan.command("validate")
@click.argument("plan_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def plan_validate(plan_path: Path) -> None:
    """Check a plan JSON file for duplicate, missing, self and circular dependencies."""

    _emit(lambda: CONTROLLER.validate_plan(PlanValidateCommand(plan_path=plan_path)))


@subtask_scheduler.group()
def orchestrate() -> None:
    """Orchestration commands."""


@orchestrate.command("run")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.option(
    "--plan",
    "plan_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Plan JSON served to the engine as the planner response.",
)
def orchestrate_run(db_path: Path | None, task_id: str, plan_path: Path) -> None:
    """Decompose a task into subtasks and enqueue the ready ones."""

    _emit(
        lambda: CONTROLLER.orchestrate(
            OrchestrateRunCommand(db_path=db_path, task_id=task_id, plan_path=plan_path),
        ),
    )


@orchestrate.command("monitor")
@_DB_PATH_OPTION
@click.argument("orchestration_id")
def orchestrate_monitor(db_path: Path | None, orchestration_id: str) -> None:
    """Run one reconciliation tick for an orchestration."""

    _emit(
        lambda: CONTROLLER.monitor(
            OrchestrateMonitorCommand(db_path=db_path, orchestration_id=orchestration_id),
        ),
    )


@subtask_scheduler.group()
def queue() -> None:
    """Execution queue commands."""


@queue.command("status")
@_DB_PATH_OPTION
def queue_status(db_path: Path | None) -> None:
    """Show queue counts by status."""

    _emit(lambda: CONTROLLER.queue_status(db_path))


@queue.command("list")
@_DB_PATH_OPTION
@click.option("--status", type=click.Choice(_QUEUE_STATUSES), default=None)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def queue_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List queue entries in drain order."""

    _emit(
        lambda: CONTROLLER.list_queue(
            QueueListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@queue.command("clear")
@_DB_PATH_OPTION
@click.option("--status", type=click.Choice(_QUEUE_STATUSES), default=None)
def queue_clear(db_path: Path | None, status: str | None) -> None:
    """Remove queue entries, optionally only those with one status."""

    _emit(lambda: CONTROLLER.clear_queue(QueueClearCommand(db_path=db_path, status=status)))


@queue.command("work")
@_DB_PATH_OPTION
@click.option("--max-tasks", type=click.IntRange(min=1), default=None)
@click.option("--agent-id", default=None, help="Only claim entries assigned to this agent.")
def queue_work(db_path: Path | None, max_tasks: int | None, agent_id: str | None) -> None:
    """Drain the queue, acknowledging each task as done."""

    _emit(
        lambda: CONTROLLER.work(
            QueueWorkCommand(db_path=db_path, max_tasks=max_tasks, agent_id=agent_id),
        ),
    )


def _configure_logging() -> list[str]:
    settings = Settings.from_env()
    settings.validate()
    settings.configure_logging()
    return []


def _run(produce: Callable[[], list[str]]) -> list[str]:
    try:
        return produce()
    except (SchedulerError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit(produce: Callable[[], list[str]]) -> None:
    _emit_lines(_run(produce))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    subtask_scheduler()
