"""Persistent store for tasks, dependency edges, agents, orchestrations and audit log."""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, literal_column
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from subtask_scheduler.scheduler.errors import ConflictError, NotFoundError, ValidationError
from subtask_scheduler.scheduler.models import (
    AgentView,
    DependencyRef,
    OrchestrationStatus,
    OrchestrationView,
    StatusChangeView,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskView,
    TaskWithDependents,
)
from subtask_scheduler.storage.alembic_runner import upgrade_head
from subtask_scheduler.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from subtask_scheduler.storage.sqlmodel_models import (
    Agent,
    Orchestration,
    StatusChange,
    Task,
    TaskDependency,
)

_TERMINAL_ORCHESTRATION_STATUSES = (
    OrchestrationStatus.COMPLETED.value,
    OrchestrationStatus.FAILED.value,
)


class SchedulerRepository:
    """Scheduler persistence facade backed by SQLModel + SQLite.

    The store is the only source of truth for task status: every read goes to the
    database, nothing is cached between calls.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # Agents

    def register_agent(
        self,
        *,
        name: str,
        role: str,
        is_active: bool = True,
        agent_id: str | None = None,
    ) -> AgentView:
        with Session(self.engine) as session:
            row = Agent(
                agent_id=agent_id or str(uuid4()),
                name=name,
                role=role.strip().lower(),
                is_active=is_active,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(f"Agent already exists: {row.agent_id}") from error
            session.refresh(row)
            return _to_agent_view(row)

    def set_agent_active(self, *, agent_id: str, is_active: bool) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Agent)
                .where(col(Agent.agent_id) == agent_id)
                .values(is_active=is_active),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"Agent not found: {agent_id}")
            session.commit()

    def list_agents(self, *, role: str | None = None, active_only: bool = False) -> list[AgentView]:
        with Session(self.engine) as session:
            statement = select(Agent).order_by(col(Agent.created_at).asc(), col(Agent.name).asc())
            if role is not None:
                statement = statement.where(Agent.role == role.strip().lower())
            if active_only:
                statement = statement.where(Agent.is_active == True)  # noqa: E712
            rows = session.exec(statement).all()
        return [_to_agent_view(row) for row in rows]

    def find_active_agent_by_role(self, role: str) -> AgentView | None:
        """Oldest active agent registered for ``role``."""

        agents = self.list_agents(role=role, active_only=True)
        return agents[0] if agents else None

    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.get(Agent, agent_id)
            return _to_agent_view(row) if row is not None else None

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Task(
                task_id=payload.task_id or str(uuid4()),
                title=payload.title,
                description=payload.description,
                priority=payload.priority.value,
                status=payload.status.value,
                estimated_hours=payload.estimated_hours,
                parent_id=payload.parent_id,
                orchestration_id=payload.orchestration_id,
                agent_id=payload.agent_id,
                agent_name=payload.agent_name,
                auto_created=payload.auto_created,
                created_at=now,
                updated_at=now,
                completed_at=now if payload.status == TaskStatus.DONE else None,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(
                    f"Cannot create task {payload.title!r}: {error.orig}",
                ) from error
            session.refresh(row)
            return _to_task_view(row, dependencies=[])

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return None
            dependencies = _load_dependencies(session, [task_id])
            return _to_task_view(row, dependencies=dependencies.get(task_id, []))

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def get_tasks(self, task_ids: Iterable[str]) -> list[TaskView]:
        """Tasks with their dependency statuses, in creation order."""

        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(col(Task.task_id).in_(ids))
                .order_by(col(Task.created_at).asc(), literal_column("tasks.rowid").asc()),
            ).all()
            return _with_dependencies(session, rows)

    def list_subtasks(
        self,
        orchestration_id: str,
        *,
        status: TaskStatus | None = None,
    ) -> list[TaskView]:
        """Subtasks of an orchestration with their dependency statuses, in creation order."""

        with Session(self.engine) as session:
            statement = (
                select(Task)
                .where(Task.orchestration_id == orchestration_id)
                .order_by(col(Task.created_at).asc(), literal_column("tasks.rowid").asc())
            )
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
            return _with_dependencies(session, rows)

    def count_subtasks(self, orchestration_id: str) -> tuple[int, int]:
        """Return ``(total, done)`` for an orchestration's subtasks."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.status, func.count())
                .where(Task.orchestration_id == orchestration_id)
                .group_by(Task.status),
            ).all()
        total = sum(count for _, count in rows)
        done = sum(count for status, count in rows if status == TaskStatus.DONE.value)
        return total, done

    def add_dependencies(self, *, task_id: str, depends_on_ids: Iterable[str]) -> int:
        """Persist edges ``task_id -> depends_on_id``; existing edges are kept as-is."""

        targets = list(dict.fromkeys(depends_on_ids))
        if task_id in targets:
            raise ValidationError(f"Task {task_id} cannot depend on itself")
        if not targets:
            return 0

        with Session(self.engine) as session:
            known = set(
                session.exec(
                    select(Task.task_id).where(col(Task.task_id).in_([task_id, *targets])),
                ).all(),
            )
            missing = [value for value in [task_id, *targets] if value not in known]
            if missing:
                raise NotFoundError(f"Task not found: {', '.join(missing)}")

            existing = set(
                session.exec(
                    select(TaskDependency.depends_on_id).where(TaskDependency.task_id == task_id),
                ).all(),
            )
            added = 0
            for depends_on_id in targets:
                if depends_on_id in existing:
                    continue
                session.add(TaskDependency(task_id=task_id, depends_on_id=depends_on_id))
                added += 1
            session.commit()
            return added

    def get_task_with_dependents(self, task_id: str) -> TaskWithDependents | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return None
            dependent_ids = session.exec(
                select(TaskDependency.task_id)
                .where(TaskDependency.depends_on_id == task_id)
                .order_by(literal_column("task_dependencies.rowid").asc()),
            ).all()
            dependent_rows = session.exec(
                select(Task).where(col(Task.task_id).in_(list(dependent_ids))),
            ).all()
            by_id = {dependent.task_id: dependent for dependent in dependent_rows}
            ordered = [by_id[value] for value in dependent_ids if value in by_id]
            task_dependencies = _load_dependencies(session, [task_id])
            return TaskWithDependents(
                task=_to_task_view(row, dependencies=task_dependencies.get(task_id, [])),
                dependents=_with_dependencies(session, ordered),
            )

    def update_task_status(
        self,
        *,
        task_id: str,
        status: TaskStatus,
        notes: str | None = None,
    ) -> TaskView:
        """Set a task's status; a real transition is appended to the audit log."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            previous = TaskStatus(row.status)
            if previous != status:
                row.status = status.value
                row.updated_at = now
                row.completed_at = now if status == TaskStatus.DONE else None
                session.add(row)
                _add_status_change(
                    session,
                    task_id=task_id,
                    from_status=previous,
                    to_status=status,
                    notes=notes,
                )
                session.commit()
                session.refresh(row)
            dependencies = _load_dependencies(session, [task_id])
            return _to_task_view(row, dependencies=dependencies.get(task_id, []))

    def mark_task_done(self, *, task_id: str, notes: str) -> bool:
        """Move a task to DONE unless it already is; True only for the call that did it."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            previous = TaskStatus(row.status)
            if previous == TaskStatus.DONE:
                return False
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == previous.value,
                )
                .values(
                    status=TaskStatus.DONE.value,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            _add_status_change(
                session,
                task_id=task_id,
                from_status=previous,
                to_status=TaskStatus.DONE,
                notes=notes,
            )
            session.commit()
            return True

    def assign_agent(self, *, task_id: str, agent: AgentView) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id)
                .values(
                    agent_id=agent.agent_id,
                    agent_name=agent.name,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"Task not found: {task_id}")
            session.commit()

    def delete_subtasks(self, orchestration_id: str) -> int:
        """Drop subtasks (edges and queue entries cascade) of an orchestration."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(Task).where(
                    col(Task.orchestration_id) == orchestration_id,
                    col(Task.auto_created) == True,  # noqa: E712
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def list_status_changes(self, task_id: str) -> list[StatusChangeView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(StatusChange)
                .where(StatusChange.task_id == task_id)
                .order_by(col(StatusChange.created_at).asc(), col(StatusChange.id).asc()),
            ).all()
        return [
            StatusChangeView(
                id=row.id or 0,
                task_id=row.task_id,
                from_status=TaskStatus(row.from_status) if row.from_status is not None else None,
                to_status=TaskStatus(row.to_status),
                notes=row.notes,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    # Orchestrations

    def create_orchestration(self, *, parent_task_id: str, current_phase: str) -> OrchestrationView:
        """Create the single orchestration record for a parent task."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Orchestration(
                orchestration_id=str(uuid4()),
                parent_task_id=parent_task_id,
                status=OrchestrationStatus.PLANNING.value,
                current_phase=current_phase,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(
                    f"Orchestration already exists for task {parent_task_id}",
                ) from error
            session.refresh(row)
            return _to_orchestration_view(row)

    def get_orchestration(self, orchestration_id: str) -> OrchestrationView | None:
        with Session(self.engine) as session:
            row = session.get(Orchestration, orchestration_id)
            return _to_orchestration_view(row) if row is not None else None

    def require_orchestration(self, orchestration_id: str) -> OrchestrationView:
        orchestration = self.get_orchestration(orchestration_id)
        if orchestration is None:
            raise NotFoundError(f"Orchestration not found: {orchestration_id}")
        return orchestration

    def get_orchestration_for_parent(self, parent_task_id: str) -> OrchestrationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Orchestration).where(Orchestration.parent_task_id == parent_task_id),
            ).one_or_none()
            return _to_orchestration_view(row) if row is not None else None

    def list_orchestrations(
        self,
        *,
        status: OrchestrationStatus | None = None,
        limit: int = 50,
    ) -> list[OrchestrationView]:
        with Session(self.engine) as session:
            statement = (
                select(Orchestration).order_by(col(Orchestration.created_at).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(Orchestration.status == status.value)
            rows = session.exec(statement).all()
        return [_to_orchestration_view(row) for row in rows]

    def restart_orchestration(self, *, orchestration_id: str, current_phase: str) -> bool:
        """Reset a FAILED orchestration back to PLANNING; False if it is not FAILED."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Orchestration)
                .where(
                    col(Orchestration.orchestration_id) == orchestration_id,
                    col(Orchestration.status) == OrchestrationStatus.FAILED.value,
                )
                .values(
                    status=OrchestrationStatus.PLANNING.value,
                    plan_json=None,
                    total_subtasks=0,
                    completed_subtasks=0,
                    current_phase=current_phase,
                    error_summary=None,
                    completed_at=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def update_orchestration(  # noqa: PLR0913
        self,
        orchestration_id: str,
        *,
        status: OrchestrationStatus | None = None,
        current_phase: str | None = None,
        plan: dict[str, Any] | None = None,
        total_subtasks: int | None = None,
        completed_subtasks: int | None = None,
    ) -> None:
        """Patch a non-terminal orchestration; terminal records are left untouched."""

        values: dict[str, object] = {"updated_at": to_db_datetime(utc_now())}
        if status is not None:
            values["status"] = status.value
        if current_phase is not None:
            values["current_phase"] = current_phase
        if plan is not None:
            values["plan_json"] = json.dumps(plan, ensure_ascii=False, sort_keys=True)
        if total_subtasks is not None:
            values["total_subtasks"] = total_subtasks
        if completed_subtasks is not None:
            values["completed_subtasks"] = completed_subtasks

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Orchestration)
                .where(
                    col(Orchestration.orchestration_id) == orchestration_id,
                    col(Orchestration.status).not_in(_TERMINAL_ORCHESTRATION_STATUSES),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                if session.get(Orchestration, orchestration_id) is None:
                    raise NotFoundError(f"Orchestration not found: {orchestration_id}")
                return
            session.commit()

    def fail_orchestration(self, *, orchestration_id: str, error_summary: str) -> bool:
        """Move a non-terminal orchestration to FAILED with the error recorded."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Orchestration)
                .where(
                    col(Orchestration.orchestration_id) == orchestration_id,
                    col(Orchestration.status).not_in(_TERMINAL_ORCHESTRATION_STATUSES),
                )
                .values(
                    status=OrchestrationStatus.FAILED.value,
                    current_phase=f"Error: {error_summary}",
                    error_summary=error_summary,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_orchestration(self, *, orchestration_id: str, total_subtasks: int) -> bool:
        """EXECUTING -> COMPLETED; True only for the caller that performed the transition."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Orchestration)
                .where(
                    col(Orchestration.orchestration_id) == orchestration_id,
                    col(Orchestration.status) == OrchestrationStatus.EXECUTING.value,
                )
                .values(
                    status=OrchestrationStatus.COMPLETED.value,
                    total_subtasks=total_subtasks,
                    completed_subtasks=total_subtasks,
                    current_phase=f"All {total_subtasks} subtasks completed",
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _add_status_change(
    session: Session,
    *,
    task_id: str,
    from_status: TaskStatus | None,
    to_status: TaskStatus,
    notes: str | None,
) -> None:
    session.add(
        StatusChange(
            task_id=task_id,
            from_status=from_status.value if from_status is not None else None,
            to_status=to_status.value,
            notes=notes,
            created_at=to_db_datetime(utc_now()),
        ),
    )


def _load_dependencies(session: Session, task_ids: list[str]) -> dict[str, list[DependencyRef]]:
    if not task_ids:
        return {}
    rows = session.exec(
        select(TaskDependency.task_id, TaskDependency.depends_on_id, Task.status)
        .join(Task, col(Task.task_id) == col(TaskDependency.depends_on_id))
        .where(col(TaskDependency.task_id).in_(task_ids))
        .order_by(literal_column("task_dependencies.rowid").asc()),
    ).all()
    dependencies: dict[str, list[DependencyRef]] = {}
    for task_id, depends_on_id, status in rows:
        dependencies.setdefault(task_id, []).append(
            DependencyRef(task_id=depends_on_id, status=TaskStatus(status)),
        )
    return dependencies


def _with_dependencies(session: Session, rows: Iterable[Task]) -> list[TaskView]:
    rows = list(rows)
    dependencies = _load_dependencies(session, [row.task_id for row in rows])
    return [
        _to_task_view(row, dependencies=dependencies.get(row.task_id, [])) for row in rows
    ]


def _to_agent_view(row: Agent) -> AgentView:
    return AgentView(
        agent_id=row.agent_id,
        name=row.name,
        role=row.role,
        is_active=row.is_active,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_task_view(row: Task, *, dependencies: list[DependencyRef]) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        description=row.description,
        priority=TaskPriority.parse(row.priority),
        status=TaskStatus(row.status),
        estimated_hours=row.estimated_hours,
        parent_id=row.parent_id,
        orchestration_id=row.orchestration_id,
        agent_id=row.agent_id,
        agent_name=row.agent_name,
        auto_created=row.auto_created,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=optional_utc(row.completed_at),
        dependencies=list(dependencies),
    )


def _to_orchestration_view(row: Orchestration) -> OrchestrationView:
    plan: dict[str, Any] | None = None
    if row.plan_json:
        parsed = json.loads(row.plan_json)
        if isinstance(parsed, dict):
            plan = parsed
    return OrchestrationView(
        orchestration_id=row.orchestration_id,
        parent_task_id=row.parent_task_id,
        status=OrchestrationStatus(row.status),
        plan=plan,
        total_subtasks=row.total_subtasks,
        completed_subtasks=row.completed_subtasks,
        current_phase=row.current_phase,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=optional_utc(row.completed_at),
    )
