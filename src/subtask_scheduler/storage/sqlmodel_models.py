"""SQLModel ORM tables for scheduler storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
)
from sqlmodel import Field, SQLModel


class Agent(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agents_role_active", "role", "is_active"),)

    agent_id: str = Field(primary_key=True)
    name: str
    role: str = Field(index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_orchestration_status", "orchestration_id", "status"),)

    task_id: str = Field(primary_key=True)
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    priority: str = Field(index=True)
    status: str = Field(index=True)
    estimated_hours: float | None = None
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="SET NULL"), index=True),
    )
    orchestration_id: str | None = Field(default=None, index=True)
    agent_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("agents.agent_id", ondelete="SET NULL"), index=True),
    )
    agent_name: str | None = None
    auto_created: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint("task_id != depends_on_id", name="ck_task_dependencies_not_self"),
        Index("idx_task_dependencies_depends_on", "depends_on_id"),
    )

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    depends_on_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )


class Orchestration(SQLModel, table=True):
    __tablename__ = "orchestrations"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "completed_subtasks <= total_subtasks",
            name="ck_orchestrations_completed_le_total",
        ),
    )

    orchestration_id: str = Field(primary_key=True)
    parent_task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    status: str = Field(index=True)
    plan_json: str | None = Field(default=None, sa_column=Column(Text))
    total_subtasks: int = Field(default=0)
    completed_subtasks: int = Field(default=0)
    current_phase: str = ""
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class QueueEntry(SQLModel, table=True):
    __tablename__ = "queue_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_entries_drain", "status", "priority", "created_at"),)

    entry_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    agent_id: str = Field(index=True)
    priority: int = Field(default=0)
    status: str = Field(index=True)
    scheduled_for: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StatusChange(SQLModel, table=True):
    __tablename__ = "status_changes"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_status_changes_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    from_status: str | None = None
    to_status: str
    notes: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
