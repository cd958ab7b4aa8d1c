"""Persistent, idempotent priority queue of tasks ready for processing."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, literal_column, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from subtask_scheduler.scheduler.errors import NotFoundError
from subtask_scheduler.scheduler.events import EventBus, QueueEntryAdded
from subtask_scheduler.scheduler.models import (
    ACTIVE_QUEUE_STATUSES,
    EnqueueResult,
    QueueEntryView,
    QueueStats,
    QueueStatus,
)
from subtask_scheduler.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from subtask_scheduler.storage.sqlmodel_models import QueueEntry, Task

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class ExecutionQueue:
    """Queue entries drained by priority descending, then creation time ascending.

    At most one entry exists per task. The UNIQUE constraint on ``task_id`` backs the
    existence check in ``add_to_queue``, so concurrent producers racing on the same task
    end up sharing a single row.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        event_bus: EventBus | None = None,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.engine = engine
        self.event_bus = event_bus
        self.default_max_attempts = default_max_attempts

    def add_to_queue(
        self,
        task_id: str,
        agent_id: str,
        *,
        priority: int = 0,
        scheduled_for: datetime | None = None,
        max_attempts: int | None = None,
    ) -> EnqueueResult:
        """Insert a PENDING entry for ``task_id`` unless one already exists."""

        existing = self.get_entry(task_id)
        if existing is not None:
            logger.debug("Task %s already queued as %s", task_id, existing.entry_id)
            return EnqueueResult(entry=existing, created=False)

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = QueueEntry(
                entry_id=str(uuid4()),
                task_id=task_id,
                agent_id=agent_id,
                priority=priority,
                status=QueueStatus.PENDING.value,
                scheduled_for=to_db_datetime(scheduled_for) if scheduled_for else None,
                attempts=0,
                max_attempts=max_attempts or self.default_max_attempts,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                winner = session.exec(
                    select(QueueEntry).where(QueueEntry.task_id == task_id),
                ).one_or_none()
                if winner is None:
                    raise NotFoundError(f"Task not found: {task_id}") from error
                logger.debug("Lost enqueue race for task %s", task_id)
                return EnqueueResult(entry=_to_entry_view(winner), created=False)
            session.refresh(row)
            entry = _to_entry_view(row)

        logger.info(
            "Queued task %s for agent %s (priority=%d)",
            task_id,
            agent_id,
            priority,
        )
        if self.event_bus is not None:
            self.event_bus.emit(
                QueueEntryAdded(entry_id=entry.entry_id, priority=entry.priority),
                task_id=task_id,
                agent_id=agent_id,
            )
        return EnqueueResult(entry=entry, created=True)

    def get_entry(self, task_id: str) -> QueueEntryView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueEntry).where(QueueEntry.task_id == task_id),
            ).one_or_none()
            return _to_entry_view(row) if row is not None else None

    def claim_next(
        self,
        *,
        agent_id: str | None = None,
        now: datetime | None = None,
    ) -> QueueEntryView | None:
        """Atomically move the best due PENDING entry to PROCESSING."""

        while True:
            moment = to_db_datetime(now or utc_now())
            with Session(self.engine) as session:
                statement = (
                    select(QueueEntry)
                    .where(
                        QueueEntry.status == QueueStatus.PENDING.value,
                        or_(
                            col(QueueEntry.scheduled_for).is_(None),
                            col(QueueEntry.scheduled_for) <= moment,
                        ),
                    )
                    .order_by(*_DRAIN_ORDER)
                    .limit(1)
                )
                if agent_id is not None:
                    statement = statement.where(QueueEntry.agent_id == agent_id)
                candidate = session.exec(statement).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueEntry)
                    .where(
                        col(QueueEntry.entry_id) == candidate.entry_id,
                        col(QueueEntry.status) == QueueStatus.PENDING.value,
                    )
                    .values(
                        status=QueueStatus.PROCESSING.value,
                        attempts=candidate.attempts + 1,
                        updated_at=moment,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.exec(
                    select(QueueEntry).where(QueueEntry.entry_id == candidate.entry_id),
                ).one()
                return _to_entry_view(claimed)

    def complete_entry(self, entry_id: str) -> bool:
        """PROCESSING -> COMPLETED."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.entry_id) == entry_id,
                    col(QueueEntry.status) == QueueStatus.PROCESSING.value,
                )
                .values(
                    status=QueueStatus.COMPLETED.value,
                    last_error=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail_entry(self, entry_id: str, *, error: str) -> QueueEntryView | None:
        """Return a PROCESSING entry to PENDING, or FAILED once attempts are exhausted.

        Returns the updated entry, or None when the entry is not PROCESSING.
        """

        with Session(self.engine) as session:
            row = session.get(QueueEntry, entry_id)
            if row is None or row.status != QueueStatus.PROCESSING.value:
                return None
            exhausted = row.attempts >= row.max_attempts
            next_status = QueueStatus.FAILED if exhausted else QueueStatus.PENDING
            result = session.exec(
                sa_update(QueueEntry)
                .where(
                    col(QueueEntry.entry_id) == entry_id,
                    col(QueueEntry.status) == QueueStatus.PROCESSING.value,
                )
                .values(
                    status=next_status.value,
                    last_error=error,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            session.refresh(row)
            return _to_entry_view(row)

    def remove_from_queue(self, task_id: str) -> int:
        with Session(self.engine) as session:
            result = session.exec(sa_delete(QueueEntry).where(col(QueueEntry.task_id) == task_id))
            session.commit()
            return int(result.rowcount or 0)

    def get_queue_status(self) -> QueueStats:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueEntry.status, func.count()).group_by(QueueEntry.status),
            ).all()
        stats = QueueStats()
        for status, count in rows:
            if status in {member.value for member in QueueStatus}:
                setattr(stats, status, count)
            stats.total += count
        return stats

    def clear_queue(self, status: QueueStatus | None = None) -> int:
        """Delete entries, optionally only those in ``status``; returns rows removed."""

        statement = sa_delete(QueueEntry)
        if status is not None:
            statement = statement.where(col(QueueEntry.status) == status.value)
        with Session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
            removed = int(result.rowcount or 0)
        logger.info(
            "Cleared %d queue entries (status=%s)",
            removed,
            status.value if status else "*",
        )
        return removed

    def count_active(self, task_ids: Iterable[str]) -> int:
        """Number of PENDING/PROCESSING entries among ``task_ids``."""

        ids = list(task_ids)
        if not ids:
            return 0
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(QueueEntry)
                    .where(
                        col(QueueEntry.task_id).in_(ids),
                        col(QueueEntry.status).in_(
                            [status.value for status in ACTIVE_QUEUE_STATUSES],
                        ),
                    ),
                ).one(),
            )

    def list_entries(
        self,
        *,
        status: QueueStatus | None = None,
        limit: int = 50,
    ) -> list[QueueEntryView]:
        """Entries in drain order."""

        with Session(self.engine) as session:
            statement = select(QueueEntry).order_by(*_DRAIN_ORDER).limit(limit)
            if status is not None:
                statement = statement.where(QueueEntry.status == status.value)
            rows = session.exec(statement).all()
        return [_to_entry_view(row) for row in rows]

    def queued_task_titles(self, entries: Iterable[QueueEntryView]) -> dict[str, str]:
        """Map task ids of ``entries`` to task titles, for display."""

        ids = [entry.task_id for entry in entries]
        if not ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.task_id, Task.title).where(col(Task.task_id).in_(ids)),
            ).all()
        return dict(rows)


_DRAIN_ORDER = (
    col(QueueEntry.priority).desc(),
    col(QueueEntry.created_at).asc(),
    literal_column("queue_entries.rowid").asc(),
)


def _to_entry_view(row: QueueEntry) -> QueueEntryView:
    return QueueEntryView(
        entry_id=row.entry_id,
        task_id=row.task_id,
        agent_id=row.agent_id,
        priority=row.priority,
        status=QueueStatus(row.status),
        scheduled_for=optional_utc(row.scheduled_for),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
