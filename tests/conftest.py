"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from subtask_scheduler.scheduler.events import EventBus
from subtask_scheduler.scheduler.queue import ExecutionQueue
from subtask_scheduler.scheduler.repository import SchedulerRepository


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "scheduler.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[SchedulerRepository]:
    repository = SchedulerRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def execution_queue(repository: SchedulerRepository, event_bus: EventBus) -> ExecutionQueue:
    return ExecutionQueue(repository.engine, event_bus=event_bus)
