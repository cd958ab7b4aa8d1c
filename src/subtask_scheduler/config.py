"""Runtime configuration for the scheduler and queue worker."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "SUBTASK_SCHEDULER_"
_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(slots=True)
class SchedulerSettings:
    """Orchestration engine and queue settings."""

    planner_timeout_seconds: float = 60.0
    classifier_timeout_seconds: float = 15.0
    default_max_attempts: int = 3
    event_history_limit: int = 100


@dataclass(slots=True)
class WorkerSettings:
    """Queue drain loop settings."""

    worker_id: str = "worker-1"
    agent_id: str | None = None
    max_tasks: int | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".subtask_scheduler.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        max_tasks_raw = os.getenv(f"{ENV_PREFIX}WORKER_MAX_TASKS", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv(f"{ENV_PREFIX}DB_PATH", ".subtask_scheduler.db")),
            sqlite_busy_timeout_ms=_env_int("SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "WARNING").strip().upper(),
            scheduler=SchedulerSettings(
                planner_timeout_seconds=_env_float("PLANNER_TIMEOUT_SECONDS", 60.0),
                classifier_timeout_seconds=_env_float("CLASSIFIER_TIMEOUT_SECONDS", 15.0),
                default_max_attempts=_env_int("DEFAULT_MAX_ATTEMPTS", 3),
                event_history_limit=_env_int("EVENT_HISTORY_LIMIT", 100),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv(f"{ENV_PREFIX}WORKER_ID", "worker-1"),
                agent_id=os.getenv(f"{ENV_PREFIX}WORKER_AGENT_ID") or None,
                max_tasks=_parse_int(f"{ENV_PREFIX}WORKER_MAX_TASKS", max_tasks_raw)
                if max_tasks_raw
                else None,
            ),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` naming the first invalid variable."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError(f"{ENV_PREFIX}SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"{ENV_PREFIX}LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}: "
                f"{self.log_level!r}",
            )
        if self.scheduler.planner_timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}PLANNER_TIMEOUT_SECONDS must be > 0.")
        if self.scheduler.classifier_timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}CLASSIFIER_TIMEOUT_SECONDS must be > 0.")
        if self.scheduler.default_max_attempts < 1:
            raise ValueError(f"{ENV_PREFIX}DEFAULT_MAX_ATTEMPTS must be >= 1.")
        if self.scheduler.event_history_limit < 1:
            raise ValueError(f"{ENV_PREFIX}EVENT_HISTORY_LIMIT must be >= 1.")
        if not self.worker.worker_id.strip():
            raise ValueError(f"{ENV_PREFIX}WORKER_ID must not be empty.")
        if self.worker.max_tasks is not None and self.worker.max_tasks < 1:
            raise ValueError(f"{ENV_PREFIX}WORKER_MAX_TASKS must be >= 1.")

    def configure_logging(self) -> None:
        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.WARNING),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _env_int(suffix: str, default: int) -> int:
    name = f"{ENV_PREFIX}{suffix}"
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return _parse_int(name, raw)


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(suffix: str, default: float) -> float:
    name = f"{ENV_PREFIX}{suffix}"
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {raw!r}") from error
