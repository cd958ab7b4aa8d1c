"""Error taxonomy for orchestration and scheduling."""

from __future__ import annotations


class SchedulerError(RuntimeError):
    """Base class for scheduler failures surfaced to callers."""


class ValidationError(SchedulerError):
    """Malformed plan or inconsistent dependency declarations."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class CycleError(SchedulerError):
    """Dependency graph contains a cycle; ``cycle_details`` names its path."""

    def __init__(self, cycle_details: str) -> None:
        super().__init__(f"Circular dependencies detected: {cycle_details}")
        self.cycle_details = cycle_details


class ConflictError(SchedulerError):
    """Operation conflicts with current persisted state."""


class NotFoundError(SchedulerError):
    """Unknown task, agent or orchestration."""


class ExternalServiceError(SchedulerError):
    """Planner or classifier failed, returned garbage, or timed out."""

    def __init__(self, message: str, *, service: str, timed_out: bool = False) -> None:
        super().__init__(message)
        self.service = service
        self.timed_out = timed_out
