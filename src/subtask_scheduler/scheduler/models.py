"""Domain models for task decomposition, dependency graphs and the execution queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskPriority(str, Enum):
    """Task priority; ``weight`` is the numeric queue priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]

    @classmethod
    def parse(cls, value: object) -> TaskPriority:
        """Accept enum members or case-insensitive names, defaulting to MEDIUM."""

        if isinstance(value, TaskPriority):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.MEDIUM
        return cls.MEDIUM


_PRIORITY_WEIGHTS = {
    TaskPriority.URGENT: 10,
    TaskPriority.HIGH: 7,
    TaskPriority.MEDIUM: 4,
    TaskPriority.LOW: 1,
}


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    BLOCKED = "blocked"


class OrchestrationStatus(str, Enum):
    """Orchestration state machine; COMPLETED and FAILED are terminal."""

    PLANNING = "planning"
    CREATING_SUBTASKS = "creating_subtasks"
    ASSIGNING_AGENTS = "assigning_agents"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {OrchestrationStatus.COMPLETED, OrchestrationStatus.FAILED}


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_QUEUE_STATUSES = (QueueStatus.PENDING, QueueStatus.PROCESSING)


@dataclass(slots=True)
class AgentView:
    agent_id: str
    name: str
    role: str
    is_active: bool
    created_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for persisting a task."""

    title: str
    description: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.TODO
    estimated_hours: float | None = None
    parent_id: str | None = None
    orchestration_id: str | None = None
    agent_id: str | None = None
    agent_name: str | None = None
    auto_created: bool = False
    task_id: str | None = None


@dataclass(slots=True)
class DependencyRef:
    """One edge endpoint together with its current status."""

    task_id: str
    status: TaskStatus


@dataclass(slots=True)
class TaskView:
    """Task snapshot including its direct dependencies and their statuses."""

    task_id: str
    title: str
    description: str | None
    priority: TaskPriority
    status: TaskStatus
    estimated_hours: float | None
    parent_id: str | None
    orchestration_id: str | None
    agent_id: str | None
    agent_name: str | None
    auto_created: bool
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    dependencies: list[DependencyRef] = field(default_factory=list)

    @property
    def depends_on(self) -> list[str]:
        return [dependency.task_id for dependency in self.dependencies]

    @property
    def dependencies_done(self) -> bool:
        return all(dependency.status == TaskStatus.DONE for dependency in self.dependencies)


@dataclass(slots=True)
class TaskWithDependents:
    """Finished task together with its direct dependents (each with own dependencies)."""

    task: TaskView
    dependents: list[TaskView]


@dataclass(slots=True)
class StatusChangeView:
    """Audit entry for one task status transition."""

    id: int
    task_id: str
    from_status: TaskStatus | None
    to_status: TaskStatus
    notes: str | None
    created_at: datetime


@dataclass(slots=True)
class OrchestrationView:
    orchestration_id: str
    parent_task_id: str
    status: OrchestrationStatus
    plan: dict[str, Any] | None
    total_subtasks: int
    completed_subtasks: int
    current_phase: str
    error_summary: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class QueueEntryView:
    entry_id: str
    task_id: str
    agent_id: str
    priority: int
    status: QueueStatus
    scheduled_for: datetime | None
    attempts: int
    max_attempts: int
    last_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class EnqueueResult:
    """Outcome of an idempotent enqueue: ``created`` is False for an existing entry."""

    entry: QueueEntryView
    created: bool


@dataclass(slots=True)
class QueueStats:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


@dataclass(slots=True)
class SubtaskPlan:
    """Proposed subtask; ``depends_on`` holds titles of sibling subtasks."""

    title: str
    description: str = ""
    agent_role: str | None = None
    estimated_hours: float | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    depends_on: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PlanPhase:
    name: str
    subtasks: list[SubtaskPlan] = field(default_factory=list)


@dataclass(slots=True)
class OrchestrationPlan:
    """Plan structure received from the planning collaborator."""

    analysis: str
    phases: list[PlanPhase]
    estimated_total_hours: float | None = None
    recommended_order: list[str] = field(default_factory=list)

    def all_subtasks(self) -> list[SubtaskPlan]:
        return [subtask for phase in self.phases for subtask in phase.subtasks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysis": self.analysis,
            "phases": [
                {
                    "name": phase.name,
                    "subtasks": [
                        {
                            "title": subtask.title,
                            "description": subtask.description,
                            "agent": subtask.agent_role,
                            "estimatedHours": subtask.estimated_hours,
                            "priority": subtask.priority.value,
                            "dependsOn": list(subtask.depends_on),
                        }
                        for subtask in phase.subtasks
                    ],
                }
                for phase in self.phases
            ],
            "estimatedTotalHours": self.estimated_total_hours,
            "recommendedOrder": list(self.recommended_order),
        }


@dataclass(slots=True)
class GraphTask:
    """Minimal task shape accepted by the graph builder."""

    task_id: str
    title: str
    priority: TaskPriority = TaskPriority.MEDIUM
    depends_on: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DependencyNode:
    """Transient graph node; ``level`` is -1 until leveling assigns it."""

    task_id: str
    title: str
    priority: TaskPriority
    level: int = -1
    depends_on: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DependencyGraph:
    nodes: dict[str, DependencyNode]
    levels: list[list[str]]
    has_cycle: bool
    cycle_details: str | None = None
    cycle: list[str] = field(default_factory=list)

    @property
    def total_levels(self) -> int:
        return len(self.levels)

    @property
    def can_parallelize(self) -> bool:
        return any(len(level) > 1 for level in self.levels)


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    graph: DependencyGraph | None = None
    cycle_details: str | None = None


@dataclass(slots=True)
class OrchestrationResult:
    orchestration_id: str
    subtasks_created: int
    subtasks_queued: int
    plan: OrchestrationPlan
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PlanPreview:
    """Plan produced without persisting anything."""

    plan: OrchestrationPlan
    validation: ValidationResult
    roles_used: list[str]
    total_subtasks: int


@dataclass(slots=True)
class MonitorReport:
    """Result of one reconciliation tick."""

    orchestration_id: str
    status: OrchestrationStatus
    total: int = 0
    completed: int = 0
    unlocked: int = 0
    completed_now: bool = False
    stalled: bool = False
