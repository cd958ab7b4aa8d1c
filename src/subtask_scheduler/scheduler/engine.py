"""Orchestration engine: plan a parent task, persist subtasks, assign agents, enqueue."""

from __future__ import annotations

import logging

from subtask_scheduler.config import SchedulerSettings
from subtask_scheduler.scheduler.collaborators import (
    AgentClassifier,
    Planner,
    call_with_timeout,
    parse_plan,
)
from subtask_scheduler.scheduler.errors import (
    ConflictError,
    CycleError,
    ExternalServiceError,
    ValidationError,
)
from subtask_scheduler.scheduler.events import EventBus, ExecutionFailed, ExecutionStarted
from subtask_scheduler.scheduler.graph import get_execution_order, validate_dependencies
from subtask_scheduler.scheduler.models import (
    ACTIVE_QUEUE_STATUSES,
    AgentView,
    MonitorReport,
    OrchestrationPlan,
    OrchestrationResult,
    OrchestrationStatus,
    OrchestrationView,
    PlanPreview,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskView,
    ValidationResult,
)
from subtask_scheduler.scheduler.progress import record_progress
from subtask_scheduler.scheduler.queue import ExecutionQueue
from subtask_scheduler.scheduler.repository import SchedulerRepository

logger = logging.getLogger(__name__)


class OrchestrationEngine:
    """Drives one parent task through PLANNING -> CREATING_SUBTASKS -> ASSIGNING_AGENTS
    -> EXECUTING, leaving completion to the reconciler and ``monitor_execution``.

    Any failure after the orchestration record exists moves it to FAILED with the
    error recorded, then re-raises.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: SchedulerRepository,
        queue: ExecutionQueue,
        event_bus: EventBus,
        planner: Planner,
        classifier: AgentClassifier | None = None,
        settings: SchedulerSettings | None = None,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.event_bus = event_bus
        self.planner = planner
        self.classifier = classifier
        self.settings = settings or SchedulerSettings()

    def orchestrate(self, task_id: str) -> OrchestrationResult:
        parent = self.repository.require_task(task_id)
        if parent.status == TaskStatus.DONE:
            raise ConflictError(f"Task {task_id} is already done")

        orchestration = self._begin(parent)
        orchestration_id = orchestration.orchestration_id
        logger.info("Orchestration %s: planning task %s", orchestration_id, task_id)
        try:
            plan = self.plan_task(parent)
            validation = validate_dependencies(plan)
            _raise_for_validation(validation)
            subtask_count = len(plan.all_subtasks())

            self.repository.update_orchestration(
                orchestration_id,
                status=OrchestrationStatus.CREATING_SUBTASKS,
                plan=plan.to_dict(),
                total_subtasks=subtask_count,
                current_phase=f"Creating {subtask_count} subtasks",
            )
            subtasks = self.create_subtasks(orchestration_id, parent=parent, plan=plan)

            self.repository.update_orchestration(
                orchestration_id,
                status=OrchestrationStatus.ASSIGNING_AGENTS,
                current_phase="Assigning agents",
            )
            self.assign_agents(orchestration_id)

            self.repository.update_orchestration(
                orchestration_id,
                status=OrchestrationStatus.EXECUTING,
                current_phase=f"Executing: 0/{len(subtasks)} subtasks completed",
            )
            queued = self.queue_for_execution(orchestration_id)
        except Exception as error:
            self._fail(orchestration, error)
            raise

        logger.info(
            "Orchestration %s executing: %d subtasks created, %d queued",
            orchestration_id,
            len(subtasks),
            queued,
        )
        self.event_bus.emit(
            ExecutionStarted(
                orchestration_id=orchestration_id,
                total_subtasks=len(subtasks),
                queued_subtasks=queued,
            ),
            task_id=parent.task_id,
        )
        return OrchestrationResult(
            orchestration_id=orchestration_id,
            subtasks_created=len(subtasks),
            subtasks_queued=queued,
            plan=plan,
            warnings=list(validation.warnings),
        )

    def plan_task(self, parent: TaskView) -> OrchestrationPlan:
        """Ask the planner for a plan and parse it; an empty plan is rejected."""

        plan = self._request_plan(
            title=parent.title,
            description=parent.description,
            priority=parent.priority,
            estimated_hours=parent.estimated_hours,
        )
        if not plan.all_subtasks():
            raise ValidationError("Planner returned a plan without subtasks")
        return plan

    def create_subtasks(
        self,
        orchestration_id: str,
        *,
        parent: TaskView,
        plan: OrchestrationPlan,
    ) -> list[TaskView]:
        """Persist every planned subtask, then link dependency titles to the new ids.

        The linked graph is re-read from the store and checked for cycles.
        """

        subtasks = plan.all_subtasks()
        id_by_title: dict[str, str] = {}
        for subtask in subtasks:
            agent = self._find_agent(subtask.agent_role)
            task = self.repository.create_task(
                TaskCreate(
                    title=subtask.title,
                    description=subtask.description or None,
                    priority=subtask.priority,
                    estimated_hours=subtask.estimated_hours,
                    parent_id=parent.task_id,
                    orchestration_id=orchestration_id,
                    agent_id=agent.agent_id if agent else None,
                    agent_name=agent.name if agent else None,
                    auto_created=True,
                ),
            )
            id_by_title[subtask.title] = task.task_id

        for subtask in subtasks:
            depends_on_ids = [id_by_title[title] for title in subtask.depends_on]
            if depends_on_ids:
                self.repository.add_dependencies(
                    task_id=id_by_title[subtask.title],
                    depends_on_ids=depends_on_ids,
                )

        persisted = self.repository.list_subtasks(orchestration_id)
        get_execution_order(persisted)
        return persisted

    def assign_agents(self, orchestration_id: str) -> int:
        """Give unassigned subtasks an agent via the classifier; returns how many were assigned."""

        assigned = 0
        for task in self.repository.list_subtasks(orchestration_id):
            if task.agent_id is not None:
                continue
            agent = self._suggest_agent(task)
            if agent is None:
                logger.warning(
                    "No active agent resolved for subtask %s (%r); leaving it unassigned",
                    task.task_id,
                    task.title,
                )
                continue
            self.repository.assign_agent(task_id=task.task_id, agent=agent)
            assigned += 1
        return assigned

    def queue_for_execution(self, orchestration_id: str) -> int:
        """Enqueue assigned subtasks whose persisted dependencies are all DONE."""

        queued = 0
        subtasks = self.repository.list_subtasks(orchestration_id)
        for task in get_execution_order(subtasks):
            if task.status != TaskStatus.TODO or task.agent_id is None:
                continue
            if not task.dependencies_done:
                continue
            result = self.queue.add_to_queue(
                task.task_id,
                task.agent_id,
                priority=task.priority.weight,
            )
            if result.created:
                queued += 1
        return queued

    def get_ready_tasks(self, orchestration_id: str) -> list[TaskView]:
        """TODO subtasks with every dependency DONE and no active queue entry."""

        ready: list[TaskView] = []
        subtasks = self.repository.list_subtasks(orchestration_id)
        for task in get_execution_order(subtasks):
            if task.status != TaskStatus.TODO or not task.dependencies_done:
                continue
            entry = self.queue.get_entry(task.task_id)
            if entry is not None and entry.status in ACTIVE_QUEUE_STATUSES:
                continue
            ready.append(task)
        return ready

    def monitor_execution(self, orchestration_id: str) -> MonitorReport:
        """One reconciliation tick; safe to run any number of times."""

        orchestration = self.repository.require_orchestration(orchestration_id)
        if orchestration.status != OrchestrationStatus.EXECUTING:
            return MonitorReport(
                orchestration_id=orchestration_id,
                status=orchestration.status,
                total=orchestration.total_subtasks,
                completed=orchestration.completed_subtasks,
            )

        unlocked = 0
        for task in self.get_ready_tasks(orchestration_id):
            if task.agent_id is None:
                continue
            result = self.queue.add_to_queue(
                task.task_id,
                task.agent_id,
                priority=task.priority.weight,
            )
            if result.created:
                unlocked += 1
        if unlocked:
            logger.info("Orchestration %s: unlocked %d subtasks", orchestration_id, unlocked)

        progress = record_progress(self.repository, self.event_bus, orchestration_id)
        if progress is None:
            return MonitorReport(orchestration_id=orchestration_id, status=orchestration.status)

        stalled = False
        if not progress.completed_now and progress.completed < progress.total and unlocked == 0:
            subtasks = self.repository.list_subtasks(orchestration_id)
            in_progress = any(task.status == TaskStatus.IN_PROGRESS for task in subtasks)
            active = self.queue.count_active(task.task_id for task in subtasks)
            if not in_progress and active == 0:
                stalled = True
                logger.warning(
                    "Orchestration %s appears stalled: %d/%d subtasks done, "
                    "nothing queued or in progress",
                    orchestration_id,
                    progress.completed,
                    progress.total,
                )

        return MonitorReport(
            orchestration_id=orchestration_id,
            status=progress.status,
            total=progress.total,
            completed=progress.completed,
            unlocked=unlocked,
            completed_now=progress.completed_now,
            stalled=stalled,
        )

    def preview(
        self,
        *,
        title: str,
        description: str | None = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        estimated_hours: float | None = None,
    ) -> PlanPreview:
        """Plan and validate without touching the store."""

        plan = self._request_plan(
            title=title,
            description=description,
            priority=priority,
            estimated_hours=estimated_hours,
        )
        subtasks = plan.all_subtasks()
        roles = sorted({subtask.agent_role for subtask in subtasks if subtask.agent_role})
        return PlanPreview(
            plan=plan,
            validation=validate_dependencies(plan),
            roles_used=roles,
            total_subtasks=len(subtasks),
        )

    def _begin(self, parent: TaskView) -> OrchestrationView:
        existing = self.repository.get_orchestration_for_parent(parent.task_id)
        if existing is None:
            return self.repository.create_orchestration(
                parent_task_id=parent.task_id,
                current_phase="Planning",
            )
        if existing.status != OrchestrationStatus.FAILED:
            raise ConflictError(
                f"Task {parent.task_id} already has an orchestration "
                f"({existing.orchestration_id}, {existing.status.value})",
            )
        if not self.repository.restart_orchestration(
            orchestration_id=existing.orchestration_id,
            current_phase="Planning",
        ):
            raise ConflictError(f"Orchestration {existing.orchestration_id} is being restarted")
        removed = self.repository.delete_subtasks(existing.orchestration_id)
        logger.info(
            "Restarting failed orchestration %s (discarded %d subtasks)",
            existing.orchestration_id,
            removed,
        )
        return self.repository.require_orchestration(existing.orchestration_id)

    def _request_plan(
        self,
        *,
        title: str,
        description: str | None,
        priority: TaskPriority,
        estimated_hours: float | None,
    ) -> OrchestrationPlan:
        raw = call_with_timeout(
            lambda: self.planner.plan(
                title=title,
                description=description,
                priority=priority,
                estimated_hours=estimated_hours,
            ),
            service="planner",
            timeout_seconds=self.settings.planner_timeout_seconds,
        )
        return parse_plan(raw)

    def _find_agent(self, role: str | None) -> AgentView | None:
        if not role:
            return None
        agent = self.repository.find_active_agent_by_role(role)
        if agent is None:
            logger.info("No active agent with role %r; classifier will be consulted", role)
        return agent

    def _suggest_agent(self, task: TaskView) -> AgentView | None:
        if self.classifier is None:
            return None
        classifier = self.classifier
        try:
            role = call_with_timeout(
                lambda: classifier.suggest_role(title=task.title, description=task.description),
                service="classifier",
                timeout_seconds=self.settings.classifier_timeout_seconds,
            )
        except ExternalServiceError as error:
            logger.warning("Classifier failed for subtask %s: %s", task.task_id, error)
            return None
        if not role:
            return None
        return self.repository.find_active_agent_by_role(role)

    def _fail(self, orchestration: OrchestrationView, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        if self.repository.fail_orchestration(
            orchestration_id=orchestration.orchestration_id,
            error_summary=message,
        ):
            logger.error("Orchestration %s failed: %s", orchestration.orchestration_id, message)
            self.event_bus.emit(
                ExecutionFailed(orchestration_id=orchestration.orchestration_id, error=message),
                task_id=orchestration.parent_task_id,
            )


def _raise_for_validation(validation: ValidationResult) -> None:
    if validation.valid:
        return
    if validation.cycle_details:
        raise CycleError(validation.cycle_details)
    raise ValidationError(
        "Invalid plan: " + "; ".join(validation.errors),
        errors=validation.errors,
    )
