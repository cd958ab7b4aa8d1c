"""Contracts and default implementations for planning and classification collaborators."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar

from subtask_scheduler.scheduler.errors import ExternalServiceError, SchedulerError, ValidationError
from subtask_scheduler.scheduler.models import (
    OrchestrationPlan,
    PlanPhase,
    SubtaskPlan,
    TaskPriority,
)

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")


class Planner(Protocol):
    """Decomposes a task into phases of subtasks."""

    def plan(
        self,
        *,
        title: str,
        description: str | None,
        priority: TaskPriority,
        estimated_hours: float | None,
    ) -> OrchestrationPlan | Mapping[str, Any] | str:
        """Return a plan document; mappings and JSON text are parsed by the engine."""


class AgentClassifier(Protocol):
    """Suggests an agent role for a task, or None when it has no opinion."""

    def suggest_role(self, *, title: str, description: str | None) -> str | None:
        """Return a role name or None."""


def call_with_timeout(
    func: Callable[[], ResultT],
    *,
    service: str,
    timeout_seconds: float,
) -> ResultT:
    """Run ``func`` on a worker thread and give up after ``timeout_seconds``.

    Timeouts and unexpected collaborator errors become ``ExternalServiceError``;
    scheduler errors raised by the collaborator propagate unchanged. A timed-out
    call keeps running on its thread but its result is discarded.
    """

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{service}-call")
    future = executor.submit(func)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as error:
        raise ExternalServiceError(
            f"{service} did not respond within {timeout_seconds:g}s",
            service=service,
            timed_out=True,
        ) from error
    except SchedulerError:
        raise
    except Exception as error:
        raise ExternalServiceError(f"{service} failed: {error}", service=service) from error
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def parse_plan(raw: OrchestrationPlan | Mapping[str, Any] | str) -> OrchestrationPlan:
    """Convert a planner response into ``OrchestrationPlan``.

    Accepts camelCase (``dependsOn``, ``estimatedHours``, ``agent``) and snake_case keys.
    """

    if isinstance(raw, OrchestrationPlan):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as error:
            raise ValidationError(f"Planner response is not valid JSON: {error}") from error
    if not isinstance(raw, Mapping):
        raise ValidationError("Planner response must be a JSON object")

    phases_raw = raw.get("phases")
    if not isinstance(phases_raw, list):
        raise ValidationError('Invalid plan: "phases" is missing or not a list')

    phases: list[PlanPhase] = []
    for phase_index, phase_raw in enumerate(phases_raw, start=1):
        if not isinstance(phase_raw, Mapping):
            raise ValidationError(f"Invalid plan: phase #{phase_index} is not an object")
        subtasks_raw = phase_raw.get("subtasks", [])
        if not isinstance(subtasks_raw, list):
            raise ValidationError(f'Invalid plan: phase #{phase_index} "subtasks" is not a list')
        phases.append(
            PlanPhase(
                name=str(phase_raw.get("name") or f"Phase {phase_index}"),
                subtasks=[
                    _parse_subtask(subtask_raw, phase_index=phase_index)
                    for subtask_raw in subtasks_raw
                ],
            ),
        )

    recommended = raw.get("recommendedOrder", raw.get("recommended_order", []))
    return OrchestrationPlan(
        analysis=str(raw.get("analysis") or ""),
        phases=phases,
        estimated_total_hours=_optional_float(
            raw.get("estimatedTotalHours", raw.get("estimated_total_hours")),
        ),
        recommended_order=(
            [str(item) for item in recommended] if isinstance(recommended, list) else []
        ),
    )


def _parse_subtask(raw: object, *, phase_index: int) -> SubtaskPlan:
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Invalid plan: subtask in phase #{phase_index} is not an object")
    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError(f"Invalid plan: subtask in phase #{phase_index} has no title")
    depends_on = raw.get("dependsOn", raw.get("depends_on", []))
    if not isinstance(depends_on, list) or not all(isinstance(item, str) for item in depends_on):
        raise ValidationError(f'Invalid plan: "dependsOn" of "{title}" must be a list of titles')
    role = raw.get("agent", raw.get("agent_role"))
    return SubtaskPlan(
        title=title.strip(),
        description=str(raw.get("description") or ""),
        agent_role=str(role).strip().lower() if role else None,
        estimated_hours=_optional_float(raw.get("estimatedHours", raw.get("estimated_hours"))),
        priority=TaskPriority.parse(raw.get("priority")),
        depends_on=[item.strip() for item in depends_on],
    )


def _optional_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


class JsonFilePlanner:
    """Planner that serves a prepared plan document from disk."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def plan(
        self,
        *,
        title: str,
        description: str | None,
        priority: TaskPriority,
        estimated_hours: float | None,
    ) -> Mapping[str, Any]:
        logger.info("Loading plan for %r from %s", title, self.path)
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise ExternalServiceError(
                f"Cannot read plan file {self.path}: {error}",
                service="planner",
            ) from error
        if not isinstance(payload, Mapping):
            raise ValidationError(f"Plan file {self.path} must contain a JSON object")
        return payload


@dataclass(slots=True, frozen=True)
class RoleRule:
    role: str
    patterns: tuple[str, ...]


DEFAULT_ROLE_RULES: tuple[RoleRule, ...] = (
    RoleRule(
        role="reviewer",
        patterns=("test", "review", "security", "audit", "qa", "performance", "coverage"),
    ),
    RoleRule(
        role="designer",
        patterns=("ui", "ux", "css", "layout", "component", "accessibility", "responsive"),
    ),
    RoleRule(
        role="architect",
        patterns=("architecture", "database", "schema", "api", "infrastructure", "migration"),
    ),
    RoleRule(
        role="coordinator",
        patterns=("plan", "roadmap", "document", "coordinate", "spec", "estimate"),
    ),
)


class KeywordAgentClassifier:
    """Deterministic role suggestion: first rule with a matching keyword wins."""

    def __init__(self, rules: tuple[RoleRule, ...] = DEFAULT_ROLE_RULES) -> None:
        self.rules = rules

    def suggest_role(self, *, title: str, description: str | None) -> str | None:
        words = _tokenize(f"{title} {description or ''}")
        for rule in self.rules:
            for pattern in rule.patterns:
                if pattern in words:
                    return rule.role
        return None


def _tokenize(text: str) -> set[str]:
    normalized = "".join(char.lower() if char.isalnum() else " " for char in text)
    words = set(normalized.split())
    return words | {word[:-1] for word in words if len(word) > 3 and word.endswith("s")}
