"""Dependency-aware orchestration of subtasks.

A parent task is planned into phases of subtasks, the subtasks are persisted with
their dependency edges, and each subtask enters the execution queue only once every
task it depends on is DONE. Completions arrive as ``task_finished`` events; the
reconciler unlocks dependents and closes the orchestration and its parent task.

SQLite is the single source of truth: graphs are rebuilt from a fresh snapshot for
every decision, and the UNIQUE queue constraint is what keeps concurrent unlocking
from producing duplicate queue entries.
"""
