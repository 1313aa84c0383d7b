"""
Occurrence lifecycle: what completing or restoring a task does, and which tasks are actionable now.

The persisted shape is the legacy pair (completed flag + optional timestamps); the tagged
TaskState is derived from it. Nothing here reads the clock or touches storage: callers pass
"now" and persist the returned copy.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from date_utils import ensure_utc
from recurrence import EXHAUSTED, RepetitionRule, compute_next_occurrence

logger = logging.getLogger("occurrence")


class TaskState(str, Enum):
    ACTIVE = "active"        # actionable now (not completed; no rule, or current occurrence has arrived)
    DORMANT = "dormant"      # recurring, current occurrence still in the future
    COMPLETED = "completed"  # done for good (one-off task, or rule exhausted)


class Task(BaseModel):
    """Scheduling view of a task: only the fields the lifecycle reads or writes."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    id: str | None = None
    due_date: datetime | None = None
    next_due_at: datetime | None = None
    completed: bool = False
    completed_at: datetime | None = None
    recurrence: RepetitionRule | None = None

    @field_validator("due_date", "next_due_at", "completed_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None


def initial_next_due_at(recurrence: RepetitionRule | None, now: datetime) -> datetime | None:
    """Anchor for a newly created (or newly repeating) task: now, so the first occurrence is actionable."""
    return ensure_utc(now) if recurrence is not None else None


def _mark_completed(task: Task, now: datetime) -> Task:
    return task.model_copy(update={"completed": True, "completed_at": now, "next_due_at": None})


def complete_task(task: Task, now: datetime) -> Task:
    """
    Return the task as it should be after the user marks it done at `now`.

    One-off task: completed with completed_at=now.
    Recurring task: next_due_at advances past now and the task stays not completed,
    with no completion timestamp. If the rule is exhausted it completes like a one-off task.
    Completing an already completed task changes nothing.
    """
    now = ensure_utc(now)
    if task.completed:
        return task
    if task.recurrence is None:
        return _mark_completed(task, now)
    basis = task.next_due_at or task.due_date or now
    next_at = compute_next_occurrence(basis, task.recurrence, now)
    if next_at is EXHAUSTED:
        logger.info("[occurrence] task %s recurrence exhausted (basis %s)", task.id, basis.isoformat())
        return _mark_completed(task, now)
    logger.debug("[occurrence] task %s advanced %s -> %s", task.id, basis.isoformat(), next_at.isoformat())
    return task.model_copy(update={"next_due_at": next_at, "completed": False, "completed_at": None})


def restore_task(task: Task) -> Task:
    """Undo a completion. Advancing a recurring occurrence cannot be undone."""
    return task.model_copy(update={"completed": False, "completed_at": None})


def is_actionable(task: Task, now: datetime) -> bool:
    """
    False only for a recurring task whose current occurrence is still in the future.
    One-off tasks are always actionable (due_date is informational); completed filtering is the caller's concern.
    """
    if task.recurrence is None or task.next_due_at is None:
        return True
    return task.next_due_at <= ensure_utc(now)


def task_state(task: Task, now: datetime) -> TaskState:
    if task.completed:
        return TaskState.COMPLETED
    if not is_actionable(task, now):
        return TaskState.DORMANT
    return TaskState.ACTIVE


def filter_actionable(tasks: Iterable[Task], now: datetime) -> list[Task]:
    return [t for t in tasks if is_actionable(t, now)]


def count_states(tasks: Iterable[Task], now: datetime) -> dict[TaskState, int]:
    """Number of tasks per state; every state is present (zero when empty)."""
    counts = Counter(task_state(t, now) for t in tasks)
    return {state: counts.get(state, 0) for state in TaskState}
