"""Task selection, retry backoff and dependency reconciliation.

Everything here is a pure function over a task list and a point in time;
persistence lives in ``task_controller.core.tasks``.
"""

from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timedelta

from task_controller.db.models import Task

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

RETRY_BASE_DELAY = timedelta(minutes=1)
RETRY_MAX_DELAY = timedelta(minutes=16)

# Statuses reconcile_blocked never touches.
_SETTLED_STATUSES = {"done", "in_progress", "failed"}


def completed_ids(tasks: Iterable[Task]) -> set[str]:
    return {t.id for t in tasks if t.status == "done"}


def has_unfinished_dependencies(task: Task, completed: set[str]) -> bool:
    return any(dep_id not in completed for dep_id in task.blocked_by)


def is_executable(task: Task, now: datetime, completed: set[str]) -> bool:
    """True if the task can be dispatched right now."""
    if task.status != "todo":
        return False
    if has_unfinished_dependencies(task, completed):
        return False
    if task.next_retry_at and task.next_retry_at > now:
        return False
    if task.scheduled_at and task.scheduled_at > now:
        return False
    return True


def select_next(tasks: list[Task], now: datetime) -> Task | None:
    """Pick the highest-priority executable task, oldest first on ties."""
    completed = completed_ids(tasks)
    executable = [t for t in tasks if is_executable(t, now, completed)]
    if not executable:
        return None
    executable.sort(
        key=lambda t: (PRIORITY_ORDER.get(t.priority, 1), t.created_at or datetime.min)
    )
    return executable[0]


def next_wake_time(tasks: list[Task], now: datetime) -> datetime | None:
    """Earliest moment a waiting task becomes executable.

    Returns None when a task is executable now, or when no todo task has a
    predictable wake time (tasks blocked on unfinished dependencies are
    ignored).
    """
    completed = completed_ids(tasks)
    next_time: datetime | None = None

    for task in tasks:
        if task.status != "todo":
            continue
        if has_unfinished_dependencies(task, completed):
            continue

        gates = [
            t for t in (task.next_retry_at, task.scheduled_at) if t is not None and t > now
        ]
        if not gates:
            return None

        ready_at = max(gates)
        if next_time is None or ready_at < next_time:
            next_time = ready_at

    return next_time


def calculate_retry_delay(retry_count: int) -> timedelta:
    """Backoff before attempt ``retry_count`` + 1: 1, 2, 4, 8, 16, 16... minutes."""
    exponent = max(retry_count - 1, 0)
    if exponent >= 5:
        return RETRY_MAX_DELAY
    return min(RETRY_BASE_DELAY * (2 ** exponent), RETRY_MAX_DELAY)


def schedule_retry(task: Task, error: str, now: datetime) -> Task:
    """Return a copy of ``task`` after a failed attempt."""
    retry_count = task.retry_count + 1

    if retry_count >= task.max_retries:
        return replace(
            task,
            status="failed",
            retry_count=retry_count,
            last_error=error,
            last_attempt_at=now,
            next_retry_at=None,
        )

    return replace(
        task,
        status="todo",
        retry_count=retry_count,
        last_error=error,
        last_attempt_at=now,
        next_retry_at=now + calculate_retry_delay(retry_count),
    )


def reconcile_blocked(tasks: list[Task]) -> list[tuple[str, str]]:
    """Status changes needed to keep ``blocked`` in sync with dependencies."""
    completed = completed_ids(tasks)
    changes = []
    for task in tasks:
        if task.status in _SETTLED_STATUSES:
            continue
        unfinished = has_unfinished_dependencies(task, completed)
        if unfinished and task.status != "blocked":
            changes.append((task.id, "blocked"))
        elif not unfinished and task.status == "blocked":
            changes.append((task.id, "todo"))
    return changes
