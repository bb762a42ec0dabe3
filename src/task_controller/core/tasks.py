"""Task store operations."""

import re
import sqlite3
from datetime import datetime

from task_controller.core import scheduler
from task_controller.db.models import TASK_PRIORITIES, TASK_STATUSES, Task, TaskEvent, TaskStats

_DATETIME_FIELDS = {"last_attempt_at", "next_retry_at", "scheduled_at"}
_UPDATABLE_FIELDS = {
    "title",
    "description",
    "status",
    "priority",
    "project_id",
    "project_name",
    "retry_count",
    "max_retries",
    "last_error",
    "blocked_by",
} | _DATETIME_FIELDS


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    existing = db.execute(
        "SELECT id FROM tasks WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def _validate(status: str | None = None, priority: str | None = None):
    if status is not None and status not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    if priority is not None and priority not in TASK_PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str = "",
    priority: str = "medium",
    status: str = "todo",
    project_id: str | None = None,
    project_name: str | None = None,
    max_retries: int = 3,
    blocked_by: list[str] | None = None,
    scheduled_at: datetime | None = None,
    now: datetime | None = None,
) -> Task:
    """Create a new task."""
    _validate(status, priority)
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    for dep_id in blocked_by or []:
        if not _exists(db, dep_id):
            raise ValueError(f"Dependency task not found: {dep_id}")

    task_id = _unique_id(db, slugify(title))
    created = (now or datetime.now()).isoformat()

    db.execute(
        """INSERT INTO tasks
           (id, title, description, status, priority, project_id, project_name,
            max_retries, scheduled_at, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id, title, description, status, priority, project_id, project_name,
            max_retries, _iso(scheduled_at), created, created,
        ),
    )

    for dep_id in dict.fromkeys(blocked_by or []):
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )

    _log_event(db, task_id, "created", None, status)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.blocked_by = _dependencies(db, task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    status: str | None = None,
    project_id: str | None = None,
) -> list[Task]:
    """List tasks in creation order with optional filters."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if status:
        query += " AND status = ?"
        params.append(status)

    if project_id is not None:
        query += " AND project_id = ?"
        params.append(project_id)

    query += " ORDER BY created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()

    deps: dict[str, list[str]] = {}
    for d in db.execute("SELECT task_id, depends_on_task_id FROM task_dependencies ORDER BY rowid"):
        deps.setdefault(d["task_id"], []).append(d["depends_on_task_id"])

    tasks = []
    for row in rows:
        task = _row_to_task(row)
        task.blocked_by = deps.get(task.id, [])
        tasks.append(task)
    return tasks


def list_tasks_by_project(db: sqlite3.Connection, project_id: str) -> list[Task]:
    return list_tasks(db, project_id=project_id)


def update_task(db: sqlite3.Connection, task_id: str, **patch) -> Task | None:
    """Apply a partial update to a task. Returns the updated task."""
    unknown = set(patch) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
    _validate(patch.get("status"), patch.get("priority"))

    task = get_task(db, task_id)
    if not task:
        return None

    blocked_by = patch.pop("blocked_by", None)
    if blocked_by is not None:
        for dep_id in blocked_by:
            if dep_id == task_id:
                raise ValueError("A task cannot depend on itself")
            if not _exists(db, dep_id):
                raise ValueError(f"Dependency task not found: {dep_id}")

    now = datetime.now()
    updates = {}
    for key, value in patch.items():
        updates[key] = _iso(value) if key in _DATETIME_FIELDS else value

    new_status = patch.get("status")
    if new_status == "done" and task.status != "done":
        updates["completed_at"] = now.isoformat()
    elif new_status is not None and new_status != "done":
        updates["completed_at"] = None

    updates["updated_at"] = now.isoformat()
    set_parts = [f"{k} = ?" for k in updates]
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [task_id],
    )

    if new_status is not None and new_status != task.status:
        _log_event(db, task_id, "status_changed", task.status, new_status)

    if blocked_by is not None:
        db.execute("DELETE FROM task_dependencies WHERE task_id = ?", (task_id,))
        for dep_id in dict.fromkeys(blocked_by):
            db.execute(
                "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
                (task_id, dep_id),
            )
        _log_event(db, task_id, "dependencies_changed", ",".join(task.blocked_by), ",".join(blocked_by))

    db.commit()
    return get_task(db, task_id)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task and any dependency edges touching it."""
    if not _exists(db, task_id):
        return False

    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? OR depends_on_task_id = ?",
        (task_id, task_id),
    )
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def get_task_stats(db: sqlite3.Connection) -> TaskStats:
    """Aggregate task counts by status and priority."""
    stats = TaskStats()
    for row in db.execute("SELECT status, priority, COUNT(*) AS n FROM tasks GROUP BY status, priority"):
        stats.total += row["n"]
        setattr(stats, row["status"], getattr(stats, row["status"]) + row["n"])
        stats.by_priority[row["priority"]] += row["n"]
    return stats


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Add a dependency to an existing task."""
    task = get_task(db, task_id)
    if not task:
        return None
    if depends_on_id in task.blocked_by:
        return task  # Already exists
    return update_task(db, task_id, blocked_by=task.blocked_by + [depends_on_id])


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Remove a dependency from a task."""
    task = get_task(db, task_id)
    if not task:
        return None
    if depends_on_id not in task.blocked_by:
        return task
    return update_task(
        db, task_id, blocked_by=[d for d in task.blocked_by if d != depends_on_id]
    )


def apply_retry(
    db: sqlite3.Connection,
    task_id: str,
    error: str,
    now: datetime | None = None,
) -> Task | None:
    """Record a failed attempt, scheduling a backoff retry or failing the task."""
    task = get_task(db, task_id)
    if not task:
        return None
    retried = scheduler.schedule_retry(task, error, now or datetime.now())
    return update_task(
        db,
        task_id,
        status=retried.status,
        retry_count=retried.retry_count,
        last_error=retried.last_error,
        last_attempt_at=retried.last_attempt_at,
        next_retry_at=retried.next_retry_at,
    )


def update_blocked_status(db: sqlite3.Connection) -> int:
    """Sync blocked/todo status with dependency completion. Returns writes made."""
    changes = scheduler.reconcile_blocked(list_tasks(db))
    for task_id, status in changes:
        update_task(db, task_id, status=status)
    return len(changes)


def build_task_prompt(task: Task) -> str:
    """Build the agent prompt for a task."""
    parts = [f"Task: {task.title}"]
    if task.description:
        parts.append(f"\n{task.description}")
    if task.project_name:
        parts.append(f"\nProject: {task.project_name}")
    return "\n".join(parts)


def _exists(db: sqlite3.Connection, task_id: str) -> bool:
    return db.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,)).fetchone() is not None


def _dependencies(db: sqlite3.Connection, task_id: str) -> list[str]:
    rows = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ? ORDER BY rowid",
        (task_id,),
    ).fetchall()
    return [r["depends_on_task_id"] for r in rows]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        """INSERT INTO task_events (task_id, event_type, old_value, new_value, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (task_id, event_type, old_value, new_value, datetime.now().isoformat()),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"],
        project_id=row["project_id"],
        project_name=row["project_name"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        last_error=row["last_error"],
        last_attempt_at=_parse_dt(row["last_attempt_at"]),
        next_retry_at=_parse_dt(row["next_retry_at"]),
        scheduled_at=_parse_dt(row["scheduled_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _iso(val: datetime | str | None) -> str | None:
    if val is None:
        return None
    if isinstance(val, str):
        return datetime.fromisoformat(val).isoformat()
    return val.isoformat()


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
