"""Cross-cutting audit trail of controller and operator activity."""

import json
import sqlite3
from datetime import datetime

from task_controller.db.models import ACTIVITY_CATEGORIES, ActivityEntry

MAX_ENTRIES = 10_000


def log_activity(
    db: sqlite3.Connection,
    category: str,
    action: str,
    details: dict | None = None,
    task_id: str | None = None,
    project_id: str | None = None,
    tokens: tuple[int, int] | None = None,
    duration: float | None = None,
) -> ActivityEntry:
    """Append an activity entry, trimming the oldest beyond MAX_ENTRIES."""
    if category not in ACTIVITY_CATEGORIES:
        raise ValueError(f"Invalid activity category: {category}")

    input_tokens, output_tokens = tokens if tokens else (None, None)
    cur = db.execute(
        """INSERT INTO activity_log
           (timestamp, category, action, details, task_id, project_id,
            input_tokens, output_tokens, duration)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            datetime.now().isoformat(),
            category,
            action,
            json.dumps(details or {}, default=str),
            task_id,
            project_id,
            input_tokens,
            output_tokens,
            duration,
        ),
    )
    db.execute(
        "DELETE FROM activity_log WHERE id <= ?",
        (cur.lastrowid - MAX_ENTRIES,),
    )
    db.commit()
    row = db.execute("SELECT * FROM activity_log WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_entry(row)


def list_activity(
    db: sqlite3.Connection,
    category: str | None = None,
    task_id: str | None = None,
    limit: int = 100,
) -> list[ActivityEntry]:
    """List activity entries, newest first."""
    query = "SELECT * FROM activity_log WHERE 1=1"
    params: list = []
    if category:
        query += " AND category = ?"
        params.append(category)
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    return [_row_to_entry(r) for r in db.execute(query, params).fetchall()]


def _row_to_entry(row: sqlite3.Row) -> ActivityEntry:
    return ActivityEntry(
        id=row["id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        category=row["category"],
        action=row["action"],
        details=json.loads(row["details"] or "{}"),
        task_id=row["task_id"],
        project_id=row["project_id"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        duration=row["duration"],
    )
