"""Persistence for controller state, approval requests and action logs."""

import json
import sqlite3
import uuid
from dataclasses import asdict
from datetime import datetime

from task_controller.db.models import (
    ActionLog,
    ApprovalRequest,
    ControllerState,
    DailyTokenUsage,
    ProgressState,
    TokenUsage,
    UsageLimitConfig,
)

MAX_ACTION_LOGS = 1000


# ── Controller state snapshot ───────────────────────────────────────────────


def load_state(db: sqlite3.Connection) -> ControllerState | None:
    """Load the persisted controller state, or None if never saved."""
    row = db.execute("SELECT data FROM controller_state WHERE id = 1").fetchone()
    if not row:
        return None
    return state_from_dict(json.loads(row["data"]))


def save_state(db: sqlite3.Connection, state: ControllerState):
    db.execute(
        """INSERT INTO controller_state (id, data, updated_at) VALUES (1, ?, datetime('now'))
           ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at""",
        (json.dumps(state_to_dict(state)),),
    )
    db.commit()


def state_to_dict(state: ControllerState) -> dict:
    return _jsonable(asdict(state))


def state_from_dict(data: dict) -> ControllerState:
    progress = data.get("current_progress")
    usage = data.get("token_usage") or {}
    return ControllerState(
        status=data.get("status", "idle"),
        current_task_id=data.get("current_task_id"),
        current_action=data.get("current_action"),
        started_at=_parse_dt(data.get("started_at")),
        processed_count=data.get("processed_count", 0),
        approved_count=data.get("approved_count", 0),
        rejected_count=data.get("rejected_count", 0),
        error_count=data.get("error_count", 0),
        current_progress=(
            ProgressState(
                phase=progress["phase"],
                step=progress["step"],
                total_steps=progress["total_steps"],
                step_description=progress["step_description"],
                started_at=_parse_dt(progress["started_at"]),
            )
            if progress
            else None
        ),
        token_usage=TokenUsage(
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            limit=usage.get("limit", 100_000),
            reset_at=_parse_dt(usage.get("reset_at")),
        ),
        usage_limit_config=UsageLimitConfig(**(data.get("usage_limit_config") or {})),
        daily_token_usage=DailyTokenUsage(**(data.get("daily_token_usage") or {})),
        usage_limit_status=data.get("usage_limit_status", "ok"),
        paused_due_to_limit=data.get("paused_due_to_limit", False),
    )


# ── Approval queue ──────────────────────────────────────────────────────────


def add_approval_request(
    db: sqlite3.Connection,
    task_id: str,
    task_title: str,
    action_type: str,
    description: str,
    details: str,
) -> ApprovalRequest:
    request_id = uuid.uuid4().hex[:12]
    db.execute(
        """INSERT INTO approval_requests
           (id, task_id, task_title, action_type, description, details, status, created_at)
           VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)""",
        (request_id, task_id, task_title, action_type, description, details,
         datetime.now().isoformat()),
    )
    db.commit()
    return get_approval_request(db, request_id)


def get_approval_request(db: sqlite3.Connection, request_id: str) -> ApprovalRequest | None:
    row = db.execute(
        "SELECT * FROM approval_requests WHERE id = ?", (request_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_request(row)


def list_approval_requests(
    db: sqlite3.Connection,
    status: str | None = None,
) -> list[ApprovalRequest]:
    query = "SELECT * FROM approval_requests"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at ASC"
    return [_row_to_request(r) for r in db.execute(query, params).fetchall()]


def resolve_approval_request(
    db: sqlite3.Connection,
    request_id: str,
    status: str,
    reason: str | None = None,
) -> ApprovalRequest | None:
    """Move a pending request to approved/rejected. None if not pending."""
    cur = db.execute(
        """UPDATE approval_requests SET status = ?, reason = ?, resolved_at = ?
           WHERE id = ? AND status = 'pending'""",
        (status, reason, datetime.now().isoformat(), request_id),
    )
    db.commit()
    if cur.rowcount == 0:
        return None
    return get_approval_request(db, request_id)


def has_pending_request(db: sqlite3.Connection, task_id: str) -> bool:
    row = db.execute(
        "SELECT 1 FROM approval_requests WHERE task_id = ? AND status = 'pending'",
        (task_id,),
    ).fetchone()
    return row is not None


# ── Action logs ─────────────────────────────────────────────────────────────


def add_action_log(
    db: sqlite3.Connection,
    task_id: str,
    task_title: str,
    action_type: str,
    description: str,
    auto_approved: bool,
    result: str,
    output: str | None = None,
    duration: float = 0.0,
) -> ActionLog:
    """Append an action log entry, keeping only the newest MAX_ACTION_LOGS."""
    cur = db.execute(
        """INSERT INTO action_logs
           (task_id, task_title, action_type, description, auto_approved,
            result, output, duration, timestamp)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (task_id, task_title, action_type, description, int(auto_approved),
         result, output, duration, datetime.now().isoformat()),
    )
    db.execute(
        "DELETE FROM action_logs WHERE id <= ?", (cur.lastrowid - MAX_ACTION_LOGS,)
    )
    db.commit()
    row = db.execute("SELECT * FROM action_logs WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_action_log(row)


def list_action_logs(db: sqlite3.Connection, limit: int | None = None) -> list[ActionLog]:
    """Action logs, most recent first."""
    query = "SELECT * FROM action_logs ORDER BY id DESC"
    params: list = []
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    return [_row_to_action_log(r) for r in db.execute(query, params).fetchall()]


# ── Row helpers ─────────────────────────────────────────────────────────────


def _row_to_request(row: sqlite3.Row) -> ApprovalRequest:
    return ApprovalRequest(
        id=row["id"],
        task_id=row["task_id"],
        task_title=row["task_title"],
        action_type=row["action_type"],
        description=row["description"],
        details=row["details"],
        status=row["status"],
        reason=row["reason"],
        created_at=_parse_dt(row["created_at"]),
        resolved_at=_parse_dt(row["resolved_at"]),
    )


def _row_to_action_log(row: sqlite3.Row) -> ActionLog:
    return ActionLog(
        id=row["id"],
        task_id=row["task_id"],
        task_title=row["task_title"],
        action_type=row["action_type"],
        description=row["description"],
        auto_approved=bool(row["auto_approved"]),
        result=row["result"],
        output=row["output"],
        duration=row["duration"],
        timestamp=_parse_dt(row["timestamp"]),
    )


def _jsonable(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def to_jsonable(obj) -> dict:
    """Dataclass to a JSON-safe dict (datetimes as ISO strings)."""
    return _jsonable(asdict(obj))


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
