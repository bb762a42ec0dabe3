"""MCP server exposing the task queue and controller tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from mcp.server.fastmcp import Context, FastMCP

from task_controller.config import Config, get_config
from task_controller.core import state as state_mod
from task_controller.core import tasks as tasks_mod
from task_controller.core.controller import Controller, build_controller
from task_controller.db.engine import get_db
from task_controller.integrations.slack import SlackRelay


@dataclass
class AppContext:
    config: Config
    controller: Controller


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Start the controller driver on startup, stop it on shutdown."""
    config = get_config()
    controller = build_controller(config)
    relay = SlackRelay.from_config(config)
    if relay:
        relay.attach(controller.events)
    controller.start()

    try:
        yield AppContext(config=config, controller=controller)
    finally:
        controller.stop()
        controller.events.close()


mcp = FastMCP("task-controller", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _db(ctx: Context):
    return get_db(_ctx(ctx).config.db_path)


def _controller(ctx: Context) -> Controller:
    return _ctx(ctx).controller


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    priority: str = "medium",
    blocked_by: list[str] | None = None,
    project_id: str | None = None,
    max_retries: int = 3,
    scheduled_at: str | None = None,
) -> dict:
    """Queue a task for autonomous execution.

    Priority is one of high, medium, low. blocked_by lists task IDs that must
    be done first. scheduled_at is an ISO timestamp before which the task
    will not start.
    """
    try:
        with _db(ctx) as db:
            task = tasks_mod.create_task(
                db,
                title,
                description,
                priority=priority,
                project_id=project_id,
                max_retries=max_retries,
                blocked_by=blocked_by,
                scheduled_at=datetime.fromisoformat(scheduled_at) if scheduled_at else None,
            )
    except ValueError as e:
        return {"error": str(e)}
    _controller(ctx).wake()
    return state_mod.to_jsonable(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    status: str | None = None,
    project_id: str | None = None,
) -> list[dict]:
    """List tasks, optionally filtered by status and project."""
    with _db(ctx) as db:
        tasks = tasks_mod.list_tasks(db, status=status, project_id=project_id)
    return [state_mod.to_jsonable(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task including its history."""
    with _db(ctx) as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return {"error": f"Task not found: {task_id}"}
        result = state_mod.to_jsonable(task)
        result["events"] = [state_mod.to_jsonable(e) for e in tasks_mod.get_task_events(db, task_id)]
    return result


@mcp.tool()
def delete_task(ctx: Context, task_id: str) -> dict:
    """Delete a task."""
    with _db(ctx) as db:
        if not tasks_mod.delete_task(db, task_id):
            return {"error": f"Task not found: {task_id}"}
    return {"deleted": task_id}


@mcp.tool()
def add_dependency(ctx: Context, task_id: str, depends_on_id: str) -> dict:
    """Make a task wait for another task to be done."""
    try:
        with _db(ctx) as db:
            task = tasks_mod.add_dependency(db, task_id, depends_on_id)
    except ValueError as e:
        return {"error": str(e)}
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return state_mod.to_jsonable(task)


@mcp.tool()
def remove_dependency(ctx: Context, task_id: str, depends_on_id: str) -> dict:
    """Remove a dependency from a task."""
    with _db(ctx) as db:
        task = tasks_mod.remove_dependency(db, task_id, depends_on_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    _controller(ctx).wake()
    return state_mod.to_jsonable(task)


@mcp.tool()
def task_stats(ctx: Context) -> dict:
    """Task counts by status and priority."""
    with _db(ctx) as db:
        return state_mod.to_jsonable(tasks_mod.get_task_stats(db))


# ── Controller Tools ─────────────────────────────────────────────────────────


@mcp.tool()
def controller_status(ctx: Context) -> dict:
    """Current controller state, counters and token usage."""
    controller = _controller(ctx)
    result = state_mod.state_to_dict(controller.get_state())
    result["usage_percentages"] = controller.get_usage_percentages()
    return result


@mcp.tool()
def control_controller(ctx: Context, command: str) -> dict:
    """Send a lifecycle command: activate, pause, resume or deactivate."""
    if command not in ("activate", "pause", "resume", "deactivate"):
        return {"error": f"Unknown command: {command}"}
    controller = _controller(ctx)
    changed = getattr(controller, command)()
    return {"changed": changed, "status": controller.get_state().status}


@mcp.tool()
def cancel_task(ctx: Context, task_id: str) -> dict:
    """Cancel the running execution of a task. The task is marked failed."""
    return {"cancelled": _controller(ctx).cancel_task(task_id)}


@mcp.tool()
def recent_actions(ctx: Context, limit: int = 20) -> list[dict]:
    """Most recent controller actions, newest first."""
    return [state_mod.to_jsonable(log) for log in _controller(ctx).get_action_logs(limit)]


# ── Approval Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def list_approvals(ctx: Context) -> list[dict]:
    """Pending approval requests, oldest first."""
    return [state_mod.to_jsonable(r) for r in _controller(ctx).get_approval_queue()]


@mcp.tool()
def approve_request(ctx: Context, request_id: str) -> dict:
    """Approve a parked action; its task is marked done."""
    request = _controller(ctx).approve_request(request_id)
    if not request:
        return {"error": f"No pending request: {request_id}"}
    return state_mod.to_jsonable(request)


@mcp.tool()
def reject_request(ctx: Context, request_id: str, reason: str | None = None) -> dict:
    """Reject a parked action; its task is marked failed."""
    request = _controller(ctx).reject_request(request_id, reason)
    if not request:
        return {"error": f"No pending request: {request_id}"}
    return state_mod.to_jsonable(request)
