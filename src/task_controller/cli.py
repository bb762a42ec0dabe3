"""CLI entry point for the task controller."""

import json
import logging
import sys
import time

import click

from task_controller.config import get_config
from task_controller.core import activity as activity_mod
from task_controller.core import state as state_mod
from task_controller.core import tasks as tasks_mod
from task_controller.core.controller import build_controller
from task_controller.db.engine import get_db
from task_controller.db.models import ACTIVITY_CATEGORIES, TASK_PRIORITIES, TASK_STATUSES
from task_controller.integrations.events import EventBus
from task_controller.integrations.slack import SlackRelay


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _controller():
    return build_controller(get_config(), events=EventBus(asynchronous=False))


def _setup_logging():
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
def main():
    """taskctl - Autonomous Task Controller CLI"""
    pass


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage the task queue."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", "-p", default="medium", type=click.Choice(TASK_PRIORITIES), help="Task priority")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--project", default=None, help="Project ID")
@click.option("--project-name", default=None, help="Project display name")
@click.option("--max-retries", default=3, type=int, help="Retries before the task fails")
@click.option("--scheduled-at", default=None, type=click.DateTime(), help="Earliest start time")
def task_add(title, description, priority, depends_on, project, project_name, max_retries, scheduled_at):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None

    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db, title, description,
                priority=priority,
                project_id=project,
                project_name=project_name,
                max_retries=max_retries,
                blocked_by=deps,
                scheduled_at=scheduled_at,
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")
        if task.blocked_by:
            click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")


@task_group.command("list")
@click.option("--status", default=None, type=click.Choice(TASK_STATUSES), help="Filter by status")
@click.option("--project", default=None, help="Filter by project ID")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, project, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, status=status, project_id=project)

    if json_output:
        click.echo(json.dumps([state_mod.to_jsonable(t) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    status_icons = {
        "todo": "○",
        "in_progress": "●",
        "done": "✓",
        "failed": "✗",
        "blocked": "⊘",
    }

    for task in tasks:
        icon = status_icons.get(task.status, "?")
        deps = f" [blocked by: {', '.join(task.blocked_by)}]" if task.blocked_by else ""
        retry = f" [retry {task.retry_count}/{task.max_retries}]" if task.retry_count else ""
        click.echo(f"  {icon} [{task.priority}] {task.id}: {task.title} ({task.status}){deps}{retry}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")
        if task.project_id:
            click.echo(f"  Project: {task.project_name or task.project_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.blocked_by:
            click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")
        click.echo(f"  Retries: {task.retry_count}/{task.max_retries}")
        if task.last_error:
            click.echo(f"  Last error: {task.last_error}")
        if task.next_retry_at:
            click.echo(f"  Next retry: {task.next_retry_at}")
        if task.scheduled_at:
            click.echo(f"  Scheduled: {task.scheduled_at}")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")
        if task.completed_at:
            click.echo(f"  Completed: {task.completed_at}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task."""
    with _get_db() as db:
        if not tasks_mod.delete_task(db, task_id):
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
    click.echo(f"Deleted task: {task_id}")


@task_group.command("stats")
def task_stats():
    """Show task counts by status and priority."""
    with _get_db() as db:
        stats = tasks_mod.get_task_stats(db)
    click.echo(f"Total: {stats.total}")
    for status in TASK_STATUSES:
        click.echo(f"  {status}: {getattr(stats, status)}")
    click.echo("By priority:")
    for priority in TASK_PRIORITIES:
        click.echo(f"  {priority}: {stats.by_priority.get(priority, 0)}")


@task_group.command("reconcile")
def task_reconcile():
    """Sync blocked/todo status with dependency completion."""
    with _get_db() as db:
        changed = tasks_mod.update_blocked_status(db)
    click.echo(f"Updated {changed} task(s)")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_add_dep(task_id, depends_on_id):
    """Add a dependency to a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_dependency(db, task_id, depends_on_id)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Added dependency: {task_id} now depends on {depends_on_id}")
        click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")


@task_group.command("rm-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_remove_dep(task_id, depends_on_id):
    """Remove a dependency from a task."""
    with _get_db() as db:
        task = tasks_mod.remove_dependency(db, task_id, depends_on_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Removed dependency: {task_id} no longer depends on {depends_on_id}")
        if task.blocked_by:
            click.echo(f"  Remaining deps: {', '.join(task.blocked_by)}")
        else:
            click.echo("  No remaining dependencies")


# ── Controller Commands ──────────────────────────────────────────────────────


@main.group("controller")
def controller_group():
    """Run and steer the autonomous controller."""
    pass


@controller_group.command("run")
@click.option("--activate/--no-activate", default=True, help="Start processing immediately")
def controller_run(activate):
    """Run the controller loop in the foreground until interrupted."""
    _setup_logging()
    config = get_config()
    controller = build_controller(config)
    relay = SlackRelay.from_config(config)
    if relay:
        relay.attach(controller.events)
        click.echo(f"Relaying approvals to Slack channel {config.slack_channel}")

    controller.start()
    if activate:
        controller.activate()
    click.echo(f"Controller running (db: {config.db_path}). Press Ctrl-C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("Stopping controller...")
    finally:
        controller.stop(timeout=config.execution_timeout)
        controller.events.close()


@controller_group.command("status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def controller_status(json_output):
    """Show controller state."""
    state = _controller().get_state()
    if json_output:
        click.echo(json.dumps(state_mod.state_to_dict(state), indent=2))
        return

    click.echo(f"Status: {state.status}")
    if state.current_task_id:
        click.echo(f"  Current task: {state.current_task_id}")
    if state.current_action:
        click.echo(f"  Action: {state.current_action}")
    if state.current_progress:
        p = state.current_progress
        click.echo(f"  Progress: [{p.step}/{p.total_steps}] {p.phase} - {p.step_description}")
    if state.started_at:
        click.echo(f"  Started: {state.started_at}")
    click.echo(
        f"  Processed: {state.processed_count}  Approved: {state.approved_count}  "
        f"Rejected: {state.rejected_count}  Errors: {state.error_count}"
    )
    click.echo(f"  Usage: {state.usage_limit_status}"
               + (" (paused by limit)" if state.paused_due_to_limit else ""))


def _command(name: str, done: str, noop: str):
    changed = getattr(_controller(), name)()
    click.echo(done if changed else noop)


@controller_group.command("activate")
def controller_activate():
    """Start a new session (idle -> running)."""
    _command("activate", "Controller activated", "Controller is not idle")


@controller_group.command("pause")
def controller_pause():
    """Pause after the current execution."""
    _command("pause", "Controller paused", "Controller is not running")


@controller_group.command("resume")
def controller_resume():
    """Resume a paused controller."""
    _command("resume", "Controller resumed", "Controller not resumed (not paused or still over the usage limit)")


@controller_group.command("deactivate")
def controller_deactivate():
    """Wind down and return to idle."""
    _command("deactivate", "Controller deactivated", "Controller is already idle")


@controller_group.command("usage")
@click.option("--reset", is_flag=True, help="Start fresh hourly and daily windows")
def controller_usage(reset):
    """Show token usage against the configured budget."""
    controller = _controller()
    if reset:
        controller.reset_token_usage()
        click.echo("Token usage reset")
    state = controller.get_state()
    pcts = controller.get_usage_percentages()
    hourly, daily = state.token_usage, state.daily_token_usage
    limits = state.usage_limit_config
    click.echo(f"Status: {state.usage_limit_status}")
    click.echo(
        f"  Hourly: {hourly.input_tokens + hourly.output_tokens}/{limits.max_tokens_per_hour} "
        f"({pcts['hourly']:.1f}%) resets {hourly.reset_at}"
    )
    click.echo(
        f"  Daily: {daily.input + daily.output}/{limits.max_tokens_per_day} "
        f"({pcts['daily']:.1f}%) for {daily.date}"
    )


@controller_group.command("limits")
@click.option("--hourly", type=int, default=None, help="Max tokens per hour")
@click.option("--daily", type=int, default=None, help="Max tokens per day")
@click.option("--pause-threshold", type=float, default=None, help="Pause at this fraction of budget")
@click.option("--warning-threshold", type=float, default=None, help="Warn at this fraction of budget")
@click.option("--auto-resume/--no-auto-resume", default=None, help="Resume when the hourly window resets")
def controller_limits(hourly, daily, pause_threshold, warning_threshold, auto_resume):
    """Show or change usage limit settings."""
    changes = {
        k: v for k, v in {
            "max_tokens_per_hour": hourly,
            "max_tokens_per_day": daily,
            "pause_threshold": pause_threshold,
            "warning_threshold": warning_threshold,
            "auto_resume_on_reset": auto_resume,
        }.items() if v is not None
    }
    controller = _controller()
    if changes:
        try:
            state = controller.update_usage_limit_config(**changes)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    else:
        state = controller.get_state()
    for key, value in state_mod.to_jsonable(state.usage_limit_config).items():
        click.echo(f"  {key}: {value}")


# ── Approval Commands ────────────────────────────────────────────────────────


@main.group("approval")
def approval_group():
    """Review actions awaiting human approval."""
    pass


@approval_group.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include resolved requests")
def approval_list(show_all):
    """List approval requests."""
    with _get_db() as db:
        requests = state_mod.list_approval_requests(db, status=None if show_all else "pending")
    if not requests:
        click.echo("No approval requests.")
        return
    for r in requests:
        click.echo(f"  [{r.status}] {r.id} {r.action_type}: {r.description}")
        if r.reason:
            click.echo(f"      Reason: {r.reason}")


@approval_group.command("approve")
@click.argument("request_id")
def approval_approve(request_id):
    """Approve a pending request."""
    request = _controller().approve_request(request_id)
    if not request:
        click.echo(f"No pending request: {request_id}", err=True)
        sys.exit(1)
    click.echo(f"Approved {request.id} ({request.task_id})")


@approval_group.command("reject")
@click.argument("request_id")
@click.option("--reason", "-r", default=None, help="Why the action was rejected")
def approval_reject(request_id, reason):
    """Reject a pending request."""
    request = _controller().reject_request(request_id, reason)
    if not request:
        click.echo(f"No pending request: {request_id}", err=True)
        sys.exit(1)
    click.echo(f"Rejected {request.id} ({request.task_id})")


# ── Logs ──────────────────────────────────────────────────────────────────────


@main.command("actions")
@click.option("--limit", "-n", default=20, type=int, help="Number of entries")
def actions_cmd(limit):
    """Show recent controller actions."""
    with _get_db() as db:
        logs = state_mod.list_action_logs(db, limit)
    if not logs:
        click.echo("No actions recorded.")
        return
    for log in logs:
        mode = "auto" if log.auto_approved else "manual"
        click.echo(
            f"  [{log.timestamp:%Y-%m-%d %H:%M:%S}] {log.result.upper()} {log.action_type} "
            f"({mode}) {log.task_id}: {log.description}"
        )


@main.command("activity")
@click.option("--category", default=None, type=click.Choice(ACTIVITY_CATEGORIES), help="Filter by category")
@click.option("--task", "task_id", default=None, help="Filter by task ID")
@click.option("--limit", "-n", default=20, type=int, help="Number of entries")
def activity_cmd(category, task_id, limit):
    """Show the activity audit log."""
    with _get_db() as db:
        entries = activity_mod.list_activity(db, category=category, task_id=task_id, limit=limit)
    if not entries:
        click.echo("No activity recorded.")
        return
    for e in entries:
        task = f" {e.task_id}" if e.task_id else ""
        click.echo(f"  [{e.timestamp:%Y-%m-%d %H:%M:%S}] {e.category}/{e.action}{task}")


# ── Servers ──────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the controller with its HTTP control API."""
    from task_controller.web.app import run_server

    _setup_logging()
    click.echo(f"Serving control API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from task_controller.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
