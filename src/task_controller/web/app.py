"""HTTP control API for the task controller."""

import contextlib
import logging
from datetime import datetime

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from task_controller.config import get_config
from task_controller.core import activity as activity_mod
from task_controller.core import state as state_mod
from task_controller.core import tasks as tasks_mod
from task_controller.core.controller import Controller, build_controller
from task_controller.core.state import state_to_dict, to_jsonable
from task_controller.db.engine import get_db
from task_controller.db.models import TASK_STATUSES
from task_controller.integrations.slack import SlackRelay

logger = logging.getLogger(__name__)

_COMMANDS = {"activate", "deactivate", "pause", "resume"}


def _controller(request: Request) -> Controller:
    return request.app.state.controller


def _db(request: Request):
    return get_db(_controller(request).db_path)


def _not_found(what: str) -> JSONResponse:
    return JSONResponse({"error": f"{what} not found"}, status_code=404)


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=400)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ── Task handlers ─────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    status = request.query_params.get("status")
    if status and status not in TASK_STATUSES:
        return _bad_request(f"Invalid status: {status}")
    with _db(request) as db:
        tasks = tasks_mod.list_tasks(
            db, status=status, project_id=request.query_params.get("project")
        )
        return JSONResponse([to_jsonable(t) for t in tasks])


async def api_create_task(request: Request):
    body = await _json_body(request)
    title = (body.get("title") or "").strip()
    if not title:
        return _bad_request("title is required")
    try:
        scheduled_at = body.get("scheduled_at")
        with _db(request) as db:
            task = tasks_mod.create_task(
                db,
                title,
                description=body.get("description", ""),
                priority=body.get("priority", "medium"),
                project_id=body.get("project_id"),
                project_name=body.get("project_name"),
                max_retries=int(body.get("max_retries", 3)),
                blocked_by=body.get("blocked_by") or None,
                scheduled_at=datetime.fromisoformat(scheduled_at) if scheduled_at else None,
            )
    except (TypeError, ValueError) as e:
        return _bad_request(str(e))
    _controller(request).wake()
    return JSONResponse(to_jsonable(task), status_code=201)


async def api_task_stats(request: Request):
    with _db(request) as db:
        return JSONResponse(to_jsonable(tasks_mod.get_task_stats(db)))


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    with _db(request) as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return _not_found("Task")
        data = to_jsonable(task)
        data["events"] = [to_jsonable(e) for e in tasks_mod.get_task_events(db, task_id)]
        return JSONResponse(data)


async def api_update_task(request: Request):
    task_id = request.path_params["task_id"]
    patch = await _json_body(request)
    if patch.get("status") == "in_progress":
        return _bad_request("in_progress is set by the controller when it runs a task")
    try:
        with _db(request) as db:
            task = tasks_mod.update_task(db, task_id, **patch)
    except (TypeError, ValueError) as e:
        return _bad_request(str(e))
    if not task:
        return _not_found("Task")
    _controller(request).wake()
    return JSONResponse(to_jsonable(task))


async def api_delete_task(request: Request):
    with _db(request) as db:
        if not tasks_mod.delete_task(db, request.path_params["task_id"]):
            return _not_found("Task")
    return JSONResponse({"deleted": True})


async def api_cancel_task(request: Request):
    cancelled = _controller(request).cancel_task(request.path_params["task_id"])
    return JSONResponse({"cancelled": cancelled})


# ── Controller handlers ───────────────────────────────────────────────────────


async def api_controller_state(request: Request):
    return JSONResponse(state_to_dict(_controller(request).get_state()))


async def api_controller_command(request: Request):
    command = request.path_params["command"]
    if command not in _COMMANDS:
        return _not_found("Command")
    controller = _controller(request)
    changed = await run_in_threadpool(getattr(controller, command))
    return JSONResponse({
        "changed": changed,
        "state": state_to_dict(controller.get_state()),
    })


async def api_list_approvals(request: Request):
    with _db(request) as db:
        requests = state_mod.list_approval_requests(
            db, status=request.query_params.get("status")
        )
        return JSONResponse([to_jsonable(r) for r in requests])


async def api_approve(request: Request):
    result = _controller(request).approve_request(request.path_params["request_id"])
    if result is None:
        return _not_found("Pending approval request")
    return JSONResponse(to_jsonable(result))


async def api_reject(request: Request):
    body = await _json_body(request)
    result = _controller(request).reject_request(
        request.path_params["request_id"], body.get("reason")
    )
    if result is None:
        return _not_found("Pending approval request")
    return JSONResponse(to_jsonable(result))


def _limit(request: Request, default: int) -> int | None:
    try:
        return int(request.query_params.get("limit", default))
    except ValueError:
        return None


async def api_action_logs(request: Request):
    limit = _limit(request, 50)
    if limit is None:
        return _bad_request("limit must be an integer")
    logs = _controller(request).get_action_logs(limit)
    return JSONResponse([to_jsonable(log) for log in logs])


async def api_activity(request: Request):
    params = request.query_params
    limit = _limit(request, 100)
    if limit is None:
        return _bad_request("limit must be an integer")
    with _db(request) as db:
        entries = activity_mod.list_activity(
            db,
            category=params.get("category"),
            task_id=params.get("task_id"),
            limit=limit,
        )
        return JSONResponse([to_jsonable(e) for e in entries])


async def api_usage(request: Request):
    controller = _controller(request)
    state = controller.get_state()
    return JSONResponse({
        "percentages": controller.get_usage_percentages(),
        "status": state.usage_limit_status,
        "paused_due_to_limit": state.paused_due_to_limit,
        "token_usage": to_jsonable(state.token_usage),
        "daily_token_usage": to_jsonable(state.daily_token_usage),
        "config": to_jsonable(state.usage_limit_config),
    })


async def api_update_usage_config(request: Request):
    body = await _json_body(request)
    try:
        state = _controller(request).update_usage_limit_config(**body)
    except (TypeError, ValueError) as e:
        return _bad_request(str(e))
    return JSONResponse(to_jsonable(state.usage_limit_config))


async def api_reset_usage(request: Request):
    state = _controller(request).reset_token_usage()
    return JSONResponse(to_jsonable(state.token_usage))


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(controller: Controller | None = None, run_controller: bool = False) -> Starlette:
    controller = controller or build_controller()

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        if run_controller:
            controller.start()
            logger.info("Controller driver started with API server")
        try:
            yield
        finally:
            if run_controller:
                await run_in_threadpool(controller.stop)

    routes = [
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/stats", api_task_stats, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/cancel", api_cancel_task, methods=["POST"]),
        Route("/api/controller", api_controller_state, methods=["GET"]),
        Route("/api/controller/{command}", api_controller_command, methods=["POST"]),
        Route("/api/approvals", api_list_approvals, methods=["GET"]),
        Route("/api/approvals/{request_id}/approve", api_approve, methods=["POST"]),
        Route("/api/approvals/{request_id}/reject", api_reject, methods=["POST"]),
        Route("/api/actions", api_action_logs, methods=["GET"]),
        Route("/api/activity", api_activity, methods=["GET"]),
        Route("/api/usage", api_usage, methods=["GET"]),
        Route("/api/usage/config", api_update_usage_config, methods=["PUT"]),
        Route("/api/usage/reset", api_reset_usage, methods=["POST"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.controller = controller
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    config = get_config()
    controller = build_controller(config)
    relay = SlackRelay.from_config(config)
    if relay:
        relay.attach(controller.events)
    app = create_app(controller, run_controller=True)
    uvicorn.run(app, host=host, port=port)
