"""Autonomous task controller.

Drives the select -> execute -> classify -> finalize cycle for one task at a
time, parks risky results for human approval and pauses itself when the
token budget runs low. All state lives in SQLite so CLI, web and MCP
surfaces in other processes see the same controller.
"""

import logging
import threading
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from task_controller.config import Config, get_config
from task_controller.core import activity as activity_mod
from task_controller.core import scheduler
from task_controller.core import state as state_mod
from task_controller.core import tasks as tasks_mod
from task_controller.core.executor import CancellationToken, ClaudeExecutor, ExecutionResult, Executor
from task_controller.core.risk import PatternRiskClassifier, RiskClassifier, RiskDecision
from task_controller.core.usage import UsageLimiter, WindowUpdate, estimate_tokens
from task_controller.db.engine import get_db
from task_controller.db.models import (
    ActionLog,
    ApprovalRequest,
    ControllerState,
    ProgressState,
    Task,
    UsageLimitConfig,
)
from task_controller.integrations import events as ev

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an autonomous engineering agent working through a task queue. "
    "Carry out the task directly when it is straightforward (running tests, "
    "formatting, small edits). Finish with a short summary of what you changed, "
    "including any commits, pushes, deployments or deletions you performed."
)

OUTPUT_PREVIEW_CHARS = 500


class Controller:
    """Single-execution task controller backed by a SQLite database."""

    def __init__(
        self,
        db_path: Path,
        executor: Executor,
        config: Config | None = None,
        classifier: RiskClassifier | None = None,
        events: ev.EventBus | None = None,
        clock=datetime.now,
        poll_interval: float | None = None,
    ):
        self.db_path = Path(db_path)
        self.executor = executor
        self.config = config or get_config()
        self.classifier = classifier or PatternRiskClassifier(
            review_plans=self.config.review_plans
        )
        self.events = events or ev.EventBus()
        self.poll_interval = (
            poll_interval if poll_interval is not None else self.config.poll_interval
        )
        self._now = clock
        self._lock = threading.RLock()
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._settled = threading.Event()
        self._settled.set()
        self._thread: threading.Thread | None = None
        self._in_flight: CancellationToken | None = None
        self._operator_cancelled: set[str] = set()

    # ── State ────────────────────────────────────────────────────────────────

    def get_state(self) -> ControllerState:
        with get_db(self.db_path) as db:
            state = state_mod.load_state(db)
        return state or self._default_state()

    def _default_state(self) -> ControllerState:
        limits = UsageLimitConfig(
            max_tokens_per_hour=self.config.max_tokens_per_hour,
            max_tokens_per_day=self.config.max_tokens_per_day,
            pause_threshold=self.config.pause_threshold,
            warning_threshold=self.config.warning_threshold,
            auto_resume_on_reset=self.config.auto_resume_on_reset,
        )
        limiter = UsageLimiter(limits, clock=self._now)
        return ControllerState(
            usage_limit_config=limits,
            token_usage=limiter.new_hourly_window(),
            daily_token_usage=limiter.new_daily_window(),
        )

    def _mutate_state(self, mutate) -> ControllerState | None:
        """Read-modify-write the snapshot while holding the database write lock.

        ``mutate`` receives the current state and returns the fields to change,
        or None to leave it untouched (in which case None is returned). Other
        processes sharing the database cannot interleave a write between the
        read and the save.
        """
        with self._lock:
            with get_db(self.db_path) as db:
                db.execute("BEGIN IMMEDIATE")
                state = state_mod.load_state(db) or self._default_state()
                changes = mutate(state)
                if changes is None:
                    db.rollback()
                    return None
                state = replace(state, **changes)
                state_mod.save_state(db, state)
        self.events.publish(ev.STATE_CHANGED, state_mod.state_to_dict(state))
        return state

    def _update_state(self, **changes) -> ControllerState:
        return self._mutate_state(lambda state: changes)

    def _set_progress(self, phase: str, step: int, total_steps: int, description: str):
        progress = ProgressState(
            phase=phase,
            step=step,
            total_steps=total_steps,
            step_description=description,
            started_at=self._now(),
        )
        self._update_state(current_progress=progress)
        self.events.publish(ev.PROGRESS_UPDATED, state_mod.to_jsonable(progress))

    def _clear_progress(self, mutate=None, **changes):
        """Drop the progress indicator, applying ``changes`` or ``mutate(state)``."""

        def clear(state: ControllerState):
            updates = dict(changes)
            if mutate is not None:
                updates.update(mutate(state))
            updates["current_progress"] = None
            return updates

        self._mutate_state(clear)
        self.events.publish(ev.PROGRESS_UPDATED, None)

    def get_approval_queue(self) -> list[ApprovalRequest]:
        with get_db(self.db_path) as db:
            return state_mod.list_approval_requests(db, status="pending")

    def get_action_logs(self, limit: int | None = None) -> list[ActionLog]:
        with get_db(self.db_path) as db:
            return state_mod.list_action_logs(db, limit)

    # ── Lifecycle commands ───────────────────────────────────────────────────

    def activate(self) -> bool:
        """idle -> running. Starts a fresh session."""
        with self._lock:
            state = self._mutate_state(
                lambda state: None if state.status != "idle" else {
                    "status": "running",
                    "started_at": self._now(),
                    "current_task_id": None,
                    "current_action": "Starting up...",
                    "current_progress": None,
                    "processed_count": 0,
                    "approved_count": 0,
                    "rejected_count": 0,
                    "error_count": 0,
                    "paused_due_to_limit": False,
                }
            )
            if state is None:
                return False
            self._audit("system", "controller_activated")
        logger.info("Controller activated")
        self._wake.set()
        return True

    def deactivate(self, timeout: float | None = 30.0) -> bool:
        """Any state -> winding_down -> idle, cancelling the in-flight execution.

        When the execution runs in another process, that process's driver
        sees the persisted ``winding_down`` status and cancels it.
        """
        with self._lock:
            token = self._in_flight
            state = self._mutate_state(
                lambda state: None if state.status == "idle" else {
                    "status": "winding_down",
                    "current_action": "Winding down...",
                }
            )
            if state is None:
                return False
            if token is not None:
                token.cancel()
            self._audit("user_action", "controller_deactivated")

        if token is not None and threading.current_thread() is not self._thread:
            if not self._settled.wait(timeout):
                logger.warning("Execution %s did not settle within %ss", token.execution_id, timeout)

        with self._lock:
            if self._in_flight is None:
                # current_progress is only set while some process is executing a task
                self._finish_wind_down(require_settled=True)
        self._wake.set()
        return True

    def _finish_wind_down(self, require_settled: bool = False):
        def mutate(state: ControllerState):
            if state.status != "winding_down":
                return None
            if require_settled and state.current_progress is not None:
                return None
            return {
                "status": "idle",
                "current_task_id": None,
                "current_action": None,
                "current_progress": None,
                "paused_due_to_limit": False,
            }

        if self._mutate_state(mutate) is not None:
            logger.info("Controller idle")

    def pause(self) -> bool:
        """running -> paused. An in-flight execution is allowed to finish."""
        with self._lock:
            state = self._mutate_state(
                lambda state: None if state.status != "running" else {
                    "status": "paused",
                    "current_action": "Paused",
                }
            )
            if state is None:
                return False
            self._audit("user_action", "controller_paused")
        logger.info("Controller paused")
        return True

    def resume(self) -> bool:
        """paused -> running, unless the token budget is still exhausted."""

        def mutate(state: ControllerState):
            if state.status != "paused":
                return None
            changes = {}
            if state.paused_due_to_limit:
                limiter = self._limiter(state)
                update = limiter.roll(state.token_usage, state.daily_token_usage)
                level = limiter.status(
                    limiter.percentages(update.token_usage, update.daily_usage)
                )
                changes.update(
                    token_usage=update.token_usage,
                    daily_token_usage=update.daily_usage,
                    usage_limit_status=level,
                )
                if limiter.should_pause(level):
                    return changes
            changes.update(
                status="running",
                current_action="Resuming...",
                paused_due_to_limit=False,
            )
            return changes

        with self._lock:
            state = self._mutate_state(mutate)
            if state is None:
                return False
            if state.status != "running":
                logger.info("Resume refused: token usage still %s", state.usage_limit_status)
                return False
            self._audit("user_action", "controller_resumed")
        logger.info("Controller resumed")
        self._wake.set()
        return True

    # ── Approvals ────────────────────────────────────────────────────────────

    def approve_request(self, request_id: str) -> ApprovalRequest | None:
        """Approve a pending request: the parked task is finalized as done."""
        with self._lock:
            with get_db(self.db_path) as db:
                request = state_mod.resolve_approval_request(db, request_id, "approved")
                if request is None:
                    return None
                tasks_mod.update_task(db, request.task_id, status="done")
                log = state_mod.add_action_log(
                    db,
                    task_id=request.task_id,
                    task_title=request.task_title,
                    action_type=request.action_type,
                    description=f"Approved: {request.description}",
                    auto_approved=False,
                    result="success",
                    output=request.details[:OUTPUT_PREVIEW_CHARS],
                )
                activity_mod.log_activity(
                    db, "user_action", "approval_approved",
                    {"request_id": request.id, "action_type": request.action_type},
                    task_id=request.task_id,
                )

            self._count_decision("approved_count")

        self.events.publish(ev.ACTION_COMPLETED, state_mod.to_jsonable(log))
        logger.info("Approved request %s for task %s", request.id, request.task_id)
        self._wake.set()
        return request

    def reject_request(self, request_id: str, reason: str | None = None) -> ApprovalRequest | None:
        """Reject a pending request: the parked task fails without retry."""
        with self._lock:
            with get_db(self.db_path) as db:
                request = state_mod.resolve_approval_request(db, request_id, "rejected", reason)
                if request is None:
                    return None
                tasks_mod.update_task(
                    db,
                    request.task_id,
                    status="failed",
                    last_error=f"Rejected: {reason}" if reason else "Rejected by operator",
                )
                suffix = f" - {reason}" if reason else ""
                log = state_mod.add_action_log(
                    db,
                    task_id=request.task_id,
                    task_title=request.task_title,
                    action_type=request.action_type,
                    description=f"Rejected: {request.description}{suffix}",
                    auto_approved=False,
                    result="skipped",
                    output=reason,
                )
                activity_mod.log_activity(
                    db, "user_action", "approval_rejected",
                    {"request_id": request.id, "action_type": request.action_type, "reason": reason},
                    task_id=request.task_id,
                )

            self._count_decision("rejected_count")

        self.events.publish(ev.ACTION_COMPLETED, state_mod.to_jsonable(log))
        logger.info("Rejected request %s for task %s", request.id, request.task_id)
        self._wake.set()
        return request

    def _count_decision(self, counter: str):
        """Count a resolved request and leave waiting_approval."""

        def mutate(state: ControllerState):
            changes = {
                counter: getattr(state, counter) + 1,
                "processed_count": state.processed_count + 1,
            }
            if state.status == "waiting_approval":
                changes.update(status="running", current_action="Continuing...", current_task_id=None)
            return changes

        self._mutate_state(mutate)

    def cancel_task(self, task_id: str) -> bool:
        """Cancel the in-flight execution if it belongs to ``task_id``."""
        with self._lock:
            token = self._in_flight
            if token is None or self.get_state().current_task_id != task_id:
                return False
            self._operator_cancelled.add(task_id)
            token.cancel()
        logger.info("Cancellation requested for task %s", task_id)
        return True

    # ── Usage limits ─────────────────────────────────────────────────────────

    def _limiter(self, state: ControllerState) -> UsageLimiter:
        return UsageLimiter(state.usage_limit_config, clock=self._now)

    def get_usage_percentages(self) -> dict:
        state = self.get_state()
        limiter = self._limiter(state)
        pcts = limiter.percentages(state.token_usage, state.daily_token_usage)
        return {"hourly": pcts.hourly, "daily": pcts.daily}

    def record_usage(self, input_tokens: int, output_tokens: int) -> ControllerState:
        """Add consumption to the budget windows, pausing if the limit is near."""
        return self._apply_usage(
            lambda state, limiter: limiter.record(
                state.token_usage, state.daily_token_usage, input_tokens, output_tokens
            )
        )

    def check_usage_reset(self) -> bool:
        """Roll expired windows; auto-resume a limit pause. True if a window rolled."""

        def roll(state: ControllerState, limiter: UsageLimiter):
            update = limiter.roll(state.token_usage, state.daily_token_usage)
            if not (update.hourly_reset or update.daily_reset):
                return None
            return update

        return self._apply_usage(roll) is not None

    def _apply_usage(self, compute) -> ControllerState | None:
        """Store the window update ``compute(state, limiter)`` and react to its level.

        ``compute`` runs against the freshly locked state; returning None
        skips the write.
        """
        outcome = {}

        def mutate(state: ControllerState):
            limiter = self._limiter(state)
            update = compute(state, limiter)
            if update is None:
                return None
            pcts = limiter.percentages(update.token_usage, update.daily_usage)
            level = limiter.status(pcts)
            outcome.update(
                level=level, previous=state.usage_limit_status, peak=pcts.peak,
                paused=False, resumed=False,
            )
            changes = {
                "token_usage": update.token_usage,
                "daily_token_usage": update.daily_usage,
                "usage_limit_status": level,
            }
            if state.status == "running" and limiter.should_pause(level):
                outcome["paused"] = True
                changes.update(
                    status="paused",
                    paused_due_to_limit=True,
                    current_action="Paused: Token usage limit reached",
                )
            elif state.status == "paused" and limiter.should_auto_resume(
                update.hourly_reset, state.paused_due_to_limit, level
            ):
                outcome["resumed"] = True
                changes.update(
                    status="running",
                    paused_due_to_limit=False,
                    current_action="Resuming after limit reset...",
                )
            return changes

        new_state = self._mutate_state(mutate)
        if new_state is None:
            return None

        level, peak = outcome["level"], outcome["peak"]
        if level != outcome["previous"] and level != "ok":
            self.events.publish(ev.USAGE_WARNING, {"status": level, "percentage": round(peak)})
        if outcome["paused"]:
            logger.warning("Token usage %s (%.0f%%), pausing", level, peak)
            self._audit("system", "usage_limit_paused", {"status": level, "percentage": round(peak)})
        if outcome["resumed"]:
            logger.info("Usage window reset, resuming")
            self._audit("system", "usage_limit_resumed", {"status": level})
            self._wake.set()
        return new_state

    def _enforce_usage_limit(self) -> bool:
        """Pause before dispatching when the budget is already spent."""

        def spent(state: ControllerState, limiter: UsageLimiter):
            level = limiter.status(limiter.percentages(state.token_usage, state.daily_token_usage))
            if not limiter.should_pause(level):
                return None
            return WindowUpdate(state.token_usage, state.daily_token_usage)

        return self._apply_usage(spent) is not None

    def update_usage_limit_config(self, **changes) -> ControllerState:
        """Change budget settings and re-evaluate the usage level."""

        def mutate(state: ControllerState):
            config = replace(state.usage_limit_config, **changes)
            _validate_limits(config)
            limiter = UsageLimiter(config, clock=self._now)
            usage = replace(state.token_usage, limit=config.max_tokens_per_hour)
            return {
                "usage_limit_config": config,
                "token_usage": usage,
                "usage_limit_status": limiter.status(
                    limiter.percentages(usage, state.daily_token_usage)
                ),
            }

        return self._mutate_state(mutate)

    def reset_token_usage(self) -> ControllerState:
        def mutate(state: ControllerState):
            limiter = self._limiter(state)
            return {
                "token_usage": limiter.new_hourly_window(),
                "daily_token_usage": limiter.new_daily_window(),
                "usage_limit_status": "ok",
                "paused_due_to_limit": False,
            }

        return self._mutate_state(mutate)

    # ── Cycle ────────────────────────────────────────────────────────────────

    def tick(self) -> bool:
        """Run one cycle iteration. Returns True if a task was dispatched."""
        self.check_usage_reset()

        with self._lock:
            state = self.get_state()
            if state.status == "winding_down" and self._in_flight is None:
                self._finish_wind_down()
                return False
            if state.status != "running" or self._in_flight is not None:
                return False
            if self._enforce_usage_limit():
                return False

            with get_db(self.db_path) as db:
                tasks_mod.update_blocked_status(db)
                task = scheduler.select_next(tasks_mod.list_tasks(db), self._now())
                if task is None:
                    return False
                task = tasks_mod.update_task(
                    db, task.id, status="in_progress", last_attempt_at=self._now()
                )

            token = CancellationToken()
            self._in_flight = token
            self._settled.clear()
            self._update_state(current_task_id=task.id, current_action=f"Processing: {task.title}")

        watcher = threading.Thread(
            target=self._watch_for_wind_down, args=(token,),
            name=f"wind-down-watch-{token.execution_id}", daemon=True,
        )
        watcher.start()
        try:
            self._set_progress("executing", 1, 3, "Analyzing task...")
            self._run_task(task, token)
        except Exception:
            logger.exception("Error while processing task %s", task.id)
            self._recover_task(task)
        finally:
            with self._lock:
                self._in_flight = None
                self._operator_cancelled.discard(task.id)
                self._settled.set()
                self._finish_wind_down()
        return True

    def _watch_for_wind_down(self, token: CancellationToken):
        """Cancel ``token`` once the persisted status turns winding_down.

        Covers deactivation requested from another process, which cannot
        reach the in-memory token.
        """
        while not self._settled.wait(self.poll_interval):
            if token.cancelled or token is not self._in_flight:
                return
            try:
                status = self.get_state().status
            except Exception:
                logger.exception("Could not read controller state")
                continue
            if status == "winding_down":
                logger.info("Wind-down requested, cancelling execution %s", token.execution_id)
                token.cancel()
                return

    def _run_task(self, task: Task, token: CancellationToken):
        started = time.monotonic()
        prompt = tasks_mod.build_task_prompt(task)
        self._audit(
            "execution", "task_started",
            {"title": task.title, "execution_id": token.execution_id}, task=task,
        )
        logger.info("Executing task %s (%s)", task.id, token.execution_id)

        self._set_progress("executing", 2, 3, "Executing agent...")
        try:
            result = self.executor.execute(prompt, SYSTEM_PROMPT, token)
        except Exception as e:
            logger.exception("Executor raised for task %s", task.id)
            result = ExecutionResult(success=False, error=str(e) or type(e).__name__)
        duration = time.monotonic() - started

        input_tokens = result.input_tokens
        if input_tokens is None:
            input_tokens = estimate_tokens(prompt)
        output_tokens = result.output_tokens
        if output_tokens is None:
            output_tokens = estimate_tokens(result.response_text)

        self._audit(
            "execution", "task_finished",
            {"success": result.success, "error": result.error, "cancelled": result.cancelled},
            task=task, tokens=(input_tokens, output_tokens), duration=duration,
        )

        if result.cancelled or (token.cancelled and not result.success):
            self.record_usage(input_tokens, output_tokens)
            self._handle_cancelled(task, duration)
            return

        if not result.success:
            self.record_usage(input_tokens, output_tokens)
            self._handle_failure(task, result, duration)
            return

        self._set_progress("reviewing", 3, 3, "Reviewing results...")
        decision = self.classifier.classify(result.response_text)
        if decision.requires_approval:
            self._park_for_approval(task, decision, result)
            self.record_usage(input_tokens, output_tokens)
            return

        self.record_usage(input_tokens, output_tokens)
        self._finalize(task, result, duration)

    def _handle_failure(self, task: Task, result: ExecutionResult, duration: float):
        error = result.error or "Execution failed"
        with get_db(self.db_path) as db:
            updated = tasks_mod.apply_retry(db, task.id, error, self._now())
            log = state_mod.add_action_log(
                db,
                task_id=task.id,
                task_title=task.title,
                action_type="error",
                description="Task execution failed",
                auto_approved=True,
                result="failure",
                output=error[:OUTPUT_PREVIEW_CHARS],
                duration=duration,
            )
            activity_mod.log_activity(
                db, "error", "task_failed", {"error": error, "retry_count": updated.retry_count if updated else None},
                task_id=task.id, project_id=task.project_id,
            )

        if updated is None or updated.status == "failed":
            action = f"Failed: {task.title}"
            logger.warning("Task %s failed permanently: %s", task.id, error)
        else:
            action = f"Retry scheduled: {task.title}"
            logger.warning("Task %s failed, retry at %s: %s", task.id, updated.next_retry_at, error)

        self._clear_progress(
            lambda state: {
                "error_count": state.error_count + 1,
                "current_task_id": None,
                "current_action": action,
            }
        )
        self.events.publish(ev.ACTION_COMPLETED, state_mod.to_jsonable(log))

    def _park_for_approval(self, task: Task, decision: RiskDecision, result: ExecutionResult):
        with get_db(self.db_path) as db:
            request = state_mod.add_approval_request(
                db,
                task_id=task.id,
                task_title=task.title,
                action_type=decision.action_type,
                description=f'{decision.reason} for "{task.title}"',
                details=result.response_text,
            )
            activity_mod.log_activity(
                db, "system", "approval_requested",
                {"request_id": request.id, "action_type": request.action_type},
                task_id=task.id, project_id=task.project_id,
            )

        def park(state: ControllerState):
            changes = {"current_action": f"Waiting approval: {request.description}"}
            if state.status == "running":
                changes["status"] = "waiting_approval"
            return changes

        self._clear_progress(park)

        logger.info("Task %s needs approval (%s)", task.id, request.action_type)
        self.events.publish(ev.APPROVAL_REQUIRED, state_mod.to_jsonable(request))

    def _finalize(self, task: Task, result: ExecutionResult, duration: float):
        with get_db(self.db_path) as db:
            tasks_mod.update_task(db, task.id, status="done")
            log = state_mod.add_action_log(
                db,
                task_id=task.id,
                task_title=task.title,
                action_type="task_execution",
                description=f'Completed "{task.title}"',
                auto_approved=True,
                result="success",
                output=result.response_text[:OUTPUT_PREVIEW_CHARS],
                duration=duration,
            )

        self._clear_progress(
            lambda state: {
                "processed_count": state.processed_count + 1,
                "approved_count": state.approved_count + 1,
                "current_task_id": None,
                "current_action": f"Completed: {task.title}",
            }
        )
        logger.info("Task %s done in %.1fs", task.id, duration)
        self.events.publish(ev.ACTION_COMPLETED, state_mod.to_jsonable(log))

    def _handle_cancelled(self, task: Task, duration: float):
        operator = task.id in self._operator_cancelled
        with get_db(self.db_path) as db:
            if operator:
                tasks_mod.update_task(db, task.id, status="failed", last_error="Cancelled by operator")
            else:
                tasks_mod.update_task(db, task.id, status="todo")
            log = state_mod.add_action_log(
                db,
                task_id=task.id,
                task_title=task.title,
                action_type="cancelled",
                description="Execution cancelled",
                auto_approved=not operator,
                result="skipped",
                duration=duration,
            )
        self._clear_progress(current_task_id=None, current_action=f"Cancelled: {task.title}")
        logger.info("Execution for task %s cancelled", task.id)
        self.events.publish(ev.ACTION_COMPLETED, state_mod.to_jsonable(log))

    def _recover_task(self, task: Task):
        """Put a task back in the queue after an internal error mid-cycle."""
        try:
            with get_db(self.db_path) as db:
                current = tasks_mod.get_task(db, task.id)
                if current and current.status == "in_progress" and not state_mod.has_pending_request(db, task.id):
                    tasks_mod.apply_retry(db, task.id, "Internal controller error", self._now())
            self._clear_progress(current_task_id=None)
        except Exception:
            logger.exception("Could not recover task %s", task.id)

    def recover(self) -> ControllerState:
        """Reset to idle after a restart and requeue orphaned in-progress tasks."""
        with self._lock:
            with get_db(self.db_path) as db:
                previous = state_mod.load_state(db)
                orphaned = [
                    t for t in tasks_mod.list_tasks(db, status="in_progress")
                    if not state_mod.has_pending_request(db, t.id)
                ]
                for task in orphaned:
                    tasks_mod.update_task(db, task.id, status="todo")
            if previous and previous.status != "idle":
                logger.warning("Previous session ended while %s; resetting to idle", previous.status)
            if orphaned:
                logger.warning("Requeued %d orphaned task(s)", len(orphaned))
            return self._update_state(
                status="idle",
                current_task_id=None,
                current_action=None,
                current_progress=None,
                paused_due_to_limit=False,
            )

    # ── Driver thread ────────────────────────────────────────────────────────

    def next_wake_delay(self) -> float:
        """Seconds the driver should sleep before the next tick."""
        if self.get_state().status != "running":
            return self.poll_interval
        now = self._now()
        with get_db(self.db_path) as db:
            wake_at = scheduler.next_wake_time(tasks_mod.list_tasks(db), now)
        if wake_at is None:
            return self.poll_interval
        return max(0.0, min((wake_at - now).total_seconds(), self.poll_interval))

    def start(self):
        """Recover persisted state and start the driver thread."""
        if self._thread and self._thread.is_alive():
            return
        self.recover()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="task-controller", daemon=True
        )
        self._thread.start()
        logger.info("Controller driver started")

    def stop(self, timeout: float = 30.0):
        """Deactivate and stop the driver thread."""
        self.deactivate(timeout=timeout)
        self._stop_event.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Controller driver stopped")

    def wake(self):
        self._wake.set()

    def _run(self):
        while not self._stop_event.is_set():
            self._wake.clear()
            try:
                dispatched = self.tick()
            except Exception:
                logger.exception("Error in controller loop")
                dispatched = False
            if dispatched or self._stop_event.is_set():
                continue
            try:
                delay = self.next_wake_delay()
            except Exception:
                logger.exception("Could not compute next wake time")
                delay = self.poll_interval
            self._wake.wait(delay)

    # ── Audit ────────────────────────────────────────────────────────────────

    def _audit(
        self,
        category: str,
        action: str,
        details: dict | None = None,
        task: Task | None = None,
        tokens: tuple[int, int] | None = None,
        duration: float | None = None,
    ):
        with get_db(self.db_path) as db:
            activity_mod.log_activity(
                db,
                category,
                action,
                details,
                task_id=task.id if task else None,
                project_id=task.project_id if task else None,
                tokens=tokens,
                duration=duration,
            )


def _validate_limits(config: UsageLimitConfig):
    if config.max_tokens_per_hour <= 0 or config.max_tokens_per_day <= 0:
        raise ValueError("Token limits must be positive")
    for name in ("pause_threshold", "warning_threshold"):
        value = getattr(config, name)
        if not 0 <= value <= 1:
            raise ValueError(f"{name} must be between 0 and 1")
    if config.warning_threshold > config.pause_threshold:
        raise ValueError("warning_threshold must not exceed pause_threshold")


def build_controller(config: Config | None = None, events: ev.EventBus | None = None) -> Controller:
    """Controller wired to the Claude CLI executor from configuration."""
    config = config or get_config()
    executor = ClaudeExecutor(
        command=config.agent_command,
        model=config.agent_model,
        timeout=config.execution_timeout,
        cwd=config.repo_path,
        max_turns=config.agent_max_turns,
    )
    return Controller(config.db_path, executor, config=config, events=events)
