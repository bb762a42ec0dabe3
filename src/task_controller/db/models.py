"""Data models for the task controller."""

from dataclasses import dataclass, field
from datetime import datetime

TASK_STATUSES = ("todo", "in_progress", "done", "failed", "blocked")
TASK_PRIORITIES = ("low", "medium", "high")

CONTROLLER_STATUSES = (
    "idle",
    "running",
    "paused",
    "waiting_approval",
    "waiting_input",
    "winding_down",
)
APPROVAL_ACTION_TYPES = ("planning", "architecture", "git_push", "large_edit")
APPROVAL_STATUSES = ("pending", "approved", "rejected")
ACTION_RESULTS = ("success", "failure", "skipped")
USAGE_LIMIT_STATUSES = ("ok", "warning", "approaching_limit", "at_limit")
ACTIVITY_CATEGORIES = ("execution", "user_action", "system", "error", "project")


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: str = "todo"
    priority: str = "medium"
    project_id: str | None = None
    project_name: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    scheduled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    blocked_by: list[str] = field(default_factory=list)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class TaskStats:
    total: int = 0
    todo: int = 0
    in_progress: int = 0
    done: int = 0
    failed: int = 0
    blocked: int = 0
    by_priority: dict[str, int] = field(
        default_factory=lambda: {p: 0 for p in TASK_PRIORITIES}
    )


@dataclass
class ApprovalRequest:
    id: str
    task_id: str
    task_title: str
    action_type: str
    description: str = ""
    details: str = ""
    status: str = "pending"
    reason: str | None = None
    created_at: datetime | None = None
    resolved_at: datetime | None = None


@dataclass
class ActionLog:
    id: int | None = None
    task_id: str = ""
    task_title: str = ""
    action_type: str = ""
    description: str = ""
    auto_approved: bool = True
    result: str = "success"
    output: str | None = None
    duration: float = 0.0
    timestamp: datetime | None = None


@dataclass
class ActivityEntry:
    id: int | None = None
    timestamp: datetime | None = None
    category: str = "system"
    action: str = ""
    details: dict = field(default_factory=dict)
    task_id: str | None = None
    project_id: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration: float | None = None


@dataclass
class ProgressState:
    phase: str
    step: int
    total_steps: int
    step_description: str
    started_at: datetime


@dataclass
class TokenUsage:
    """Rolling hourly consumption window."""

    input_tokens: int = 0
    output_tokens: int = 0
    limit: int = 100_000
    reset_at: datetime | None = None


@dataclass
class DailyTokenUsage:
    """Calendar-day consumption window."""

    input: int = 0
    output: int = 0
    date: str = ""


@dataclass
class UsageLimitConfig:
    max_tokens_per_hour: int = 100_000
    max_tokens_per_day: int = 500_000
    pause_threshold: float = 0.8
    warning_threshold: float = 0.6
    auto_resume_on_reset: bool = True


@dataclass
class ControllerState:
    status: str = "idle"
    current_task_id: str | None = None
    current_action: str | None = None
    started_at: datetime | None = None
    processed_count: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    error_count: int = 0
    current_progress: ProgressState | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    usage_limit_config: UsageLimitConfig = field(default_factory=UsageLimitConfig)
    daily_token_usage: DailyTokenUsage = field(default_factory=DailyTokenUsage)
    usage_limit_status: str = "ok"
    paused_due_to_limit: bool = False
