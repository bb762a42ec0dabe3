"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".task_controller" / "tc.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    agent_command: str = "claude"
    agent_model: str = "sonnet"
    agent_max_turns: int | None = 25
    execution_timeout: float = 1800.0
    poll_interval: float = 5.0
    max_tokens_per_hour: int = 100_000
    max_tokens_per_day: int = 500_000
    pause_threshold: float = 0.8
    warning_threshold: float = 0.6
    auto_resume_on_reset: bool = True
    review_plans: bool = False
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("TC_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("TC_REPO_PATH"):
            config.repo_path = Path(repo)

        if command := os.environ.get("TC_AGENT_COMMAND"):
            config.agent_command = command

        if model := os.environ.get("TC_AGENT_MODEL"):
            config.agent_model = model

        if max_turns := os.environ.get("TC_AGENT_MAX_TURNS"):
            config.agent_max_turns = int(max_turns) or None

        if timeout := os.environ.get("TC_EXECUTION_TIMEOUT"):
            config.execution_timeout = float(timeout)

        if interval := os.environ.get("TC_POLL_INTERVAL"):
            config.poll_interval = float(interval)

        if hourly := os.environ.get("TC_MAX_TOKENS_PER_HOUR"):
            config.max_tokens_per_hour = int(hourly)

        if daily := os.environ.get("TC_MAX_TOKENS_PER_DAY"):
            config.max_tokens_per_day = int(daily)

        if pause := os.environ.get("TC_PAUSE_THRESHOLD"):
            config.pause_threshold = float(pause)

        if warning := os.environ.get("TC_WARNING_THRESHOLD"):
            config.warning_threshold = float(warning)

        if auto_resume := os.environ.get("TC_AUTO_RESUME"):
            config.auto_resume_on_reset = _env_bool(auto_resume)

        if review_plans := os.environ.get("TC_REVIEW_PLANS"):
            config.review_plans = _env_bool(review_plans)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("TC_SLACK_CHANNEL")

        if level := os.environ.get("TC_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
