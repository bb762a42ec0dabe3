"""Token budget tracking against hourly and daily windows."""

import math
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from task_controller.db.models import DailyTokenUsage, TokenUsage, UsageLimitConfig

HOURLY_WINDOW = timedelta(hours=1)

_PAUSING_STATUSES = {"approaching_limit", "at_limit"}


@dataclass(frozen=True)
class WindowUpdate:
    token_usage: TokenUsage
    daily_usage: DailyTokenUsage
    hourly_reset: bool = False
    daily_reset: bool = False


@dataclass(frozen=True)
class UsagePercentages:
    hourly: float
    daily: float

    @property
    def peak(self) -> float:
        return max(self.hourly, self.daily)


def estimate_tokens(text: str | None) -> int:
    """Rough token count for text when the executor reports none (~4 chars each)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


class UsageLimiter:
    """Computes window rollover, usage levels and pause decisions.

    The limiter holds no counters of its own; callers pass in the windows
    stored on the controller state and persist what comes back.
    """

    def __init__(self, config: UsageLimitConfig, clock: Callable[[], datetime] = datetime.now):
        self.config = config
        self._now = clock

    def new_hourly_window(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=0,
            output_tokens=0,
            limit=self.config.max_tokens_per_hour,
            reset_at=self._now() + HOURLY_WINDOW,
        )

    def new_daily_window(self) -> DailyTokenUsage:
        return DailyTokenUsage(input=0, output=0, date=self._now().date().isoformat())

    def roll(self, usage: TokenUsage, daily: DailyTokenUsage) -> WindowUpdate:
        """Start fresh windows for any that have expired."""
        now = self._now()
        hourly_reset = usage.reset_at is None or now >= usage.reset_at
        daily_reset = daily.date != now.date().isoformat()

        if hourly_reset:
            usage = self.new_hourly_window()
        elif usage.limit != self.config.max_tokens_per_hour:
            usage = replace(usage, limit=self.config.max_tokens_per_hour)
        if daily_reset:
            daily = self.new_daily_window()

        return WindowUpdate(usage, daily, hourly_reset, daily_reset)

    def record(
        self,
        usage: TokenUsage,
        daily: DailyTokenUsage,
        input_tokens: int,
        output_tokens: int,
    ) -> WindowUpdate:
        """Add consumption to both windows, rolling them first if expired."""
        rolled = self.roll(usage, daily)
        return replace(
            rolled,
            token_usage=replace(
                rolled.token_usage,
                input_tokens=rolled.token_usage.input_tokens + input_tokens,
                output_tokens=rolled.token_usage.output_tokens + output_tokens,
            ),
            daily_usage=replace(
                rolled.daily_usage,
                input=rolled.daily_usage.input + input_tokens,
                output=rolled.daily_usage.output + output_tokens,
            ),
        )

    def percentages(self, usage: TokenUsage, daily: DailyTokenUsage) -> UsagePercentages:
        hourly_total = usage.input_tokens + usage.output_tokens
        daily_total = daily.input + daily.output
        return UsagePercentages(
            hourly=_percent(hourly_total, self.config.max_tokens_per_hour),
            daily=_percent(daily_total, self.config.max_tokens_per_day),
        )

    def status(self, percentages: UsagePercentages) -> str:
        fraction = percentages.peak / 100
        if fraction >= 1:
            return "at_limit"
        if fraction >= self.config.pause_threshold:
            return "approaching_limit"
        if fraction >= self.config.warning_threshold:
            return "warning"
        return "ok"

    def should_pause(self, status: str) -> bool:
        return status in _PAUSING_STATUSES

    def should_auto_resume(
        self,
        window_just_reset: bool,
        paused_due_to_limit: bool,
        status: str,
    ) -> bool:
        """Resume a limit pause once the hourly window has rolled over."""
        return (
            self.config.auto_resume_on_reset
            and window_just_reset
            and paused_due_to_limit
            and not self.should_pause(status)
        )


def _percent(total: int, limit: int) -> float:
    if limit <= 0:
        return 0.0  # no budget configured
    return max(0.0, 100.0 * total / limit)
