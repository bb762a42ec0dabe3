"""Tests for task selection, backoff and dependency reconciliation."""

from datetime import datetime, timedelta

import pytest

from task_controller.core import scheduler
from task_controller.db.models import Task

NOW = datetime(2030, 6, 1, 12, 0)


def make_task(task_id, minutes_ago=0, **kwargs):
    return Task(
        id=task_id,
        title=task_id,
        created_at=NOW - timedelta(minutes=minutes_ago),
        **kwargs,
    )


class TestSelectNext:
    def test_empty(self):
        assert scheduler.select_next([], NOW) is None

    def test_priority_before_age(self):
        tasks = [
            make_task("old-low", minutes_ago=30, priority="low"),
            make_task("new-high", minutes_ago=1, priority="high"),
            make_task("mid", minutes_ago=10, priority="medium"),
        ]
        assert scheduler.select_next(tasks, NOW).id == "new-high"

    def test_fifo_within_priority(self):
        tasks = [
            make_task("second", minutes_ago=5),
            make_task("first", minutes_ago=10),
            make_task("third", minutes_ago=1),
        ]
        assert scheduler.select_next(tasks, NOW).id == "first"

    def test_skips_non_todo(self):
        tasks = [
            make_task("running", status="in_progress", priority="high"),
            make_task("finished", status="done", priority="high"),
            make_task("gone", status="failed", priority="high"),
            make_task("waiting", status="blocked", priority="high"),
            make_task("ready", priority="low"),
        ]
        assert scheduler.select_next(tasks, NOW).id == "ready"

    def test_unfinished_dependency(self):
        tasks = [
            make_task("base", status="in_progress"),
            make_task("child", blocked_by=["base"], priority="high"),
        ]
        assert scheduler.select_next(tasks, NOW) is None

    def test_finished_dependency(self):
        tasks = [
            make_task("base", status="done"),
            make_task("child", blocked_by=["base"]),
        ]
        assert scheduler.select_next(tasks, NOW).id == "child"

    def test_missing_dependency_is_unfinished(self):
        tasks = [make_task("child", blocked_by=["deleted"])]
        assert scheduler.select_next(tasks, NOW) is None

    def test_retry_gate(self):
        tasks = [make_task("retry", next_retry_at=NOW + timedelta(minutes=1))]
        assert scheduler.select_next(tasks, NOW) is None
        assert scheduler.select_next(tasks, NOW + timedelta(minutes=1)).id == "retry"

    def test_schedule_gate(self):
        tasks = [make_task("later", scheduled_at=NOW + timedelta(hours=1))]
        assert scheduler.select_next(tasks, NOW) is None
        assert scheduler.select_next(tasks, NOW + timedelta(hours=2)).id == "later"

    def test_selection_is_minimum_of_executable(self):
        tasks = [
            make_task("a", minutes_ago=3, priority="medium"),
            make_task("b", minutes_ago=9, priority="low"),
            make_task("c", minutes_ago=1, priority="medium"),
            make_task("d", minutes_ago=2, priority="high", status="done"),
        ]
        picked = scheduler.select_next(tasks, NOW)
        completed = scheduler.completed_ids(tasks)
        for other in tasks:
            if scheduler.is_executable(other, NOW, completed):
                assert (
                    scheduler.PRIORITY_ORDER[picked.priority],
                    picked.created_at,
                ) <= (
                    scheduler.PRIORITY_ORDER[other.priority],
                    other.created_at,
                )


class TestNextWakeTime:
    def test_executable_now(self):
        tasks = [make_task("ready"), make_task("later", scheduled_at=NOW + timedelta(hours=1))]
        assert scheduler.next_wake_time(tasks, NOW) is None

    def test_earliest_gate(self):
        tasks = [
            make_task("retry", next_retry_at=NOW + timedelta(minutes=4)),
            make_task("scheduled", scheduled_at=NOW + timedelta(minutes=2)),
        ]
        assert scheduler.next_wake_time(tasks, NOW) == NOW + timedelta(minutes=2)

    def test_uses_latest_gate_of_one_task(self):
        tasks = [
            make_task(
                "both",
                next_retry_at=NOW + timedelta(minutes=1),
                scheduled_at=NOW + timedelta(minutes=5),
            ),
        ]
        assert scheduler.next_wake_time(tasks, NOW) == NOW + timedelta(minutes=5)

    def test_ignores_dependency_blocked(self):
        tasks = [
            make_task("base", status="in_progress"),
            make_task("child", blocked_by=["base"], scheduled_at=NOW + timedelta(minutes=1)),
        ]
        assert scheduler.next_wake_time(tasks, NOW) is None


class TestRetryBackoff:
    @pytest.mark.parametrize(
        "retry_count,minutes",
        [(1, 1), (2, 2), (3, 4), (4, 8), (5, 16), (6, 16), (20, 16)],
    )
    def test_delay_sequence(self, retry_count, minutes):
        assert scheduler.calculate_retry_delay(retry_count) == timedelta(minutes=minutes)

    def test_delay_never_decreases(self):
        delays = [scheduler.calculate_retry_delay(n) for n in range(1, 12)]
        assert delays == sorted(delays)
        assert max(delays) == scheduler.RETRY_MAX_DELAY

    def test_schedule_retry(self):
        task = make_task("flaky", max_retries=3)
        retried = scheduler.schedule_retry(task, "boom", NOW)
        assert retried.status == "todo"
        assert retried.retry_count == 1
        assert retried.last_error == "boom"
        assert retried.last_attempt_at == NOW
        assert retried.next_retry_at == NOW + timedelta(minutes=1)
        # Input untouched
        assert task.retry_count == 0

    def test_second_retry_doubles(self):
        task = make_task("flaky", retry_count=1, max_retries=5)
        retried = scheduler.schedule_retry(task, "boom", NOW)
        assert retried.next_retry_at == NOW + timedelta(minutes=2)

    def test_exhausted_retries_fail(self):
        task = make_task("doomed", retry_count=2, max_retries=3)
        retried = scheduler.schedule_retry(task, "boom", NOW)
        assert retried.status == "failed"
        assert retried.retry_count == 3
        assert retried.next_retry_at is None

    def test_zero_max_retries_fails_immediately(self):
        retried = scheduler.schedule_retry(make_task("once", max_retries=0), "boom", NOW)
        assert retried.status == "failed"


class TestReconcileBlocked:
    def test_blocks_and_unblocks(self):
        tasks = [
            make_task("base"),
            make_task("child", blocked_by=["base"]),
            make_task("done-dep", status="done"),
            make_task("freed", status="blocked", blocked_by=["done-dep"]),
        ]
        changes = scheduler.reconcile_blocked(tasks)
        assert sorted(changes) == [("child", "blocked"), ("freed", "todo")]

    def test_leaves_settled_tasks(self):
        tasks = [
            make_task("base"),
            make_task("running", status="in_progress", blocked_by=["base"]),
            make_task("finished", status="done", blocked_by=["base"]),
            make_task("gone", status="failed", blocked_by=["base"]),
        ]
        assert scheduler.reconcile_blocked(tasks) == []

    def test_idempotent(self):
        tasks = [make_task("base"), make_task("child", status="blocked", blocked_by=["base"])]
        assert scheduler.reconcile_blocked(tasks) == []

    def test_unblocks_when_dependencies_removed(self):
        tasks = [make_task("loose", status="blocked")]
        assert scheduler.reconcile_blocked(tasks) == [("loose", "todo")]
