"""Tests for task store operations."""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from task_controller.core import tasks as tasks_mod
from task_controller.db.engine import init_db


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        yield conn
        conn.close()


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_multiple_spaces(self):
        assert tasks_mod.slugify("  too   many   spaces  ") == "too-many-spaces"

    def test_truncation(self):
        assert len(tasks_mod.slugify("a" * 100)) <= 60

    def test_empty_falls_back(self):
        assert tasks_mod.slugify("!!!") == "task"


class TestTaskCRUD:
    def test_create_task_defaults(self, db):
        task = tasks_mod.create_task(db, "Build login page")
        assert task.id == "build-login-page"
        assert task.status == "todo"
        assert task.priority == "medium"
        assert task.retry_count == 0
        assert task.max_retries == 3
        assert task.blocked_by == []
        assert task.created_at is not None
        assert task.updated_at == task.created_at

    def test_create_duplicate_gets_suffix(self, db):
        t1 = tasks_mod.create_task(db, "Build login page")
        t2 = tasks_mod.create_task(db, "Build login page")
        assert t1.id == "build-login-page"
        assert t2.id == "build-login-page-2"

    def test_create_with_project_and_schedule(self, db):
        when = datetime(2030, 1, 1, 9, 0)
        task = tasks_mod.create_task(
            db, "Nightly", project_id="web", project_name="Web App", scheduled_at=when
        )
        assert task.project_id == "web"
        assert task.project_name == "Web App"
        assert task.scheduled_at == when

    def test_invalid_priority(self, db):
        with pytest.raises(ValueError):
            tasks_mod.create_task(db, "Bad", priority="urgent")

    def test_invalid_status(self, db):
        with pytest.raises(ValueError):
            tasks_mod.create_task(db, "Bad", status="review")

    def test_unknown_dependency(self, db):
        with pytest.raises(ValueError, match="not found"):
            tasks_mod.create_task(db, "Orphan", blocked_by=["missing"])

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "nonexistent") is None

    def test_list_in_creation_order(self, db):
        tasks_mod.create_task(db, "Task 1")
        tasks_mod.create_task(db, "Task 2")
        tasks_mod.create_task(db, "Task 3")
        assert [t.id for t in tasks_mod.list_tasks(db)] == ["task-1", "task-2", "task-3"]

    def test_list_filters(self, db):
        tasks_mod.create_task(db, "A", project_id="p1")
        tasks_mod.create_task(db, "B", project_id="p2")
        tasks_mod.update_task(db, "b", status="done")
        assert [t.id for t in tasks_mod.list_tasks(db, status="done")] == ["b"]
        assert [t.id for t in tasks_mod.list_tasks_by_project(db, "p1")] == ["a"]

    def test_delete_task_removes_edges(self, db):
        tasks_mod.create_task(db, "Base")
        tasks_mod.create_task(db, "Child", blocked_by=["base"])
        assert tasks_mod.delete_task(db, "base") is True
        assert tasks_mod.get_task(db, "base") is None
        assert tasks_mod.get_task(db, "child").blocked_by == []

    def test_delete_nonexistent(self, db):
        assert tasks_mod.delete_task(db, "nope") is False


class TestUpdateTask:
    def test_partial_update(self, db):
        tasks_mod.create_task(db, "Patch me", description="old")
        task = tasks_mod.update_task(db, "patch-me", description="new", priority="high")
        assert task.description == "new"
        assert task.priority == "high"
        assert task.title == "Patch me"

    def test_done_sets_completed_at(self, db):
        tasks_mod.create_task(db, "Done test")
        task = tasks_mod.update_task(db, "done-test", status="done")
        assert task.completed_at is not None

    def test_leaving_done_clears_completed_at(self, db):
        tasks_mod.create_task(db, "Reopen")
        tasks_mod.update_task(db, "reopen", status="done")
        task = tasks_mod.update_task(db, "reopen", status="todo")
        assert task.completed_at is None

    def test_updated_at_refreshed(self, db):
        created = tasks_mod.create_task(db, "Touch", now=datetime(2020, 1, 1))
        task = tasks_mod.update_task(db, "touch", description="x")
        assert task.updated_at > created.updated_at

    def test_unknown_field_rejected(self, db):
        tasks_mod.create_task(db, "Strict")
        with pytest.raises(ValueError, match="Unknown task fields"):
            tasks_mod.update_task(db, "strict", created_at=datetime.now())

    def test_missing_task(self, db):
        assert tasks_mod.update_task(db, "ghost", status="done") is None

    def test_self_dependency_rejected(self, db):
        tasks_mod.create_task(db, "Loop")
        with pytest.raises(ValueError):
            tasks_mod.update_task(db, "loop", blocked_by=["loop"])

    def test_events_logged(self, db):
        tasks_mod.create_task(db, "Event test")
        tasks_mod.update_task(db, "event-test", status="in_progress")
        tasks_mod.update_task(db, "event-test", description="no status change")
        events = tasks_mod.get_task_events(db, "event-test")
        assert [e.event_type for e in events] == ["created", "status_changed"]
        assert events[1].old_value == "todo"
        assert events[1].new_value == "in_progress"


class TestDependencies:
    def test_create_with_deps(self, db):
        tasks_mod.create_task(db, "First")
        task = tasks_mod.create_task(db, "Second", blocked_by=["first"])
        assert task.blocked_by == ["first"]

    def test_add_and_remove_dependency(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B")
        task = tasks_mod.add_dependency(db, "b", "a")
        assert task.blocked_by == ["a"]
        # Adding twice is a no-op
        assert tasks_mod.add_dependency(db, "b", "a").blocked_by == ["a"]
        task = tasks_mod.remove_dependency(db, "b", "a")
        assert task.blocked_by == []

    def test_add_dependency_missing_task(self, db):
        assert tasks_mod.add_dependency(db, "ghost", "a") is None

    def test_update_blocked_status(self, db):
        tasks_mod.create_task(db, "Base")
        tasks_mod.create_task(db, "Dependent", blocked_by=["base"])

        assert tasks_mod.update_blocked_status(db) == 1
        assert tasks_mod.get_task(db, "dependent").status == "blocked"

        tasks_mod.update_task(db, "base", status="done")
        assert tasks_mod.update_blocked_status(db) == 1
        assert tasks_mod.get_task(db, "dependent").status == "todo"

        # Nothing left to change
        assert tasks_mod.update_blocked_status(db) == 0


class TestRetries:
    def test_apply_retry_schedules_backoff(self, db):
        tasks_mod.create_task(db, "Flaky")
        now = datetime(2030, 1, 1, 12, 0)
        task = tasks_mod.apply_retry(db, "flaky", "boom", now)
        assert task.status == "todo"
        assert task.retry_count == 1
        assert task.last_error == "boom"
        assert task.last_attempt_at == now
        assert task.next_retry_at == now + timedelta(minutes=1)

    def test_apply_retry_exhausted(self, db):
        tasks_mod.create_task(db, "Doomed", max_retries=1)
        task = tasks_mod.apply_retry(db, "doomed", "boom", datetime(2030, 1, 1))
        assert task.status == "failed"
        assert task.next_retry_at is None

    def test_apply_retry_missing(self, db):
        assert tasks_mod.apply_retry(db, "ghost", "boom") is None


class TestStatsAndPrompt:
    def test_stats(self, db):
        tasks_mod.create_task(db, "A", priority="high")
        tasks_mod.create_task(db, "B")
        tasks_mod.create_task(db, "C", priority="low")
        tasks_mod.update_task(db, "a", status="done")

        stats = tasks_mod.get_task_stats(db)
        assert stats.total == 3
        assert stats.done == 1
        assert stats.todo == 2
        assert stats.by_priority == {"low": 1, "medium": 1, "high": 1}

    def test_build_task_prompt(self, db):
        task = tasks_mod.create_task(
            db, "Fix tests", description="The suite is red", project_name="Web App"
        )
        prompt = tasks_mod.build_task_prompt(task)
        assert prompt.startswith("Task: Fix tests")
        assert "The suite is red" in prompt
        assert "Project: Web App" in prompt
