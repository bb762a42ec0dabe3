"""Tests for the HTTP control API."""

import tempfile
from datetime import datetime
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from task_controller.config import Config
from task_controller.core import tasks as tasks_mod
from task_controller.core.controller import Controller
from task_controller.core.executor import ExecutionResult
from task_controller.db.engine import init_db
from task_controller.integrations.events import EventBus
from task_controller.web.app import create_app


class ScriptedExecutor:
    def __init__(self, text="All tests pass."):
        self.text = text

    def execute(self, prompt, system_prompt, token):
        return ExecutionResult(success=True, response_text=self.text, input_tokens=10, output_tokens=5)


@pytest.fixture
def web_env():
    """Seeded database, controller and API client."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        db = init_db(db_path)
        tasks_mod.create_task(db, "Setup database", priority="high", description="Create tables")
        tasks_mod.create_task(db, "Build API", blocked_by=["setup-database"])
        tasks_mod.create_task(db, "Write docs", priority="low")
        db.close()

        controller = Controller(
            db_path,
            ScriptedExecutor("Done, pushed to origin/main."),
            config=Config(db_path=db_path),
            events=EventBus(asynchronous=False),
        )
        client = TestClient(create_app(controller))
        yield client, controller


class TestTasksAPI:
    def test_list_tasks(self, web_env):
        client, _ = web_env
        resp = client.get("/api/tasks")
        assert resp.status_code == 200
        assert [t["id"] for t in resp.json()] == ["setup-database", "build-api", "write-docs"]

    def test_list_by_status(self, web_env):
        client, _ = web_env
        assert client.get("/api/tasks?status=done").json() == []
        assert client.get("/api/tasks?status=bogus").status_code == 400

    def test_get_task(self, web_env):
        client, _ = web_env
        resp = client.get("/api/tasks/build-api")
        assert resp.status_code == 200
        data = resp.json()
        assert data["blocked_by"] == ["setup-database"]
        assert data["events"][0]["event_type"] == "created"

    def test_get_missing_task(self, web_env):
        client, _ = web_env
        assert client.get("/api/tasks/nope").status_code == 404

    def test_create_task(self, web_env):
        client, _ = web_env
        resp = client.post("/api/tasks", json={
            "title": "Nightly cleanup",
            "priority": "low",
            "scheduled_at": datetime(2030, 1, 1, 3, 0).isoformat(),
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["id"] == "nightly-cleanup"
        assert data["scheduled_at"] == "2030-01-01T03:00:00"

    def test_create_task_validation(self, web_env):
        client, _ = web_env
        assert client.post("/api/tasks", json={}).status_code == 400
        assert client.post("/api/tasks", json={"title": "X", "priority": "urgent"}).status_code == 400
        assert client.post("/api/tasks", json={"title": "X", "blocked_by": ["ghost"]}).status_code == 400

    def test_update_task(self, web_env):
        client, _ = web_env
        resp = client.patch("/api/tasks/write-docs", json={"priority": "high"})
        assert resp.status_code == 200
        assert resp.json()["priority"] == "high"
        assert client.patch("/api/tasks/write-docs", json={"bogus": 1}).status_code == 400
        assert client.patch("/api/tasks/nope", json={"priority": "high"}).status_code == 404

    def test_update_cannot_start_task(self, web_env):
        client, _ = web_env
        resp = client.patch("/api/tasks/write-docs", json={"status": "in_progress"})
        assert resp.status_code == 400
        assert client.get("/api/tasks/write-docs").json()["status"] == "todo"
        assert client.patch("/api/tasks/write-docs", json={"status": "done"}).status_code == 200

    def test_delete_task(self, web_env):
        client, _ = web_env
        assert client.delete("/api/tasks/write-docs").status_code == 200
        assert client.delete("/api/tasks/write-docs").status_code == 404

    def test_stats(self, web_env):
        client, _ = web_env
        data = client.get("/api/tasks/stats").json()
        assert data["total"] == 3
        assert data["by_priority"]["high"] == 1


class TestControllerAPI:
    def test_state(self, web_env):
        client, _ = web_env
        data = client.get("/api/controller").json()
        assert data["status"] == "idle"
        assert data["usage_limit_config"]["max_tokens_per_hour"] == 100_000

    def test_commands(self, web_env):
        client, _ = web_env
        resp = client.post("/api/controller/activate")
        assert resp.json()["changed"] is True
        assert resp.json()["state"]["status"] == "running"

        assert client.post("/api/controller/activate").json()["changed"] is False
        assert client.post("/api/controller/pause").json()["state"]["status"] == "paused"
        assert client.post("/api/controller/resume").json()["state"]["status"] == "running"
        assert client.post("/api/controller/deactivate").json()["state"]["status"] == "idle"
        assert client.post("/api/controller/explode").status_code == 404

    def test_approval_round_trip(self, web_env):
        client, controller = web_env
        client.post("/api/controller/activate")
        controller.tick()

        pending = client.get("/api/approvals?status=pending").json()
        assert len(pending) == 1
        assert pending[0]["action_type"] == "git_push"
        assert client.get("/api/controller").json()["status"] == "waiting_approval"

        resp = client.post(f"/api/approvals/{pending[0]['id']}/reject", json={"reason": "no pushes"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"
        assert client.get("/api/tasks/setup-database").json()["status"] == "failed"
        assert client.post(f"/api/approvals/{pending[0]['id']}/approve").status_code == 404

        actions = client.get("/api/actions?limit=5").json()
        assert actions[0]["result"] == "skipped"

    def test_activity(self, web_env):
        client, _ = web_env
        client.post("/api/controller/activate")
        entries = client.get("/api/activity?category=system").json()
        assert entries[0]["action"] == "controller_activated"

    def test_bad_limit(self, web_env):
        client, _ = web_env
        assert client.get("/api/activity?limit=lots").status_code == 400
        assert client.get("/api/actions?limit=lots").status_code == 400
        assert client.get("/api/activity?limit=1").status_code == 200


class TestUsageAPI:
    def test_usage(self, web_env):
        client, _ = web_env
        data = client.get("/api/usage").json()
        assert data["status"] == "ok"
        assert data["percentages"] == {"hourly": 0.0, "daily": 0.0}

    def test_update_config(self, web_env):
        client, _ = web_env
        resp = client.put("/api/usage/config", json={"max_tokens_per_hour": 5000})
        assert resp.status_code == 200
        assert resp.json()["max_tokens_per_hour"] == 5000
        assert client.put("/api/usage/config", json={"pause_threshold": 2}).status_code == 400
        assert client.put("/api/usage/config", json={"bogus": 1}).status_code == 400

    def test_reset(self, web_env):
        client, controller = web_env
        controller.record_usage(100, 50)
        resp = client.post("/api/usage/reset")
        assert resp.json()["input_tokens"] == 0
