"""Tests for agent execution via the Claude CLI."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from task_controller.core import executor as executor_mod
from task_controller.core.executor import CancellationToken, ClaudeExecutor, parse_output


def _proc(stdout="", stderr="", returncode=0, pid=4242):
    proc = MagicMock()
    proc.pid = pid
    proc.returncode = returncode
    proc.communicate.return_value = (stdout, stderr)
    return proc


def _cli_json(result="Done.", is_error=False, usage=None):
    return json.dumps({
        "type": "result",
        "subtype": "success",
        "is_error": is_error,
        "result": result,
        "usage": usage or {"input_tokens": 120, "output_tokens": 30},
    })


class TestBuildCommand:
    def test_full_command(self):
        ex = ClaudeExecutor(command="claude", model="opus", max_turns=10)
        cmd = ex.build_command("Fix it", "Be careful")
        assert cmd[:5] == ["claude", "-p", "Fix it", "--output-format", "json"]
        assert cmd[cmd.index("--append-system-prompt") + 1] == "Be careful"
        assert cmd[cmd.index("--model") + 1] == "opus"
        assert cmd[cmd.index("--permission-mode") + 1] == "acceptEdits"
        assert cmd[cmd.index("--max-turns") + 1] == "10"

    def test_optional_flags_omitted(self):
        ex = ClaudeExecutor(model=None, max_turns=None, permission_mode=None)
        cmd = ex.build_command("Fix it", "")
        assert "--model" not in cmd
        assert "--max-turns" not in cmd
        assert "--permission-mode" not in cmd
        assert "--append-system-prompt" not in cmd


class TestParseOutput:
    def test_success_with_usage(self):
        result = parse_output(
            _cli_json(usage={
                "input_tokens": 100,
                "cache_creation_input_tokens": 20,
                "cache_read_input_tokens": 5,
                "output_tokens": 40,
            }),
            "",
            0,
        )
        assert result.success
        assert result.response_text == "Done."
        assert result.input_tokens == 125
        assert result.output_tokens == 40

    def test_is_error(self):
        result = parse_output(_cli_json(result="Max turns reached", is_error=True), "", 0)
        assert not result.success
        assert result.error == "Max turns reached"

    def test_nonzero_exit(self):
        result = parse_output(_cli_json(result=""), "", 2)
        assert not result.success

    def test_no_output(self):
        result = parse_output("", "command not found", 127)
        assert not result.success
        assert result.error == "command not found"

    def test_plain_text_output(self):
        result = parse_output("just text", "", 0)
        assert result.success
        assert result.response_text == "just text"
        assert result.input_tokens is None


class TestExecute:
    @patch("task_controller.core.executor.subprocess.Popen")
    def test_success(self, mock_popen):
        mock_popen.return_value = _proc(stdout=_cli_json())
        ex = ClaudeExecutor(cwd="/tmp/repo")

        result = ex.execute("Fix it", "system", CancellationToken())

        assert result.success
        assert result.input_tokens == 120
        assert mock_popen.call_args.kwargs["cwd"] == "/tmp/repo"
        assert executor_mod.get_running_executions() == []

    @patch("task_controller.core.executor.subprocess.Popen")
    def test_launch_failure(self, mock_popen):
        mock_popen.side_effect = FileNotFoundError("claude")
        result = ClaudeExecutor().execute("Fix it", "", CancellationToken())
        assert not result.success
        assert "Failed to start agent" in result.error

    @patch("task_controller.core.executor.subprocess.Popen")
    def test_cancelled(self, mock_popen):
        proc = _proc()
        proc.communicate.side_effect = [
            subprocess.TimeoutExpired("claude", 0.01),
            ("", ""),  # after terminate
        ]
        mock_popen.return_value = proc
        token = CancellationToken()
        token.cancel()

        result = ClaudeExecutor(poll_interval=0.01).execute("Fix it", "", token)

        assert result.cancelled
        assert not result.success
        proc.terminate.assert_called_once()

    @patch("task_controller.core.executor.subprocess.Popen")
    def test_timeout(self, mock_popen):
        proc = _proc()
        proc.communicate.side_effect = [
            subprocess.TimeoutExpired("claude", 0.01),
            ("", ""),
        ]
        mock_popen.return_value = proc

        result = ClaudeExecutor(timeout=-1, poll_interval=0.01).execute(
            "Fix it", "", CancellationToken()
        )

        assert not result.success
        assert not result.cancelled
        assert "timed out" in result.error
        proc.terminate.assert_called_once()

    @patch("task_controller.core.executor.subprocess.Popen")
    def test_kill_when_terminate_ignored(self, mock_popen):
        proc = _proc()
        proc.communicate.side_effect = [
            subprocess.TimeoutExpired("claude", 0.01),
            subprocess.TimeoutExpired("claude", 10),
            ("", ""),
        ]
        mock_popen.return_value = proc
        token = CancellationToken()
        token.cancel()

        ClaudeExecutor(poll_interval=0.01).execute("Fix it", "", token)

        proc.kill.assert_called_once()


class TestRegistry:
    def test_cancel_by_id(self):
        token = CancellationToken("exec-1")
        executor_mod.register_execution(token)
        try:
            assert executor_mod.get_running_executions() == ["exec-1"]
            assert executor_mod.cancel_execution("exec-1") is True
            assert token.cancelled
        finally:
            executor_mod.unregister_execution(token)
        assert executor_mod.get_running_executions() == []

    def test_cancel_unknown(self):
        assert executor_mod.cancel_execution("nope") is False

    def test_cancel_all(self):
        tokens = [CancellationToken(), CancellationToken()]
        for t in tokens:
            executor_mod.register_execution(t)
        try:
            assert executor_mod.cancel_all_executions() == 2
            assert all(t.cancelled for t in tokens)
        finally:
            for t in tokens:
                executor_mod.unregister_execution(t)

    def test_token_wait(self):
        token = CancellationToken()
        assert token.wait(0.01) is False
        token.cancel()
        assert token.wait(0.01) is True


@pytest.fixture(autouse=True)
def _clean_registry():
    yield
    executor_mod.cancel_all_executions()
    for execution_id in executor_mod.get_running_executions():
        executor_mod.unregister_execution(CancellationToken(execution_id))
