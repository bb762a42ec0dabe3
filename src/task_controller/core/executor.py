"""Agent execution: launching the Claude CLI, timeouts and cancellation."""

import json
import logging
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

# Registry of in-flight executions keyed by execution id
_running: dict[str, "CancellationToken"] = {}
_running_lock = threading.Lock()


@dataclass
class ExecutionResult:
    success: bool
    response_text: str = ""
    error: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cancelled: bool = False


class CancellationToken:
    """Out-of-band cancel handle for one execution."""

    def __init__(self, execution_id: str | None = None):
        self.execution_id = execution_id or uuid.uuid4().hex[:12]
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class Executor(Protocol):
    def execute(
        self,
        prompt: str,
        system_prompt: str,
        token: CancellationToken,
    ) -> ExecutionResult: ...


def register_execution(token: CancellationToken):
    with _running_lock:
        _running[token.execution_id] = token


def unregister_execution(token: CancellationToken):
    with _running_lock:
        _running.pop(token.execution_id, None)


def cancel_execution(execution_id: str) -> bool:
    """Request cancellation of a running execution. Returns False if unknown."""
    with _running_lock:
        token = _running.get(execution_id)
    if token is None:
        return False
    token.cancel()
    logger.info("Cancellation requested for execution %s", execution_id)
    return True


def get_running_executions() -> list[str]:
    with _running_lock:
        return list(_running)


def cancel_all_executions() -> int:
    with _running_lock:
        tokens = list(_running.values())
    for token in tokens:
        token.cancel()
    return len(tokens)


class ClaudeExecutor:
    """Runs the Claude CLI in print mode and supervises the process."""

    def __init__(
        self,
        command: str = "claude",
        model: str | None = "sonnet",
        timeout: float = 1800.0,
        cwd: Path | str | None = None,
        max_turns: int | None = None,
        permission_mode: str | None = "acceptEdits",
        poll_interval: float = 0.5,
    ):
        self.command = command
        self.model = model
        self.timeout = timeout
        self.cwd = str(cwd) if cwd else None
        self.max_turns = max_turns
        self.permission_mode = permission_mode
        self.poll_interval = poll_interval

    def build_command(self, prompt: str, system_prompt: str) -> list[str]:
        cmd = [self.command, "-p", prompt, "--output-format", "json"]
        if system_prompt:
            cmd += ["--append-system-prompt", system_prompt]
        if self.model:
            cmd += ["--model", self.model]
        if self.permission_mode:
            cmd += ["--permission-mode", self.permission_mode]
        if self.max_turns:
            cmd += ["--max-turns", str(self.max_turns)]
        return cmd

    def execute(
        self,
        prompt: str,
        system_prompt: str,
        token: CancellationToken,
    ) -> ExecutionResult:
        cmd = self.build_command(prompt, system_prompt)
        register_execution(token)
        try:
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=self.cwd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                )
            except OSError as e:
                return ExecutionResult(success=False, error=f"Failed to start agent: {e}")

            logger.info("Execution %s started (PID %s)", token.execution_id, proc.pid)
            started = time.monotonic()
            while True:
                try:
                    stdout, stderr = proc.communicate(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if token.cancelled:
                        _terminate(proc)
                        return ExecutionResult(
                            success=False, error="Execution cancelled", cancelled=True
                        )
                    if time.monotonic() - started > self.timeout:
                        _terminate(proc)
                        return ExecutionResult(
                            success=False,
                            error=f"Execution timed out after {self.timeout:.0f}s",
                        )

            return parse_output(stdout, stderr, proc.returncode)
        finally:
            unregister_execution(token)


def parse_output(stdout: str, stderr: str, exit_code: int | None) -> ExecutionResult:
    """Turn CLI JSON output into an ExecutionResult."""
    content = (stdout or "").strip()
    if not content:
        error = (stderr or "").strip()[:500] or f"Agent exited with code {exit_code} and no output"
        return ExecutionResult(success=False, error=error)

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        if exit_code:
            return ExecutionResult(success=False, response_text=content, error=content[:500])
        return ExecutionResult(success=True, response_text=content)

    if not isinstance(data, dict):
        return ExecutionResult(success=exit_code == 0, response_text=content)

    text = data.get("result") or ""
    usage = data.get("usage") or {}
    input_tokens = usage.get("input_tokens")
    if input_tokens is not None:
        input_tokens += usage.get("cache_creation_input_tokens", 0) or 0
        input_tokens += usage.get("cache_read_input_tokens", 0) or 0

    if data.get("is_error") or exit_code:
        return ExecutionResult(
            success=False,
            response_text=text,
            error=text[:500] or data.get("subtype") or f"Agent exited with code {exit_code}",
            input_tokens=input_tokens,
            output_tokens=usage.get("output_tokens"),
        )

    return ExecutionResult(
        success=True,
        response_text=text,
        input_tokens=input_tokens,
        output_tokens=usage.get("output_tokens"),
    )


def _terminate(proc: subprocess.Popen):
    proc.terminate()
    try:
        proc.communicate(timeout=10)
    except subprocess.TimeoutExpired:
        logger.warning("PID %s ignored SIGTERM, killing", proc.pid)
        proc.kill()
        proc.communicate()
