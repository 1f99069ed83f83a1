"""Subprocess-based executor for task types that declare a command."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from agent_dispatch.dispatch.executor.base import ExecutionRequest, ExecutionResult
from agent_dispatch.dispatch.failure_classifier import classify_command_failure
from agent_dispatch.dispatch.models import TaskCheckpoint
from agent_dispatch.dispatch.registry import TaskTypeRegistry

logger = logging.getLogger(__name__)

_OUTPUT_PREVIEW_CHARS = 1200


class CommandExecutor:
    """Runs the task type's command with the payload on stdin.

    Exit code 0 is success; stdout is parsed as a JSON object when possible.
    A non-zero exit is classified from exit code and output. A JSON object on
    stdout with a ``checkpoint`` member is kept with a retryable failure so the
    next delivery can resume. Cancellation terminates the process, then kills
    it after ``terminate_grace_seconds``.
    """

    def __init__(
        self,
        registry: TaskTypeRegistry,
        *,
        transient_exit_codes: tuple[int, ...] = (75, 137, 143),
        terminate_grace_seconds: float = 2.0,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.registry = registry
        self.transient_exit_codes = transient_exit_codes
        self.terminate_grace_seconds = terminate_grace_seconds
        self.env = dict(env) if env is not None else None
        self.cwd = cwd

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        spec = self.registry.resolve(request.task_type)
        if not spec.command:
            return ExecutionResult.terminal(f"Task type {request.task_type} has no command")

        try:
            process = await asyncio.create_subprocess_exec(
                *spec.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(request),
                cwd=self.cwd,
            )
        except FileNotFoundError:
            return ExecutionResult.terminal(f"Command not found: {spec.command[0]}")
        except OSError as error:
            return ExecutionResult.retryable(f"Command failed to start: {error}")

        communicate = asyncio.ensure_future(process.communicate(request.payload))
        cancelled = asyncio.ensure_future(request.cancellation.wait())
        try:
            await asyncio.wait({communicate, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if not communicate.done():
                await self._terminate(process)
                with contextlib.suppress(Exception):
                    await communicate
                return ExecutionResult.retryable(
                    f"Cancelled: {request.cancellation.reason or 'unknown'}",
                )
            stdout_bytes, stderr_bytes = communicate.result()
        except asyncio.CancelledError:
            await self._terminate(process)
            raise
        finally:
            cancelled.cancel()
            if not communicate.done():
                communicate.cancel()

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        exit_code = _shell_exit_code(process.returncode)
        document = _parse_json_object(stdout)

        if exit_code == 0:
            return ExecutionResult.success(
                document if document is not None else {"stdout": stdout},
            )

        classification = classify_command_failure(
            command_name=Path(spec.command[0]).name,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            transient_exit_codes=self.transient_exit_codes,
        )
        details = classification.to_event_details() | {"exit_code": exit_code}
        error = f"Command exited with code {exit_code}: {stderr.strip()[:_OUTPUT_PREVIEW_CHARS]}"
        logger.info(
            "Command for %s %s failed with %s (%s)",
            request.task_type,
            request.record_id,
            exit_code,
            classification.failure_class.value,
        )
        if classification.retryable:
            return ExecutionResult.retryable(
                error,
                checkpoint=_checkpoint_from(document),
                failure_details=details,
            )
        return ExecutionResult.terminal(error, failure_details=details)

    def _build_env(self, request: ExecutionRequest) -> dict[str, str]:
        env = dict(self.env) if self.env is not None else os.environ.copy()
        env["AGENT_DISPATCH_TASK_TYPE"] = request.task_type
        env["AGENT_DISPATCH_RECORD_ID"] = request.record_id
        env["AGENT_DISPATCH_DELIVERY_COUNT"] = str(request.delivery_count)
        env["AGENT_DISPATCH_DEADLINE"] = request.deadline.isoformat()
        if request.correlation_id:
            env["AGENT_DISPATCH_CORRELATION_ID"] = request.correlation_id
        if request.checkpoint is not None:
            env["AGENT_DISPATCH_CHECKPOINT"] = json.dumps(
                {"state": request.checkpoint.state, "workdir_ref": request.checkpoint.workdir_ref},
            )
        return env

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
        except TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()


def _shell_exit_code(returncode: int | None) -> int:
    """Signal deaths (negative return codes) as 128 + signal number, like a shell reports them."""

    if returncode is None:
        return -1
    if returncode < 0:
        return 128 - returncode
    return returncode


def _parse_json_object(text: str) -> dict[str, Any] | None:
    stripped = text.strip()
    if not stripped.startswith("{"):
        return None
    try:
        value = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _checkpoint_from(document: dict[str, Any] | None) -> TaskCheckpoint | None:
    if document is None:
        return None
    raw = document.get("checkpoint")
    if not isinstance(raw, dict) or not isinstance(raw.get("state"), dict):
        return None
    workdir_ref = raw.get("workdir_ref")
    return TaskCheckpoint(
        state=raw["state"],
        workdir_ref=str(workdir_ref) if workdir_ref is not None else None,
    )
