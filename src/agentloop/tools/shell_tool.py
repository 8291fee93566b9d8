"""
Shell Command Tool - bash execution with a wall-clock limit.

Commands run in their own process group. When the timeout expires or the
call is aborted, the group gets SIGTERM, then SIGKILL after a short grace
period.
"""

import asyncio
import os
import re
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from ..cancellation import AbortSignal
from ..errors import AbortError
from .base import Tool, ToolContext, ToolOutput, ToolParameter

logger = structlog.get_logger()


@dataclass
class ShellConfig:
    """Configuration for shell command execution."""

    enabled: bool = True
    timeout_seconds: float = 120.0
    max_timeout_seconds: float = 600.0
    kill_grace_seconds: float = 1.0
    max_output_chars: int = 100_000

    blocked_patterns: list[str] = field(default_factory=lambda: [
        r"rm\s+-rf\s+/(\s|$)",
        r"rm\s+-rf\s+~",
        r"mkfs",
        r"dd\s+if=",
        r":\(\)\s*\{\s*:\|:&\s*\};:",
        r"curl.*\|\s*(ba)?sh",
        r"wget.*\|\s*(ba)?sh",
    ])

    workspace_dir: str | None = None


@dataclass
class ShellResult:
    return_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False


class ShellExecutor:
    """Executes shell commands with a timeout and escalating termination."""

    def __init__(self, config: ShellConfig | None = None):
        self.config = config or ShellConfig()

    def check_command(self, command: str) -> str | None:
        """Return the reason ``command`` is refused, or None."""
        if not self.config.enabled:
            return "Shell execution is disabled"
        if not command.strip():
            return "Empty command"
        for pattern in self.config.blocked_patterns:
            if re.search(pattern, command, re.IGNORECASE):
                return "Command contains a blocked pattern"
        return None

    def _working_dir(self, working_dir: str | None) -> str | None:
        base = working_dir or self.config.workspace_dir
        if base is None:
            return None
        path = Path(base).expanduser()
        return str(path) if path.is_dir() else None

    async def execute(
        self,
        command: str,
        working_dir: str | None = None,
        timeout: float | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> ShellResult:
        """Run ``command`` with ``bash -c``.

        Raises AbortError if ``abort_signal`` fires before the command ends.
        """
        reason = self.check_command(command)
        if reason is not None:
            return ShellResult(return_code=-1, stdout="", stderr=f"Command blocked: {reason}")

        if abort_signal is not None:
            abort_signal.raise_if_aborted()

        timeout = min(timeout or self.config.timeout_seconds, self.config.max_timeout_seconds)

        process = await asyncio.create_subprocess_exec(
            "bash",
            "-c",
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._working_dir(working_dir),
            start_new_session=True,
        )

        communicate = asyncio.ensure_future(process.communicate())
        waiters: set[asyncio.Future[Any]] = {communicate}
        abort_wait = None
        if abort_signal is not None:
            abort_wait = asyncio.ensure_future(abort_signal.wait())
            waiters.add(abort_wait)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._terminate(process)
            communicate.cancel()
            raise
        finally:
            if abort_wait is not None:
                abort_wait.cancel()

        if communicate in done:
            stdout, stderr = communicate.result()
            return ShellResult(
                return_code=process.returncode,
                stdout=self._decode(stdout),
                stderr=self._decode(stderr),
            )

        aborted = abort_wait is not None and abort_wait in done
        logger.warning(
            "Terminating shell command",
            reason="aborted" if aborted else "timeout",
            timeout=timeout,
            pid=process.pid,
        )
        await self._terminate(process)

        try:
            stdout, stderr = await asyncio.wait_for(communicate, timeout=self.config.kill_grace_seconds)
        except asyncio.TimeoutError:
            stdout, stderr = b"", b""

        if aborted:
            raise AbortError(abort_signal.reason if abort_signal else None)

        return ShellResult(
            return_code=process.returncode,
            stdout=self._decode(stdout),
            stderr=self._decode(stderr),
            timed_out=True,
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.kill_grace_seconds)
        except asyncio.TimeoutError:
            self._signal_group(process, signal.SIGKILL)
            await process.wait()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass

    def _decode(self, data: bytes) -> str:
        output = data.decode("utf-8", errors="replace")
        if len(output) > self.config.max_output_chars:
            output = output[: self.config.max_output_chars] + "\n\n... (truncated)"
        return output


def format_shell_result(result: ShellResult, timeout: float) -> ToolOutput:
    output_parts = []

    if result.stdout:
        output_parts.append(result.stdout.rstrip("\n"))

    if result.stderr:
        output_parts.append(f"[stderr]\n{result.stderr.rstrip()}")

    if result.timed_out:
        output_parts.append(f"Command timed out after {timeout:g} seconds")
    elif result.return_code not in (0, None):
        output_parts.append(f"Exit code: {result.return_code}")

    if not output_parts:
        output_parts.append("Command completed successfully (no output)")

    return ToolOutput(
        content="\n\n".join(output_parts),
        is_error=result.timed_out or result.return_code != 0,
        metadata={"exit_code": result.return_code, "timed_out": result.timed_out},
    )


def create_shell_tools(config: ShellConfig | None = None) -> list[Tool]:
    """Create shell-related tools."""
    executor = ShellExecutor(config)

    async def run_command_handler(input: dict[str, Any], context: ToolContext) -> ToolOutput:
        command = str(input.get("command", ""))
        timeout = input.get("timeout_seconds") or executor.config.timeout_seconds
        timeout = min(float(timeout), executor.config.max_timeout_seconds)

        result = await executor.execute(
            command,
            working_dir=input.get("working_dir") or context.cwd,
            timeout=timeout,
            abort_signal=context.abort_signal,
        )
        return format_shell_result(result, timeout)

    run_command = Tool(
        name="run_command",
        description="Execute a shell command with bash. Long-running commands are stopped at the timeout.",
        parameters=[
            ToolParameter(
                name="command",
                param_type="string",
                description="The shell command to execute",
                required=True,
            ),
            ToolParameter(
                name="working_dir",
                param_type="string",
                description="Working directory for the command",
                required=False,
            ),
            ToolParameter(
                name="timeout_seconds",
                param_type="number",
                description="Timeout in seconds (default 120, max 600)",
                required=False,
            ),
        ],
        handler=run_command_handler,
    )

    return [run_command]
