"""Subprocess execution for providers and tools.

Provides:
- stream_lines for line-by-line streaming of a CLI backend's stdout
- run_collecting for bounded commands with merged output and a timeout
- run_shell for the bash tool
- ProcessRunnerError carrying the exit code and an output tail
"""

from __future__ import annotations

import asyncio
import os
import shutil
from collections import deque
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from coderide.core.console import get_logger
from coderide.core.result import CoderideError
from coderide.core.runtime import ExecutionController, get_controller

logger = get_logger(__name__)

STDERR_TAIL_LINES = 10
STDOUT_TAIL_LINES = 50
STREAM_LIMIT = 4 * 1024 * 1024
TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127
INVALID_ARGUMENT_EXIT_CODE = 126


class ProcessRunnerError(CoderideError):
    """Raised when a streamed process exits with a non-zero status."""

    def __init__(self, exit_code: int, message: str, *, tail: str = "") -> None:
        super().__init__(message, context={"exit_code": exit_code})
        self.exit_code = exit_code
        self.tail = tail

    def __str__(self) -> str:
        if self.tail:
            return f"{self.message} (exit code {self.exit_code})\n{self.tail}"
        return f"{self.message} (exit code {self.exit_code})"


@dataclass(slots=True)
class CommandResult:
    """Result of a bounded command run with merged stdout/stderr."""

    returncode: int
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def _describe_exit(code: int) -> str:
    if code in (15, 143, -15):
        return "Process terminated"
    if code in (2, 130, -2):
        return "Process interrupted"
    return "Process exited with a non-zero status"


def _merged_env(env: Mapping[str, str] | None) -> dict[str, str]:
    merged = dict(os.environ)
    if env:
        merged.update(env)
    return merged


async def _drain(stream: asyncio.StreamReader, sink: deque[str]) -> None:
    async for raw in stream:
        sink.append(raw.decode(errors="replace").rstrip("\r\n"))


async def stream_lines(
    executable: str,
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    controller: ExecutionController | None = None,
) -> AsyncIterator[str]:
    """Run a process and yield its stdout line by line.

    Stderr is drained concurrently and kept as a short tail for error
    reporting. The process is registered with the active controller so a
    stop request can terminate it.

    Raises:
        ProcessRunnerError: On launch failure or non-zero exit.
    """
    active = controller or get_controller()
    try:
        proc = await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=cwd,
            env=_merged_env(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except FileNotFoundError as exc:
        raise ProcessRunnerError(NOT_FOUND_EXIT_CODE, f"Executable not found: {executable}") from exc
    except ValueError as exc:
        raise ProcessRunnerError(INVALID_ARGUMENT_EXIT_CODE, f"Invalid argument for {executable}: {exc}") from exc
    except OSError as exc:
        raise ProcessRunnerError(NOT_FOUND_EXIT_CODE, f"Failed to start {executable}: {exc}") from exc

    if active is not None:
        active.register_process(proc.pid)

    stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
    stdout_tail: deque[str] = deque(maxlen=STDOUT_TAIL_LINES)
    assert proc.stdout is not None and proc.stderr is not None
    stderr_task = asyncio.create_task(_drain(proc.stderr, stderr_tail))

    try:
        async for raw in proc.stdout:
            line = raw.decode(errors="replace").rstrip("\r\n")
            stdout_tail.append(line)
            yield line
        returncode = await proc.wait()
        await stderr_task
    finally:
        if proc.returncode is None:
            proc.terminate()
            await proc.wait()
        if not stderr_task.done():
            stderr_task.cancel()
        if active is not None:
            active.clear_process(proc.pid)

    if returncode != 0:
        tail_lines = list(stderr_tail) or list(stdout_tail)
        logger.warning("%s exited with %s", executable, returncode)
        raise ProcessRunnerError(returncode, _describe_exit(returncode), tail="\n".join(tail_lines))


async def run_collecting(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command to completion with stderr merged into stdout.

    Launch failures and timeouts are reported through the result, never raised.
    """
    if any("\x00" in arg for arg in argv):
        return CommandResult(
            returncode=INVALID_ARGUMENT_EXIT_CODE, output="invalid argument: embedded NUL byte"
        )
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=_merged_env(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError:
        return CommandResult(returncode=NOT_FOUND_EXIT_CODE, output=f"command not found: {argv[0]}")
    except OSError as exc:
        return CommandResult(returncode=NOT_FOUND_EXIT_CODE, output=f"failed to start: {exc}")

    active = get_controller()
    if active is not None:
        active.register_process(proc.pid)
    try:
        stdout_bytes, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("Command timed out after %ss: %s", timeout, argv[0])
        return CommandResult(returncode=TIMEOUT_EXIT_CODE, output="", timed_out=True)
    finally:
        if active is not None:
            active.clear_process(proc.pid)

    return CommandResult(
        returncode=proc.returncode or 0,
        output=stdout_bytes.decode(errors="replace"),
    )


def _shell_binary() -> str:
    return shutil.which("bash") or "/bin/sh"


async def run_shell(command: str, *, cwd: Path, timeout_ms: int) -> CommandResult:
    """Run a shell command string with the workspace as working directory."""
    return await run_collecting(
        [_shell_binary(), "-c", command],
        cwd=cwd,
        timeout=max(timeout_ms, 1) / 1000,
    )


__all__ = [
    "CommandResult",
    "ProcessRunnerError",
    "run_collecting",
    "run_shell",
    "stream_lines",
]
