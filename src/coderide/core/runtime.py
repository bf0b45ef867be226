"""
Execution control shared by swarm runs, review runs and tool calls.

A single ExecutionController is created per top-level run. Workers check
``is_cancelled`` at group and round boundaries. The process runner registers
the subprocess it is currently streaming so ``terminate_current()`` can stop
it from another thread (for example a signal handler in the CLI).

Usage:
    from coderide.core.runtime import ExecutionController, controller_context

    controller = ExecutionController()
    with controller_context(controller):
        async for event in runner.run(tasks, context):
            ...
"""

from __future__ import annotations

import asyncio
import contextvars
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from enum import StrEnum

import psutil

from coderide.core.console import get_logger

logger = get_logger(__name__)

PAUSE_POLL_SECONDS = 0.2


class ExecutionScope(StrEnum):
    """Where a tool call originates."""

    AGENT = "agent"
    SWARM = "swarm"
    REVIEW = "review"
    PLAN = "plan"
    SYSTEM = "system"


class ExecutionController:
    """Cooperative stop/pause flags plus the currently running subprocess."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stop_requested = False
        self._paused = False
        self._current_pid: int | None = None

    @property
    def is_cancelled(self) -> bool:
        with self._lock:
            return self._stop_requested

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    def request_stop(self) -> None:
        with self._lock:
            self._stop_requested = True
            self._paused = False
        self.terminate_current()

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def reset(self) -> None:
        with self._lock:
            self._stop_requested = False
            self._paused = False

    async def wait_while_paused(self) -> bool:
        """Block while paused. Returns False when a stop arrives instead."""
        while self.is_paused:
            await asyncio.sleep(PAUSE_POLL_SECONDS)
        return not self.is_cancelled

    def register_process(self, pid: int) -> None:
        with self._lock:
            self._current_pid = pid

    def clear_process(self, pid: int) -> None:
        with self._lock:
            if self._current_pid == pid:
                self._current_pid = None

    def terminate_current(self) -> bool:
        """Terminate the registered subprocess and its children.

        Returns:
            True if a process was signalled.
        """
        with self._lock:
            pid = self._current_pid
        if pid is None:
            return False
        try:
            parent = psutil.Process(pid)
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return False

        for proc in [*children, parent]:
            try:
                proc.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
                logger.debug("Could not terminate pid %s: %s", proc.pid, exc)
        logger.info("Terminated process tree rooted at pid %s", pid)
        return True


_controller_ctx: contextvars.ContextVar[ExecutionController | None] = contextvars.ContextVar(
    "coderide_controller",
    default=None,
)


def get_controller() -> ExecutionController | None:
    """Return the controller bound to the current task, if any."""
    return _controller_ctx.get()


@contextmanager
def controller_context(controller: ExecutionController) -> Iterator[ExecutionController]:
    token = _controller_ctx.set(controller)
    try:
        yield controller
    finally:
        _controller_ctx.reset(token)


__all__ = [
    "ExecutionController",
    "ExecutionScope",
    "controller_context",
    "get_controller",
]
