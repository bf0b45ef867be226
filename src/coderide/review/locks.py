"""File-level mutual exclusion for fix workers.

FileLockCoordinator owns a table mapping file paths to the worker that
holds them. A worker claims all of its files at once or waits, so two
workers never hold overlapping files. plan_execution orders claims so
that consecutive steps avoid conflicts where possible.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from coderide.core.console import get_logger

logger = get_logger(__name__)

POLL_INTERVAL_SECONDS = 0.2


@dataclass(frozen=True, slots=True)
class ExecutionStep:
    """One worker's claim on a set of files."""

    swarm_id: str
    files: frozenset[str]


class FileLockCoordinator:
    """Serialized lock table keyed by file path."""

    def __init__(self, poll_interval: float = POLL_INTERVAL_SECONDS) -> None:
        self._owners: dict[str, str] = {}
        self._mutex = asyncio.Lock()
        self._poll_interval = poll_interval

    async def acquire_lock(self, files: Iterable[str], worker_id: str) -> None:
        """Claim every file in ``files`` for ``worker_id``, waiting while any is held by another worker.

        Files are claimed atomically: either all at once or none. There is no
        timeout; callers that need one wrap the call in ``asyncio.timeout``.
        """
        wanted = frozenset(files)
        if not wanted:
            return
        waited = False
        while True:
            async with self._mutex:
                blocked = any(
                    self._owners.get(path, worker_id) != worker_id for path in wanted
                )
                if not blocked:
                    for path in wanted:
                        self._owners[path] = worker_id
                    if waited:
                        logger.debug("%s acquired %s files after waiting", worker_id, len(wanted))
                    return
            if not waited:
                logger.debug("%s waiting for %s files", worker_id, len(wanted))
                waited = True
            await asyncio.sleep(self._poll_interval)

    async def release_lock(self, files: Iterable[str], worker_id: str) -> None:
        """Release the files in ``files`` that ``worker_id`` holds; others are untouched."""
        async with self._mutex:
            for path in files:
                if self._owners.get(path) == worker_id:
                    del self._owners[path]

    def owner_of(self, path: str) -> str | None:
        return self._owners.get(path)

    def snapshot(self) -> dict[str, str]:
        return dict(self._owners)


def plan_execution(claims: Sequence[ExecutionStep]) -> list[ExecutionStep]:
    """Order claims greedily so consecutive steps avoid file conflicts.

    Repeatedly takes the first remaining claim that shares no file with the
    files assigned so far; when every remaining claim conflicts, the first
    one is taken anyway. Every claim appears exactly once in the result.
    """
    remaining = list(claims)
    assigned: set[str] = set()
    steps: list[ExecutionStep] = []
    while remaining:
        index = next(
            (i for i, claim in enumerate(remaining) if assigned.isdisjoint(claim.files)),
            0,
        )
        claim = remaining.pop(index)
        assigned.update(claim.files)
        steps.append(claim)
    return steps


__all__ = ["POLL_INTERVAL_SECONDS", "ExecutionStep", "FileLockCoordinator", "plan_execution"]
