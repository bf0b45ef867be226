"""Execution of a task plan by role-specialized workers.

Tasks are grouped by ``order``. Groups run strictly one after another in
ascending order; tasks inside a group run concurrently. A single-task group
streams its output live. A multi-task group forwards activity events live
and emits the buffered text of each task once the whole group is done,
sorted by role identifier so the transcript is deterministic.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path

from coderide.core.console import get_logger
from coderide.core.templates import render_template
from coderide.core.workspace import WorkspaceContext
from coderide.providers import (
    Completed,
    ErrorEvent,
    EventStream,
    LLMProvider,
    RawEvent,
    Started,
    StreamEvent,
    TextDelta,
)
from coderide.swarm.types import AgentTask, group_by_order, roles_summary, sort_tasks

logger = get_logger(__name__)

CANCEL_NOTICE = "\n\n**Swarm stopped by user.**\n"


@dataclass(frozen=True, slots=True)
class TaskOutput:
    """Final text produced by one task."""

    task: AgentTask
    output: str


@dataclass(slots=True)
class _Buffer:
    task: AgentTask
    parts: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.parts)


def _header(task: AgentTask) -> TextDelta:
    return TextDelta(text=f"\n## {task.role.display_name}\n\n")


def _agent_event(task: AgentTask, detail: str) -> RawEvent:
    return RawEvent(
        type="agent",
        payload={
            "title": task.role.display_name,
            "detail": detail,
            "role": task.role.value,
            "order": str(task.order),
        },
    )


def error_annotation(label: str, message: str) -> str:
    return f"\n[Error {label}: {message}]\n"


def build_task_prompt(task: AgentTask, user_prompt: str, previous: Sequence[TaskOutput]) -> str:
    return render_template(
        "worker_task.j2",
        {
            "role": task.role,
            "user_prompt": user_prompt or task.task_description,
            "task": task.task_description,
            "previous": [
                {"role": item.task.role.display_name, "output": item.output.strip()}
                for item in previous
                if item.output.strip()
            ],
        },
    )


class SwarmWorkerRunner:
    """Runs a task plan against one provider, streaming a merged event sequence."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> None:
        self._provider = provider
        self._is_cancelled = is_cancelled or (lambda: False)
        self.outputs: list[TaskOutput] = []

    def _cancel_events(self, completed_groups: int) -> list[StreamEvent]:
        logger.info("Swarm cancelled after %s groups", completed_groups)
        return [
            TextDelta(text=CANCEL_NOTICE),
            RawEvent(
                type="swarm_cancelled",
                payload={"reason": "user", "completed_groups": str(completed_groups)},
            ),
            Completed(),
        ]

    async def run(
        self,
        tasks: Sequence[AgentTask],
        context: WorkspaceContext,
        *,
        user_prompt: str = "",
        image_refs: Sequence[Path] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run all tasks and yield events ending in exactly one Completed.

        Outputs of finished tasks are visible to every later group and are
        kept in ``self.outputs`` once the run ends.
        """
        self.outputs = []
        groups = group_by_order(tasks)
        yield Started()
        yield RawEvent(
            type="swarm_steps",
            payload={"steps": roles_summary(sort_tasks(tasks)), "groups": str(len(groups))},
        )

        for index, group in enumerate(groups):
            if self._is_cancelled():
                for event in self._cancel_events(index):
                    yield event
                return

            previous = list(self.outputs)
            if len(group) == 1:
                stream = self._run_single(group[0], context, user_prompt, previous, image_refs)
            else:
                stream = self._run_parallel(group, context, user_prompt, previous, image_refs)
            async with aclosing(stream) as events:
                async for event in events:
                    yield event
            if len(group) > 1 and self._is_cancelled():
                for event in self._cancel_events(index + 1):
                    yield event
                return

        yield Completed()

    async def _stream_task(
        self,
        task: AgentTask,
        context: WorkspaceContext,
        user_prompt: str,
        previous: Sequence[TaskOutput],
        image_refs: Sequence[Path] | None,
        buffer: _Buffer,
    ) -> AsyncIterator[StreamEvent]:
        """Yield one task's text and activity events; errors become inline annotations."""
        label = task.role.display_name
        try:
            prompt = build_task_prompt(task, user_prompt, previous)
            source = EventStream(self._provider.send(prompt, context, image_refs))
            async with aclosing(aiter(source)) as events:
                async for event in events:
                    match event:
                        case TextDelta(text=text):
                            buffer.parts.append(text)
                            yield event
                        case RawEvent():
                            yield event.with_payload(agent=task.role.value)
                        case ErrorEvent(message=message):
                            annotation = error_annotation(label, message)
                            buffer.parts.append(annotation)
                            yield TextDelta(text=annotation)
                        case Started() | Completed():
                            pass
        except Exception as exc:
            logger.warning("%s task failed: %s", label, exc)
            annotation = error_annotation(label, str(exc) or type(exc).__name__)
            buffer.parts.append(annotation)
            yield TextDelta(text=annotation)

    async def _run_single(
        self,
        task: AgentTask,
        context: WorkspaceContext,
        user_prompt: str,
        previous: Sequence[TaskOutput],
        image_refs: Sequence[Path] | None,
    ) -> AsyncIterator[StreamEvent]:
        buffer = _Buffer(task)
        yield _header(task)
        yield _agent_event(task, "started")
        async for event in self._stream_task(task, context, user_prompt, previous, image_refs, buffer):
            yield event
        yield _agent_event(task, "completed")
        self.outputs.append(TaskOutput(task=task, output=buffer.text))

    async def _run_parallel(
        self,
        group: Sequence[AgentTask],
        context: WorkspaceContext,
        user_prompt: str,
        previous: Sequence[TaskOutput],
        image_refs: Sequence[Path] | None,
    ) -> AsyncIterator[StreamEvent]:
        queue: asyncio.Queue[RawEvent | None] = asyncio.Queue()
        buffers = [_Buffer(task) for task in group]

        async def worker(buffer: _Buffer) -> None:
            try:
                async for event in self._stream_task(
                    buffer.task, context, user_prompt, previous, image_refs, buffer
                ):
                    if isinstance(event, RawEvent):
                        await queue.put(event)
            finally:
                await queue.put(None)

        for task in group:
            yield _agent_event(task, "started")

        workers = [asyncio.create_task(worker(buffer)) for buffer in buffers]
        try:
            finished = 0
            while finished < len(workers):
                item = await queue.get()
                if item is None:
                    finished += 1
                    continue
                yield item
            await asyncio.gather(*workers)
        finally:
            for pending in workers:
                if not pending.done():
                    pending.cancel()
            # Collect cancellations when the consumer stops reading early.
            await asyncio.gather(*workers, return_exceptions=True)

        for buffer in sorted(buffers, key=lambda item: item.task.role.value):
            yield _header(buffer.task)
            if buffer.text:
                yield TextDelta(text=buffer.text)
            yield _agent_event(buffer.task, "completed")
            self.outputs.append(TaskOutput(task=buffer.task, output=buffer.text))


__all__ = ["CANCEL_NOTICE", "SwarmWorkerRunner", "TaskOutput", "build_task_prompt", "error_annotation"]
