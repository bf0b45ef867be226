"""
LLM provider abstraction layer.

Every backend streams a sequence of StreamEvent values for one prompt:
a Started event, any number of text deltas and raw activity events, then
exactly one terminal event (Completed or ErrorEvent).

Usage:
    from coderide.providers import EventStream, TextDelta

    async for event in EventStream(provider.send(prompt, context)):
        match event:
            case TextDelta(text=text):
                print(text, end="")
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, TypeAlias, runtime_checkable

from coderide.core.console import get_logger

if TYPE_CHECKING:
    from coderide.core.workspace import WorkspaceContext

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Started:
    """The provider accepted the prompt."""


@dataclass(frozen=True, slots=True)
class TextDelta:
    """A chunk of model output text."""

    text: str


@dataclass(frozen=True, slots=True)
class Completed:
    """The stream finished normally."""


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    """The stream finished with an error."""

    message: str


_TOOL_KEYS = frozenset({"tool_call_id", "tool", "duration_ms", "status", "swarm_id", "group_id"})

ACTIVITY_PAYLOAD_KEYS: Mapping[str, frozenset[str]] = {
    "agent": frozenset({"title", "detail", "role", "order"}),
    "swarm_steps": frozenset({"steps", "groups"}),
    "swarm_cancelled": frozenset({"reason", "completed_groups"}),
    "mcp_tool_call": _TOOL_KEYS | {"title", "detail", "args", "agent", "error"},
    "read_batch_started": frozenset({"tool_call_id", "files", "count", "agent"}),
    "read_batch_completed": _TOOL_KEYS
    | {"path", "pattern", "files", "count", "lines", "output", "truncated", "agent", "error"},
    "file_change": _TOOL_KEYS
    | {"path", "linesAdded", "linesRemoved", "diffPreview", "created", "agent", "error"},
    "command_execution": _TOOL_KEYS
    | {"command", "exit_code", "output", "truncated", "timed_out", "agent", "error"},
    "tool_execution_error": _TOOL_KEYS | {"error", "reason", "path", "agent"},
    "tool_validation_error": frozenset({"error", "marker", "agent"}),
    "todo_read": frozenset({"id", "agent"}),
    "todo_write": frozenset({"id", "todos", "items", "agent"}),
    "instant_grep": frozenset({"id", "pattern", "path", "agent"}),
    "plan_step_update": frozenset({"id", "step", "status", "title", "agent"}),
    "web_search_started": frozenset({"id", "query", "agent"}),
    "tool_call_suggested": frozenset({"id", "name", "args", "is_partial", "agent"}),
    "review_failure": frozenset({"breakdown", "partitions", "round"}),
}
"""Closed table of known activity event types and the payload keys each may carry."""


@dataclass(frozen=True, slots=True)
class RawEvent:
    """A structured activity event (tool call, agent status, ...)."""

    type: str
    payload: dict[str, str] = field(default_factory=dict)

    def unknown_keys(self) -> set[str]:
        """Payload keys outside the known table for this event type."""
        known = ACTIVITY_PAYLOAD_KEYS.get(self.type)
        if known is None:
            return set(self.payload)
        return set(self.payload) - known

    def with_payload(self, **extra: str) -> RawEvent:
        return RawEvent(type=self.type, payload={**self.payload, **extra})


StreamEvent: TypeAlias = Started | TextDelta | Completed | ErrorEvent | RawEvent


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, Completed | ErrorEvent)


# ---------------------------------------------------------------------------
# Provider protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class LLMProvider(Protocol):
    """Protocol all LLM backends implement.

    ``send`` is an async generator: it yields a Started event, output and
    activity events, then exactly one Completed or ErrorEvent.
    """

    @property
    def provider_id(self) -> str: ...

    def send(
        self,
        prompt: str,
        context: WorkspaceContext,
        image_refs: Sequence[Path] | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


class EventStream:
    """Async iterator wrapper guaranteeing exactly one terminal event.

    - Events after the first terminal event are dropped.
    - An exception raised by the source becomes an ErrorEvent.
    - A source that ends without a terminal event gets a Completed appended.
    """

    def __init__(self, source: AsyncIterator[StreamEvent]) -> None:
        self._source = source

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        try:
            async for event in self._source:
                yield event
                if is_terminal(event):
                    return
        except Exception as exc:
            logger.warning("Provider stream failed: %s", exc)
            yield ErrorEvent(message=str(exc) or type(exc).__name__)
            return
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()
        yield Completed()


async def collect_text(stream: AsyncIterator[StreamEvent]) -> tuple[str, str | None]:
    """Drain a stream, returning the concatenated text and the error message, if any."""
    parts: list[str] = []
    error: str | None = None
    async for event in EventStream(stream):
        match event:
            case TextDelta(text=text):
                parts.append(text)
            case ErrorEvent(message=message):
                error = message
    return "".join(parts), error


__all__ = [
    "ACTIVITY_PAYLOAD_KEYS",
    "Completed",
    "ErrorEvent",
    "EventStream",
    "LLMProvider",
    "RawEvent",
    "Started",
    "StreamEvent",
    "TextDelta",
    "collect_text",
    "is_terminal",
]
