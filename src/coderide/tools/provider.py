"""
Tool-enabled provider wrapper.

Wraps any LLMProvider so that markers emitted in its text stream are
executed by the ToolRuntime. When a round produced tool results, a
follow-up prompt carrying the transcript and the results is sent to the
base provider, up to ``max_tool_rounds`` rounds.

Usage:
    from coderide.tools.provider import ToolEnabledProvider

    provider = ToolEnabledProvider(CommandProvider("codex", ["exec"]))
    async for event in provider.send("Fix the failing test", context):
        ...
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from coderide.core.console import get_logger
from coderide.core.runtime import ExecutionScope
from coderide.core.templates import render_template
from coderide.core.workspace import WorkspaceContext
from coderide.protocol.markers import Marker, encode_marker, parse_streaming_chunk
from coderide.providers import (
    ACTIVITY_PAYLOAD_KEYS,
    Completed,
    ErrorEvent,
    EventStream,
    LLMProvider,
    RawEvent,
    Started,
    StreamEvent,
    TextDelta,
)
from coderide.tools.runtime import (
    SUPPORTED_TOOLS,
    ToolCall,
    ToolExecutionContext,
    ToolRuntime,
    ToolRuntimePolicy,
)

logger = get_logger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 20
SUMMARY_OUTPUT_CHARS = 3000
READ_BATCH_SUMMARY_CHARS = 6000
READ_BATCH_OUTPUT_CHARS = 12_000

PASS_THROUGH_KINDS: dict[str, str] = {
    "todo_read": "todo_read",
    "todo_write": "todo_write",
    "instant_grep": "instant_grep",
    "plan_step": "plan_step_update",
    "web_search": "web_search_started",
}
DIRECT_TOOL_KINDS = frozenset({"read", "glob", "grep"})


@dataclass(frozen=True, slots=True)
class ToolResultSummary:
    """Condensed tool result fed back to the model."""

    id: str
    name: str
    status: str
    detail: str
    path: str | None = None
    output: str = ""


@dataclass(slots=True)
class _RoundState:
    carry: str = ""
    text: list[str] = field(default_factory=list)
    results: list[ToolResultSummary] = field(default_factory=list)


def _summarize(name: str, payload: dict[str, str], limit: int = SUMMARY_OUTPUT_CHARS) -> ToolResultSummary:
    status = payload.get("status", "completed")
    if "error" in payload:
        detail = payload["error"]
    elif "exit_code" in payload:
        detail = f"exit code {payload['exit_code']}"
    elif "linesAdded" in payload:
        detail = f"+{payload['linesAdded']} -{payload.get('linesRemoved', '0')}"
    elif "count" in payload:
        detail = f"{payload['count']} results"
    else:
        detail = status
    output = payload.get("output") or payload.get("diffPreview", "")
    return ToolResultSummary(
        id=payload.get("tool_call_id", ""),
        name=name,
        status=status,
        detail=detail,
        path=payload.get("path"),
        output=output[:limit],
    )


def _known_payload(event_type: str, payload: dict[str, str]) -> dict[str, str]:
    allowed = ACTIVITY_PAYLOAD_KEYS.get(event_type, frozenset())
    return {key: value for key, value in payload.items() if key in allowed}


def _decode_args(raw: str) -> dict[str, str]:
    """Decode a JSON object of tool arguments into string values."""
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(decoded, dict):
        return {}
    return {
        str(key): value if isinstance(value, str) else json.dumps(value)
        for key, value in decoded.items()
    }


class ToolEnabledProvider:
    """LLMProvider that executes markers found in the wrapped provider's output."""

    def __init__(
        self,
        base: LLMProvider,
        *,
        runtime: ToolRuntime | None = None,
        policy: ToolRuntimePolicy | None = None,
        scope: ExecutionScope = ExecutionScope.AGENT,
        swarm_id: str | None = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
    ) -> None:
        self._base = base
        self._runtime = runtime or ToolRuntime()
        self._policy = policy or ToolRuntimePolicy()
        self._scope = scope
        self._swarm_id = swarm_id
        self._max_tool_rounds = max(1, max_tool_rounds)
        self._preamble: str | None = None

    @property
    def provider_id(self) -> str:
        return f"{self._base.provider_id}+tools"

    @property
    def preamble(self) -> str:
        if self._preamble is None:
            self._preamble = render_template(
                "tool_protocol.j2",
                {"tools": SUPPORTED_TOOLS, "sandbox_mode": self._policy.sandbox_mode.value},
            ).strip()
        return self._preamble

    async def send(
        self,
        prompt: str,
        context: WorkspaceContext,
        image_refs: Sequence[Path] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        seen: set[str] = set()
        transcript: list[str] = []
        tool_context = ToolExecutionContext(workspace=context, policy=self._policy, scope=self._scope)
        current_prompt = f"{self.preamble}\n\n{prompt}"

        for round_index in range(self._max_tool_rounds):
            state = _RoundState()
            images = image_refs if round_index == 0 else None
            source = EventStream(self._base.send(current_prompt, context, images))
            async with aclosing(aiter(source)) as events:
                async for event in events:
                    match event:
                        case Started():
                            if round_index == 0:
                                yield event
                        case TextDelta(text=text):
                            yield event
                            state.text.append(text)
                            # Unbounded: a write marker spans as many deltas as its content has lines.
                            markers, state.carry = parse_streaming_chunk(
                                text, state.carry, max_carry=None
                            )
                            for marker in markers:
                                for activity in await self._handle_marker(
                                    marker, tool_context, seen, state
                                ):
                                    yield activity
                        case RawEvent(type="tool_call_suggested", payload=payload):
                            marker = self._suggested_marker(payload)
                            if marker is None:
                                yield event
                                continue
                            for activity in await self._handle_marker(
                                marker, tool_context, seen, state
                            ):
                                yield activity
                        case RawEvent():
                            yield event
                        case ErrorEvent():
                            yield event
                            return
                        case Completed():
                            break

            transcript.append("".join(state.text))
            if not state.results:
                break
            if round_index + 1 >= self._max_tool_rounds:
                logger.info("Tool round limit (%s) reached", self._max_tool_rounds)
                break
            current_prompt = render_template(
                "tool_followup.j2",
                {
                    "preamble": self.preamble,
                    "prompt": prompt,
                    "transcript": transcript,
                    "results": state.results,
                },
            )
            logger.debug("Starting tool round %s with %s results", round_index + 2, len(state.results))

        yield Completed()

    def _suggested_marker(self, payload: dict[str, str]) -> Marker | None:
        if payload.get("is_partial", "").lower() == "true":
            return None
        name = payload.get("name", "").strip()
        if not name:
            return None
        marker_payload = {"name": name, **_decode_args(payload.get("args", "{}"))}
        if payload.get("id"):
            marker_payload["id"] = payload["id"]
        return Marker(kind="tool_call", payload=marker_payload)

    async def _handle_marker(
        self,
        marker: Marker,
        tool_context: ToolExecutionContext,
        seen: set[str],
        state: _RoundState,
    ) -> list[RawEvent]:
        fingerprint = marker.fingerprint
        if fingerprint in seen:
            return []
        seen.add(fingerprint)

        kind = marker.kind
        if kind in PASS_THROUGH_KINDS:
            event_type = PASS_THROUGH_KINDS[kind]
            return [RawEvent(type=event_type, payload=_known_payload(event_type, marker.payload))]
        if kind == "read_batch":
            return await self._read_batch(marker, tool_context, state)
        if kind == "tool_call":
            name = marker.payload.get("name", "").strip()
            if not name:
                return [
                    RawEvent(
                        type="tool_validation_error",
                        payload={
                            "error": "tool_call marker is missing 'name'",
                            "marker": encode_marker(kind, marker.payload)[:300],
                        },
                    )
                ]
            args = {k: v for k, v in marker.payload.items() if k not in ("name", "id")}
            if "args" in args:
                args = {**_decode_args(args.pop("args")), **args}
            return await self._run_tool(name, args, marker, tool_context, state)
        if kind in DIRECT_TOOL_KINDS:
            args = {k: v for k, v in marker.payload.items() if k != "id"}
            return await self._run_tool(kind, args, marker, tool_context, state)

        logger.debug("Ignoring unknown marker kind %r", kind)
        return []

    def _new_call(self, name: str, args: dict[str, str], marker: Marker) -> ToolCall:
        return ToolCall(
            name=name,
            args=args,
            id=marker.payload.get("id") or f"tool-{uuid4().hex[:12]}",
            source_provider=self._base.provider_id,
            swarm_id=self._swarm_id,
            scope=self._scope,
        )

    async def _run_tool(
        self,
        name: str,
        args: dict[str, str],
        marker: Marker,
        tool_context: ToolExecutionContext,
        state: _RoundState,
    ) -> list[RawEvent]:
        call = self._new_call(name, args, marker)
        events = await self._runtime.execute(call, tool_context)
        state.results.append(_summarize(name, events[-1].payload))
        return events

    async def _read_batch(
        self,
        marker: Marker,
        tool_context: ToolExecutionContext,
        state: _RoundState,
    ) -> list[RawEvent]:
        files = [item.strip() for item in marker.payload.get("files", "").split(",") if item.strip()]
        call_id = marker.payload.get("id") or f"batch-{uuid4().hex[:12]}"
        started = RawEvent(
            type="read_batch_started",
            payload={"tool_call_id": call_id, "files": ",".join(files), "count": str(len(files))},
        )

        sections: list[str] = []
        failures = 0
        duration_ms = 0
        for path in files:
            result = await self._runtime.run(self._new_call("read", {"path": path}, Marker("read")), tool_context)
            duration_ms += result.duration_ms
            if result.ok:
                sections.append(f"=== {path} ===\n{result.payload.get('output', '')}")
            else:
                failures += 1
                sections.append(f"=== {path} ===\n[error] {result.payload.get('error', 'read failed')}")

        combined = "\n\n".join(sections)[:READ_BATCH_OUTPUT_CHARS]
        status = "failed" if files and failures == len(files) else "completed"
        payload = {
            "tool_call_id": call_id,
            "tool": "read_batch",
            "files": ",".join(files),
            "count": str(len(files)),
            "output": combined,
            "status": status,
            "duration_ms": str(max(1, duration_ms)),
        }
        if self._swarm_id:
            payload["swarm_id"] = self._swarm_id
            payload["group_id"] = f"swarm-{self._swarm_id}"
        state.results.append(_summarize("read_batch", payload, READ_BATCH_SUMMARY_CHARS))
        return [started, RawEvent(type="read_batch_completed", payload=payload)]


__all__ = ["DEFAULT_MAX_TOOL_ROUNDS", "ToolEnabledProvider", "ToolResultSummary"]
