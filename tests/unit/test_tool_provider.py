"""Tests for the tool-enabled provider wrapper."""

from __future__ import annotations

from pathlib import Path

import pytest

from coderide.core.security import SandboxMode
from coderide.core.workspace import WorkspaceContext
from coderide.protocol.markers import MAX_CARRY_LENGTH, encode_marker
from coderide.providers import Completed, ErrorEvent, RawEvent, Started, TextDelta
from coderide.tools.provider import ToolEnabledProvider
from coderide.tools.runtime import ToolRuntimePolicy
from mocks.mock_provider import MockProvider, drain, raw_events, text_of


def _stream(*chunks: str) -> list[object]:
    return [Started(), *(TextDelta(text=chunk) for chunk in chunks), Completed()]


class TestMarkerExecution:
    """Test markers in model text driving the tool runtime."""

    @pytest.mark.asyncio
    async def test_read_marker_runs_and_feeds_back(self, workspace: Path) -> None:
        base = MockProvider(queue=["Looking. [CODERIDE:read|path=src/app.py]", "All done."])
        provider = ToolEnabledProvider(base)
        events = await drain(provider.send("Explain app.py", WorkspaceContext.for_root(workspace)))

        assert base.call_count == 2
        assert base.prompts[0].startswith("You can use workspace tools")
        assert base.prompts[0].rstrip().endswith("Explain app.py")
        assert "Tool results:" in base.prompts[1]
        assert "def main():" in base.prompts[1]
        assert "Looking." in base.prompts[1]

        assert sum(isinstance(event, Started) for event in events) == 1
        assert sum(isinstance(event, Completed) for event in events) == 1
        assert isinstance(events[-1], Completed)
        completed = raw_events(events, "read_batch_completed")
        assert completed[0].payload["path"] == "src/app.py"
        assert "All done." in text_of(events)

    @pytest.mark.asyncio
    async def test_no_markers_means_single_round(self, workspace: Path) -> None:
        base = MockProvider(default="Plain answer.")
        events = await drain(ToolEnabledProvider(base).send("hi", WorkspaceContext.for_root(workspace)))
        assert base.call_count == 1
        assert text_of(events) == "Plain answer."

    @pytest.mark.asyncio
    async def test_marker_split_across_chunks(self, workspace: Path) -> None:
        base = MockProvider(queue=[_stream("[CODERIDE:re", "ad|path=src/util.py]"), "ok"])
        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))
        assert raw_events(events, "read_batch_completed")[0].payload["output"] == "VALUE = 2\n"

    @pytest.mark.asyncio
    async def test_long_write_streamed_line_by_line(self, workspace: Path) -> None:
        content = "\n".join(f"line {index:03d} " + "x" * 24 for index in range(150))
        assert len(content) > MAX_CARRY_LENGTH * 2
        marker = encode_marker("tool_call", {"name": "write", "path": "big.txt", "content": content})
        base = MockProvider(queue=[_stream(*marker.splitlines(keepends=True)), "ok"])

        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))

        assert (workspace / "big.txt").read_text(encoding="utf-8") == content
        assert len(raw_events(events, "file_change")) == 1

    @pytest.mark.asyncio
    async def test_duplicate_markers_run_once(self, workspace: Path) -> None:
        marker = "[CODERIDE:read|path=src/app.py]"
        base = MockProvider(queue=[f"{marker} and again {marker}", f"repeat {marker}", "done"])
        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))

        assert len(raw_events(events, "read_batch_completed")) == 1
        assert base.call_count == 2

    @pytest.mark.asyncio
    async def test_tool_call_marker_writes_file(self, workspace: Path) -> None:
        base = MockProvider(queue=["[CODERIDE:tool_call|name=write|path=notes.txt|content=hello]", "ok"])
        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))

        assert (workspace / "notes.txt").read_text(encoding="utf-8") == "hello"
        change = raw_events(events, "file_change")[0]
        assert change.payload["status"] == "completed"
        assert change.payload["created"] == "true"

    @pytest.mark.asyncio
    async def test_tool_call_without_name_is_validation_error(self, workspace: Path) -> None:
        base = MockProvider(default="[CODERIDE:tool_call|path=a.py]")
        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))

        errors = raw_events(events, "tool_validation_error")
        assert "missing 'name'" in errors[0].payload["error"]
        assert base.call_count == 1

    @pytest.mark.asyncio
    async def test_read_only_policy_blocks_writes(self, workspace: Path) -> None:
        base = MockProvider(queue=["[CODERIDE:tool_call|name=bash|command=touch x]", "ok"])
        provider = ToolEnabledProvider(base, policy=ToolRuntimePolicy(sandbox_mode=SandboxMode.READ_ONLY))
        events = await drain(provider.send("x", WorkspaceContext.for_root(workspace)))

        error = raw_events(events, "tool_execution_error")[0]
        assert error.payload["reason"] == "sandbox_violation"
        assert not (workspace / "x").exists()
        assert "read-only" in base.prompts[1]

    @pytest.mark.asyncio
    async def test_read_batch(self, workspace: Path) -> None:
        base = MockProvider(queue=["[CODERIDE:read_batch|files=src/app.py, src/util.py, missing.py]", "ok"])
        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))

        started = raw_events(events, "read_batch_started")[0]
        assert started.payload["count"] == "3"
        completed = raw_events(events, "read_batch_completed")[0]
        assert completed.payload["status"] == "completed"
        assert "=== src/app.py ===" in completed.payload["output"]
        assert "VALUE = 2" in completed.payload["output"]
        assert "=== missing.py ===\n[error]" in completed.payload["output"]
        assert completed.unknown_keys() == set()

    @pytest.mark.asyncio
    async def test_unknown_marker_kind_is_ignored(self, workspace: Path) -> None:
        base = MockProvider(default="[CODERIDE:teleport|to=mars]")
        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))
        assert raw_events(events) == []
        assert base.call_count == 1


class TestPassThrough:
    """Test markers that become activity events without running tools."""

    @pytest.mark.asyncio
    async def test_todo_and_plan_step(self, workspace: Path) -> None:
        base = MockProvider(default="[CODERIDE:todo_read] [CODERIDE:plan_step|step=1|status=done|title=Parse|bogus=1]")
        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))

        assert raw_events(events, "todo_read") == [RawEvent(type="todo_read")]
        step = raw_events(events, "plan_step_update")[0]
        assert step.payload == {"step": "1", "status": "done", "title": "Parse"}
        assert base.call_count == 1

    @pytest.mark.asyncio
    async def test_native_tool_call_suggestion_runs(self, workspace: Path) -> None:
        suggestion = RawEvent(
            type="tool_call_suggested",
            payload={"id": "c1", "name": "read", "args": '{"path": "src/app.py"}'},
        )
        base = MockProvider(queue=[[Started(), suggestion, Completed()], "ok"])
        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))

        completed = raw_events(events, "read_batch_completed")[0]
        assert completed.payload["tool_call_id"] == "c1"
        assert raw_events(events, "tool_call_suggested") == []

    @pytest.mark.asyncio
    async def test_partial_suggestion_is_forwarded(self, workspace: Path) -> None:
        partial = RawEvent(type="tool_call_suggested", payload={"name": "read", "is_partial": "true"})
        base = MockProvider(default=[Started(), partial, Completed()])
        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))
        assert raw_events(events, "tool_call_suggested") == [partial]


class TestRoundsAndErrors:
    """Test round limits and error propagation."""

    @pytest.mark.asyncio
    async def test_round_limit(self, workspace: Path) -> None:
        calls = {"n": 0}

        def respond(prompt: str, _: WorkspaceContext) -> str:
            calls["n"] += 1
            return f"[CODERIDE:read|id=r{calls['n']}|path=src/app.py]"

        base = MockProvider(responder=respond)
        events = await drain(
            ToolEnabledProvider(base, max_tool_rounds=3).send("x", WorkspaceContext.for_root(workspace))
        )
        assert base.call_count == 3
        assert isinstance(events[-1], Completed)

    @pytest.mark.asyncio
    async def test_base_error_ends_stream(self, workspace: Path) -> None:
        base = MockProvider(default=[Started(), TextDelta(text="par"), ErrorEvent(message="backend died")])
        events = await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace)))

        assert events[-1] == ErrorEvent(message="backend died")
        assert not any(isinstance(event, Completed) for event in events)

    @pytest.mark.asyncio
    async def test_images_only_sent_in_first_round(self, workspace: Path) -> None:
        base = MockProvider(queue=["[CODERIDE:read|path=src/app.py]", "ok"])
        image = workspace / "shot.png"
        await drain(ToolEnabledProvider(base).send("x", WorkspaceContext.for_root(workspace), [image]))
        assert base.image_refs == [[image], None]

    def test_provider_id(self) -> None:
        assert ToolEnabledProvider(MockProvider()).provider_id == "mock+tools"
