"""Tests for the sandboxed tool runtime."""

from __future__ import annotations

from pathlib import Path

import pytest

from coderide.core.security import SandboxMode
from coderide.core.workspace import WorkspaceContext
from coderide.tools.runtime import (
    ToolCall,
    ToolExecutionContext,
    ToolRuntime,
    ToolRuntimePolicy,
    terminal_event_type,
)


def _context(root: Path, mode: SandboxMode = SandboxMode.WORKSPACE_WRITE) -> ToolExecutionContext:
    return ToolExecutionContext(
        workspace=WorkspaceContext.for_root(root),
        policy=ToolRuntimePolicy(sandbox_mode=mode, timeout_ms=10_000),
    )


class TestReadTools:
    """Test read, ls, glob and grep."""

    @pytest.mark.asyncio
    async def test_read_file(self, workspace: Path) -> None:
        result = await ToolRuntime().run(ToolCall("read", {"path": "src/app.py"}), _context(workspace))
        assert result.ok
        assert result.payload["path"] == "src/app.py"
        assert result.payload["output"].startswith("def main():")
        assert result.payload["lines"] == "2"
        assert result.payload["truncated"] == "false"
        assert result.duration_ms >= 1

    @pytest.mark.asyncio
    async def test_read_truncates_to_policy(self, workspace: Path) -> None:
        (workspace / "big.py").write_text("x" * 100, encoding="utf-8")
        context = ToolExecutionContext(
            workspace=WorkspaceContext.for_root(workspace),
            policy=ToolRuntimePolicy(max_read_chars=10),
        )
        result = await ToolRuntime().run(ToolCall("read", {"path": "big.py"}), context)
        assert result.payload["output"] == "x" * 10
        assert result.payload["truncated"] == "true"

    @pytest.mark.asyncio
    async def test_read_missing_file_fails(self, workspace: Path) -> None:
        result = await ToolRuntime().run(ToolCall("read", {"path": "nope.py"}), _context(workspace))
        assert not result.ok
        assert result.payload["reason"] == "execution_failed"
        assert "not found" in result.payload["error"].lower()

    @pytest.mark.asyncio
    async def test_read_requires_path(self, workspace: Path) -> None:
        result = await ToolRuntime().run(ToolCall("read", {}), _context(workspace))
        assert not result.ok
        assert "path" in result.payload["error"]

    @pytest.mark.asyncio
    async def test_ls_lists_entries(self, workspace: Path) -> None:
        result = await ToolRuntime().run(ToolCall("ls", {}), _context(workspace))
        assert result.ok
        assert result.payload["output"].splitlines() == ["README.md", "src/", "tests/"]

    @pytest.mark.asyncio
    async def test_glob_finds_files(self, workspace: Path) -> None:
        result = await ToolRuntime().run(ToolCall("glob", {"pattern": "**/*.py"}), _context(workspace))
        assert result.ok
        assert result.payload["output"].splitlines() == [
            "src/app.py",
            "src/util.py",
            "tests/test_app.py",
        ]
        assert result.payload["count"] == "3"

    @pytest.mark.asyncio
    async def test_glob_skips_hidden_and_dependency_dirs(self, workspace: Path) -> None:
        (workspace / "node_modules").mkdir()
        (workspace / "node_modules" / "dep.py").write_text("", encoding="utf-8")
        (workspace / ".hidden").mkdir()
        (workspace / ".hidden" / "secret.py").write_text("", encoding="utf-8")
        result = await ToolRuntime().run(ToolCall("glob", {"pattern": "*.py"}), _context(workspace))
        assert "dep.py" not in result.payload["output"]
        assert "secret.py" not in result.payload["output"]

    @pytest.mark.asyncio
    async def test_grep_matches(self, workspace: Path) -> None:
        result = await ToolRuntime().run(ToolCall("grep", {"pattern": "VALUE"}), _context(workspace))
        assert result.ok
        assert "util.py" in result.payload["output"]
        assert result.payload["count"] == "1"

    @pytest.mark.asyncio
    async def test_grep_without_matches_is_success(self, workspace: Path) -> None:
        result = await ToolRuntime().run(
            ToolCall("grep", {"pattern": "does-not-occur-anywhere", "pathScope": "src"}),
            _context(workspace),
        )
        assert result.ok
        assert result.payload["count"] == "0"
        assert result.payload["path"] == "src"


class TestWriteTools:
    """Test write, edit, patch and mkdir."""

    @pytest.mark.asyncio
    async def test_write_creates_file_with_diff_summary(self, workspace: Path) -> None:
        result = await ToolRuntime().run(
            ToolCall("write", {"path": "pkg/new.py", "content": "a = 1\nb = 2\n"}),
            _context(workspace),
        )
        assert result.ok
        assert (workspace / "pkg" / "new.py").read_text(encoding="utf-8") == "a = 1\nb = 2\n"
        assert result.payload["created"] == "true"
        assert result.payload["linesAdded"] == "2"
        assert result.payload["linesRemoved"] == "0"

    @pytest.mark.asyncio
    async def test_edit_replaces_content(self, workspace: Path) -> None:
        result = await ToolRuntime().run(
            ToolCall("edit", {"path": "src/util.py", "content": "VALUE = 3\n"}),
            _context(workspace),
        )
        assert result.ok
        assert result.payload["created"] == "false"
        assert result.payload["linesAdded"] == "1"
        assert result.payload["linesRemoved"] == "1"
        assert "+VALUE = 3" in result.payload["diffPreview"]

    @pytest.mark.asyncio
    async def test_patch_search_replace(self, workspace: Path) -> None:
        result = await ToolRuntime().run(
            ToolCall("patch", {"path": "src/app.py", "search": "return 1", "replace": "return 42"}),
            _context(workspace),
        )
        assert result.ok
        assert "return 42" in (workspace / "src" / "app.py").read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_patch_missing_search_text_hints(self, workspace: Path) -> None:
        result = await ToolRuntime().run(
            ToolCall("patch", {"path": "src/app.py", "search": "return 2", "replace": "x"}),
            _context(workspace),
        )
        assert not result.ok
        assert "Search text not found" in result.payload["error"]
        assert "return 1" in result.payload["error"]

    @pytest.mark.asyncio
    async def test_mkdir(self, workspace: Path) -> None:
        result = await ToolRuntime().run(ToolCall("mkdir", {"path": "a/b"}), _context(workspace))
        assert result.ok
        assert (workspace / "a" / "b").is_dir()
        assert result.payload["created"] == "true"


class TestSandbox:
    """Test sandbox enforcement."""

    @pytest.mark.asyncio
    async def test_path_escape_is_rejected(self, workspace: Path) -> None:
        (workspace.parent / "outside.txt").write_text("secret", encoding="utf-8")
        result = await ToolRuntime().run(ToolCall("read", {"path": "../outside.txt"}), _context(workspace))
        assert not result.ok
        assert result.payload["reason"] == "sandbox_violation"

    @pytest.mark.asyncio
    async def test_full_access_allows_outside_paths(self, workspace: Path) -> None:
        outside = workspace.parent / "outside.txt"
        outside.write_text("visible", encoding="utf-8")
        result = await ToolRuntime().run(
            ToolCall("read", {"path": str(outside)}),
            _context(workspace, SandboxMode.FULL_ACCESS),
        )
        assert result.ok
        assert result.payload["output"] == "visible"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["write", "edit", "patch", "mkdir", "bash"])
    async def test_read_only_blocks_mutating_tools(self, workspace: Path, name: str) -> None:
        args = {"path": "src/app.py", "content": "x", "search": "return", "command": "touch z"}
        result = await ToolRuntime().run(ToolCall(name, args), _context(workspace, SandboxMode.READ_ONLY))
        assert not result.ok
        assert result.payload["reason"] == "sandbox_violation"
        assert (workspace / "src" / "app.py").read_text(encoding="utf-8").startswith("def main")
        assert not (workspace / "z").exists()

    @pytest.mark.asyncio
    async def test_read_only_allows_reads(self, workspace: Path) -> None:
        result = await ToolRuntime().run(
            ToolCall("read", {"path": "README.md"}), _context(workspace, SandboxMode.READ_ONLY)
        )
        assert result.ok

    @pytest.mark.asyncio
    async def test_forbidden_shell_binary(self, workspace: Path) -> None:
        result = await ToolRuntime().run(
            ToolCall("bash", {"command": "ls && sudo rm -rf /"}), _context(workspace)
        )
        assert not result.ok
        assert result.payload["reason"] == "sandbox_violation"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, workspace: Path) -> None:
        result = await ToolRuntime().run(ToolCall("teleport", {}), _context(workspace))
        assert not result.ok
        assert result.payload["reason"] == "execution_failed"
        assert "Supported tools" in result.payload["error"]


class TestBash:
    """Test the shell tool."""

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, workspace: Path) -> None:
        result = await ToolRuntime().run(ToolCall("bash", {"command": "ls src"}), _context(workspace))
        assert result.ok
        assert result.payload["exit_code"] == "0"
        assert "app.py" in result.payload["output"]

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_failed_command(self, workspace: Path) -> None:
        events = await ToolRuntime().execute(ToolCall("bash", {"command": "exit 3"}), _context(workspace))
        terminal = events[-1]
        assert terminal.type == "command_execution"
        assert terminal.payload["status"] == "failed"
        assert terminal.payload["exit_code"] == "3"

    @pytest.mark.asyncio
    async def test_timeout(self, workspace: Path) -> None:
        context = ToolExecutionContext(
            workspace=WorkspaceContext.for_root(workspace),
            policy=ToolRuntimePolicy(timeout_ms=200),
        )
        result = await ToolRuntime().run(ToolCall("bash", {"command": "sleep 5"}), context)
        assert not result.ok
        assert result.payload["timed_out"] == "true"


class TestExecuteEvents:
    """Test the activity events reported by execute()."""

    @pytest.mark.asyncio
    async def test_started_then_terminal(self, workspace: Path) -> None:
        call = ToolCall("read", {"path": "src/app.py"}, id="t1", swarm_id="p0")
        started, terminal = await ToolRuntime().execute(call, _context(workspace))

        assert started.type == "mcp_tool_call"
        assert started.payload["status"] == "started"
        assert started.payload["tool_call_id"] == "t1"
        assert terminal.type == "read_batch_completed"
        assert terminal.payload["status"] == "completed"
        assert terminal.payload["group_id"] == "swarm-p0"
        assert int(terminal.payload["duration_ms"]) >= 1

    @pytest.mark.asyncio
    async def test_failure_becomes_tool_execution_error(self, workspace: Path) -> None:
        events = await ToolRuntime().execute(ToolCall("read", {"path": "../x"}), _context(workspace))
        assert events[-1].type == "tool_execution_error"
        assert events[-1].payload["status"] == "failed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "call",
        [
            ToolCall("grep", {"pattern": "a\x00b"}),
            ToolCall("bash", {"command": "echo a\x00b"}),
            ToolCall("write", {"path": "x.txt", "content": "\ud800"}),
        ],
        ids=["grep-nul", "bash-nul", "write-surrogate"],
    )
    async def test_invalid_arguments_become_failed_results(self, workspace: Path, call: ToolCall) -> None:
        events = await ToolRuntime().execute(call, _context(workspace))

        assert events[-1].type == "tool_execution_error"
        assert events[-1].payload["status"] == "failed"
        assert events[-1].payload["reason"] == "invalid_argument"
        assert not (workspace / "x.txt").exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("call", "expected"),
        [
            (ToolCall("glob", {"pattern": "*.py"}), "read_batch_completed"),
            (ToolCall("write", {"path": "n.py", "content": "x\n"}), "file_change"),
            (ToolCall("bash", {"command": "echo hi"}), "command_execution"),
            (ToolCall("mcp", {"tool": "search"}), "mcp_tool_call"),
        ],
    )
    async def test_payload_keys_are_known(self, workspace: Path, call: ToolCall, expected: str) -> None:
        events = await ToolRuntime().execute(call, _context(workspace))
        assert events[-1].type == expected
        for event in events:
            assert event.unknown_keys() == set()


class TestTerminalEventType:
    """Test the tool to event type mapping."""

    def test_mapping(self) -> None:
        assert terminal_event_type("read") == "read_batch_completed"
        assert terminal_event_type("grep") == "read_batch_completed"
        assert terminal_event_type("patch") == "file_change"
        assert terminal_event_type("bash") == "command_execution"
        assert terminal_event_type("mcp") == "mcp_tool_call"
