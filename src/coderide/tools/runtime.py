"""
Sandboxed execution of model-requested tools.

The runtime takes a ToolCall (from a marker or a native tool-call event),
checks it against the sandbox policy, runs it, and reports it as activity
events: an ``mcp_tool_call`` started event followed by exactly one
terminal event whose type depends on the tool.

Failures never raise out of the runtime; they become a failed ToolResult
and a ``tool_execution_error`` event.

Usage:
    from coderide.tools.runtime import ToolCall, ToolExecutionContext, ToolRuntime

    runtime = ToolRuntime()
    events = await runtime.execute(
        ToolCall(name="read", args={"path": "README.md"}),
        ToolExecutionContext(workspace=context),
    )
"""

from __future__ import annotations

import asyncio
import difflib
import json
import os
import shutil
import tempfile
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from coderide.core.console import get_logger
from coderide.core.result import Err, Ok, SecurityError, ToolExecutionError
from coderide.core.runtime import ExecutionScope
from coderide.core.security import (
    SandboxMode,
    check_shell_command,
    is_within,
    resolve_workspace_path,
)
from coderide.core.sys import run_collecting, run_shell
from coderide.core.workspace import WorkspaceContext
from coderide.providers import RawEvent

logger = get_logger(__name__)

SUPPORTED_TOOLS: tuple[str, ...] = (
    "read",
    "ls",
    "glob",
    "grep",
    "edit",
    "write",
    "patch",
    "mkdir",
    "bash",
    "mcp",
)
READ_TOOLS = frozenset({"read", "ls", "glob", "grep"})
WRITE_TOOLS = frozenset({"edit", "write", "patch", "mkdir"})
MUTATING_TOOLS = WRITE_TOOLS | {"bash"}

GLOB_MAX_DEPTH = 8
GLOB_MAX_RESULTS = 300
GREP_MAX_RESULTS = 200
LS_MAX_ENTRIES = 500
DIFF_PREVIEW_LINES = 60
GLOB_PRUNED_DIRS = ("node_modules", ".build")


@dataclass(frozen=True, slots=True)
class ToolCall:
    """A request to run one tool with string arguments."""

    name: str
    args: dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"tool-{uuid4().hex[:12]}")
    source_provider: str = "unknown"
    swarm_id: str | None = None
    scope: ExecutionScope = ExecutionScope.AGENT


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Outcome of a tool call. Failures are results, never exceptions."""

    ok: bool
    payload: dict[str, str]
    duration_ms: int


@dataclass(frozen=True, slots=True)
class ToolRuntimePolicy:
    """Limits applied to every tool call."""

    sandbox_mode: SandboxMode = SandboxMode.WORKSPACE_WRITE
    timeout_ms: int = 60_000
    max_read_chars: int = 12_000
    max_output_chars: int = 8_000
    max_diff_chars: int = 4_000


@dataclass(frozen=True, slots=True)
class ToolExecutionContext:
    """Where and under which policy a call runs."""

    workspace: WorkspaceContext
    policy: ToolRuntimePolicy = field(default_factory=ToolRuntimePolicy)
    scope: ExecutionScope = ExecutionScope.AGENT

    @property
    def root(self) -> Path:
        return self.workspace.root


@dataclass(frozen=True, slots=True)
class _Outcome:
    payload: dict[str, str]
    ok: bool = True


def terminal_event_type(tool: str) -> str:
    """Activity event type reported when ``tool`` completes successfully."""
    if tool in READ_TOOLS:
        return "read_batch_completed"
    if tool in WRITE_TOOLS:
        return "file_change"
    if tool == "bash":
        return "command_execution"
    return "mcp_tool_call"


def _cap(text: str, limit: int) -> tuple[str, bool]:
    if len(text) <= limit:
        return text, False
    return text[:limit], True


def _display_path(path: Path, root: Path) -> str:
    resolved_root = root.resolve()
    if is_within(path, resolved_root):
        relative = path.relative_to(resolved_root).as_posix()
        return relative or "."
    return str(path)


def _require(call: ToolCall, *names: str) -> str:
    for name in names:
        value = call.args.get(name, "")
        if value.strip():
            if "\x00" in value:
                raise ValueError(f"Argument '{name}' for {call.name} contains a NUL byte")
            return value
    raise ToolExecutionError(
        f"Missing required argument '{names[0]}' for {call.name}",
        context={"tool": call.name},
    )


class ToolRuntime:
    """Executes tool calls inside the workspace sandbox."""

    def __init__(self) -> None:
        self._handlers: dict[
            str, Callable[[ToolCall, ToolExecutionContext], Awaitable[_Outcome]]
        ] = {
            "read": self._read,
            "ls": self._ls,
            "glob": self._glob,
            "grep": self._grep,
            "edit": self._write,
            "write": self._write,
            "patch": self._patch,
            "mkdir": self._mkdir,
            "bash": self._bash,
            "mcp": self._mcp,
        }

    async def run(self, call: ToolCall, context: ToolExecutionContext) -> ToolResult:
        """Run a call and return its result. Never raises for tool failures."""
        started = time.monotonic()
        name = call.name.strip().lower()
        handler = self._handlers.get(name)
        try:
            if handler is None:
                raise ToolExecutionError(
                    f"Unknown tool '{call.name}'. Supported tools: {', '.join(SUPPORTED_TOOLS)}",
                    context={"tool": call.name},
                )
            if name in MUTATING_TOOLS and not context.policy.sandbox_mode.allows_writes:
                raise SecurityError(
                    f"{name} is not allowed in a read-only sandbox",
                    context={"tool": name},
                )
            outcome = await handler(call, context)
            payload = dict(outcome.payload)
            ok = outcome.ok
        except SecurityError as exc:
            logger.warning("Sandbox violation in %s: %s", call.name, exc.message)
            payload = {"error": exc.message, "reason": "sandbox_violation"}
            ok = False
        except ToolExecutionError as exc:
            payload = {"error": exc.message, "reason": "execution_failed"}
            ok = False
        except UnicodeError as exc:
            payload = {"error": f"Argument is not encodable text: {exc}", "reason": "invalid_argument"}
            ok = False
        except ValueError as exc:
            payload = {"error": str(exc), "reason": "invalid_argument"}
            ok = False
        except OSError as exc:
            payload = {"error": str(exc), "reason": "io_error"}
            ok = False

        duration_ms = max(1, int((time.monotonic() - started) * 1000))
        logger.debug("Tool %s (%s) finished ok=%s in %sms", name, call.id, ok, duration_ms)
        return ToolResult(ok=ok, payload=payload, duration_ms=duration_ms)

    async def execute(self, call: ToolCall, context: ToolExecutionContext) -> list[RawEvent]:
        """Run a call and report it as a started event plus one terminal event."""
        base = {"tool_call_id": call.id, "tool": call.name}
        if call.swarm_id:
            base["swarm_id"] = call.swarm_id
            base["group_id"] = f"swarm-{call.swarm_id}"

        started = RawEvent(
            type="mcp_tool_call",
            payload={**base, "status": "started", "title": call.name},
        )
        result = await self.run(call, context)
        status = "completed" if result.ok else "failed"
        event_type = terminal_event_type(call.name.strip().lower())
        if not result.ok and "reason" in result.payload:
            event_type = "tool_execution_error"
        terminal = RawEvent(
            type=event_type,
            payload={
                **result.payload,
                **base,
                "status": status,
                "duration_ms": str(result.duration_ms),
            },
        )
        return [started, terminal]

    # -- path helpers -------------------------------------------------------

    def _resolve(self, raw: str, context: ToolExecutionContext) -> Path:
        match resolve_workspace_path(raw, context.root, context.policy.sandbox_mode):
            case Ok(path):
                return path
            case Err(err):
                raise err
        raise AssertionError("unreachable")

    # -- read-only tools ----------------------------------------------------

    async def _read(self, call: ToolCall, context: ToolExecutionContext) -> _Outcome:
        path = self._resolve(_require(call, "path", "file"), context)
        if not path.is_file():
            raise ToolExecutionError(f"File not found: {call.args.get('path', '')}")
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise ToolExecutionError(f"File is not UTF-8 text: {path.name}") from exc
        output, truncated = _cap(content, context.policy.max_read_chars)
        return _Outcome(
            {
                "path": _display_path(path, context.root),
                "lines": str(content.count("\n") + (0 if content.endswith("\n") else 1)),
                "output": output,
                "truncated": str(truncated).lower(),
            }
        )

    async def _ls(self, call: ToolCall, context: ToolExecutionContext) -> _Outcome:
        path = self._resolve(call.args.get("path", "").strip() or ".", context)
        if not path.is_dir():
            raise ToolExecutionError(f"Not a directory: {call.args.get('path', '.')}")
        entries = sorted(path.iterdir(), key=lambda entry: entry.name.lower())
        names = [
            entry.name + ("/" if entry.is_dir() else "")
            for entry in entries
            if entry.name != ".git"
        ]
        output, truncated = _cap("\n".join(names[:LS_MAX_ENTRIES]), context.policy.max_output_chars)
        return _Outcome(
            {
                "path": _display_path(path, context.root),
                "count": str(len(names)),
                "output": output,
                "truncated": str(truncated or len(names) > LS_MAX_ENTRIES).lower(),
            }
        )

    async def _glob(self, call: ToolCall, context: ToolExecutionContext) -> _Outcome:
        pattern = _require(call, "pattern", "query").strip()
        while pattern.startswith("**/"):
            pattern = pattern[3:]
        base = self._resolve(call.args.get("path", "").strip() or ".", context)
        match_test = ["-path", f"./{pattern}"] if "/" in pattern else ["-name", pattern]
        prune: list[str] = ["(", "-name", ".?*"]
        for directory in GLOB_PRUNED_DIRS:
            prune.extend(["-o", "-name", directory])
        argv = [
            "find", ".", "-maxdepth", str(GLOB_MAX_DEPTH),
            *prune, ")", "-prune", "-o", *match_test, "-print",
        ]
        result = await run_collecting(argv, cwd=base, timeout=context.policy.timeout_ms / 1000)
        if not result.ok:
            raise ToolExecutionError(f"glob failed: {result.output.strip() or result.returncode}")
        lines = [line.removeprefix("./") for line in result.output.splitlines() if line.strip()]
        files = sorted(lines[:GLOB_MAX_RESULTS])
        return _Outcome(
            {
                "pattern": pattern,
                "path": _display_path(base, context.root),
                "count": str(len(files)),
                "output": "\n".join(files),
                "truncated": str(len(lines) > GLOB_MAX_RESULTS).lower(),
            }
        )

    async def _grep(self, call: ToolCall, context: ToolExecutionContext) -> _Outcome:
        pattern = _require(call, "pattern", "query")
        scope_arg = call.args.get("pathScope", "").strip() or call.args.get("path", "").strip()
        target = self._resolve(scope_arg or ".", context)
        display = _display_path(target, context.root)
        target_arg = display if is_within(target, context.root.resolve()) else str(target)

        if shutil.which("rg"):
            argv = ["rg", "-n", "--no-heading", "--color", "never", "--", pattern, target_arg]
        else:
            argv = [
                "grep", "-rn", "--exclude-dir=.git", "--exclude-dir=node_modules",
                "--", pattern, target_arg,
            ]
        result = await run_collecting(argv, cwd=context.root, timeout=context.policy.timeout_ms / 1000)
        if result.timed_out:
            raise ToolExecutionError(f"grep timed out after {context.policy.timeout_ms}ms")
        if result.returncode not in (0, 1):
            raise ToolExecutionError(f"grep failed: {result.output.strip()[:500]}")

        lines = result.output.splitlines() if result.returncode == 0 else []
        output, truncated = _cap("\n".join(lines[:GREP_MAX_RESULTS]), context.policy.max_output_chars)
        return _Outcome(
            {
                "pattern": pattern,
                "path": display,
                "count": str(len(lines)),
                "output": output,
                "truncated": str(truncated or len(lines) > GREP_MAX_RESULTS).lower(),
            }
        )

    # -- mutating tools -----------------------------------------------------

    async def _write(self, call: ToolCall, context: ToolExecutionContext) -> _Outcome:
        path = self._resolve(_require(call, "path", "file"), context)
        if path.is_dir():
            raise ToolExecutionError(f"Path is a directory: {call.args.get('path', '')}")
        new_content = call.args.get("content", call.args.get("text", ""))
        existed = path.exists()
        old_content = await asyncio.to_thread(_read_existing, path) if existed else ""
        await asyncio.to_thread(_atomic_write, path, new_content)
        return _Outcome(
            {
                "path": _display_path(path, context.root),
                "created": str(not existed).lower(),
                **_diff_summary(old_content, new_content, context.policy.max_diff_chars),
            }
        )

    async def _patch(self, call: ToolCall, context: ToolExecutionContext) -> _Outcome:
        path = self._resolve(_require(call, "path", "file"), context)
        if not path.is_file():
            raise ToolExecutionError(f"File not found: {call.args.get('path', '')}")
        search = _require(call, "search", "old_str")
        replacement = call.args.get("replace", call.args.get("new_str", ""))
        old_content = await asyncio.to_thread(_read_existing, path)

        occurrences = old_content.count(search)
        if occurrences == 0:
            hints = _near_matches(old_content, search)
            detail = f" Closest lines: {' | '.join(hints)}" if hints else ""
            raise ToolExecutionError(f"Search text not found in {path.name}.{detail}")

        replace_all = call.args.get("all", "").lower() == "true"
        new_content = old_content.replace(search, replacement, -1 if replace_all else 1)
        await asyncio.to_thread(_atomic_write, path, new_content)
        return _Outcome(
            {
                "path": _display_path(path, context.root),
                "created": "false",
                **_diff_summary(old_content, new_content, context.policy.max_diff_chars),
            }
        )

    async def _mkdir(self, call: ToolCall, context: ToolExecutionContext) -> _Outcome:
        path = self._resolve(_require(call, "path"), context)
        existed = path.is_dir()
        path.mkdir(parents=True, exist_ok=True)
        return _Outcome(
            {
                "path": _display_path(path, context.root),
                "created": str(not existed).lower(),
                "linesAdded": "0",
                "linesRemoved": "0",
            }
        )

    async def _bash(self, call: ToolCall, context: ToolExecutionContext) -> _Outcome:
        command = _require(call, "command", "cmd")
        if context.policy.sandbox_mode.confines_paths:
            match check_shell_command(command):
                case Err(err):
                    raise err
                case Ok():
                    pass
        result = await run_shell(command, cwd=context.root, timeout_ms=context.policy.timeout_ms)
        output, truncated = _cap(result.output, context.policy.max_output_chars)
        return _Outcome(
            {
                "command": command,
                "exit_code": str(result.returncode),
                "output": output,
                "truncated": str(truncated).lower(),
                "timed_out": str(result.timed_out).lower(),
            },
            ok=result.ok,
        )

    async def _mcp(self, call: ToolCall, context: ToolExecutionContext) -> _Outcome:
        detail = json.dumps(call.args, sort_keys=True)[:200]
        return _Outcome(
            {
                "title": call.args.get("tool") or call.args.get("name") or "mcp",
                "detail": detail,
            }
        )


def _read_existing(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def _diff_summary(old: str, new: str, max_chars: int) -> dict[str, str]:
    diff = list(
        difflib.unified_diff(
            old.splitlines(), new.splitlines(), fromfile="before", tofile="after", lineterm=""
        )
    )
    added = sum(1 for line in diff if line.startswith("+") and not line.startswith("+++"))
    removed = sum(1 for line in diff if line.startswith("-") and not line.startswith("---"))
    preview, _ = _cap("\n".join(diff[:DIFF_PREVIEW_LINES]), max_chars)
    return {"linesAdded": str(added), "linesRemoved": str(removed), "diffPreview": preview}


def _near_matches(content: str, search: str) -> list[str]:
    first = next((line.strip() for line in search.splitlines() if line.strip()), "")
    if not first:
        return []
    candidates = [line.strip() for line in content.splitlines() if line.strip()]
    return difflib.get_close_matches(first, candidates, n=3, cutoff=0.6)


__all__ = [
    "MUTATING_TOOLS",
    "READ_TOOLS",
    "SUPPORTED_TOOLS",
    "WRITE_TOOLS",
    "ToolCall",
    "ToolExecutionContext",
    "ToolResult",
    "ToolRuntime",
    "ToolRuntimePolicy",
    "terminal_event_type",
]
