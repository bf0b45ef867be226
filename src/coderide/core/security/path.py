"""
Workspace sandbox path resolution.

Tool calls name files relative to the workspace root. Before any file is
read or written the path is resolved here and checked against the active
sandbox mode. All functions return Result types so callers can turn a
violation into a failed tool result instead of an exception.

Usage:
    from coderide.core.security import SandboxMode, resolve_workspace_path

    match resolve_workspace_path("src/app.py", root, SandboxMode.WORKSPACE_WRITE):
        case Ok(path):
            ...
        case Err(err):
            ...  # err.message explains the violation
"""

from __future__ import annotations

import functools
import os
from enum import StrEnum
from pathlib import Path

from coderide.core.result import Err, Ok, Result, SecurityError, WorkspaceError

MAX_SYMLINK_DEPTH = 10
"""Maximum symlink chain depth before rejecting as potentially malicious."""


class SandboxMode(StrEnum):
    """How far tool execution may reach outside the workspace."""

    READ_ONLY = "read-only"
    WORKSPACE_WRITE = "workspace-write"
    FULL_ACCESS = "danger-full-access"

    @property
    def allows_writes(self) -> bool:
        return self is not SandboxMode.READ_ONLY

    @property
    def confines_paths(self) -> bool:
        return self is not SandboxMode.FULL_ACCESS


def _resolve_with_limit(
    path: Path, max_depth: int = MAX_SYMLINK_DEPTH
) -> Result[Path, SecurityError]:
    """Resolve path with a symlink depth limit.

    Args:
        path: The path to resolve
        max_depth: Maximum symlink hops allowed

    Returns:
        Ok(resolved_path) if successful, Err(SecurityError) if depth exceeded
    """
    current = path.expanduser()
    visited: set[Path] = set()

    for _ in range(max_depth):
        if current in visited:
            return Err(
                SecurityError(
                    f"Circular symlink detected: {path}",
                    context={"path": str(path), "current": str(current)},
                )
            )
        visited.add(current)

        if not current.is_symlink():
            return Ok(current.resolve())

        try:
            target = current.readlink()
        except OSError as exc:
            return Err(
                SecurityError(
                    f"Failed to read symlink: {path}: {exc}",
                    context={"path": str(path)},
                )
            )

        current = target if target.is_absolute() else current.parent / target

    return Err(
        SecurityError(
            f"Symlink chain too deep (>{max_depth}): {path}",
            context={"path": str(path), "max_depth": max_depth},
        )
    )


@functools.lru_cache(maxsize=128)
def _validate_workspace_root_cached(resolved: Path) -> Result[Path, WorkspaceError]:
    if not resolved.exists():
        return Err(
            WorkspaceError(
                f"Workspace root does not exist: {resolved}",
                context={"path": str(resolved)},
            )
        )
    if not resolved.is_dir():
        return Err(
            WorkspaceError(
                f"Workspace root is not a directory: {resolved}",
                context={"path": str(resolved)},
            )
        )
    return Ok(resolved)


def validate_workspace_root(root: Path | str) -> Result[Path, WorkspaceError]:
    """Validate and resolve a workspace root path.

    Args:
        root: The workspace root path to validate

    Returns:
        Ok(resolved_path) if it exists and is a directory, Err(WorkspaceError) otherwise
    """
    try:
        resolved = Path(root).expanduser().resolve()
    except (RuntimeError, OSError) as exc:
        # RuntimeError: expanduser fails for an unknown ~user
        return Err(
            WorkspaceError(
                f"Invalid workspace root path: {exc}",
                context={"path": str(root)},
            )
        )
    return _validate_workspace_root_cached(resolved)


def is_within(candidate: Path, root: Path) -> bool:
    """Return True when candidate equals root or is nested under it."""
    try:
        candidate.relative_to(root)
    except ValueError:
        return False
    return True


def resolve_workspace_path(
    raw_path: str | Path,
    root: Path | str,
    mode: SandboxMode,
) -> Result[Path, SecurityError]:
    """Resolve a tool-supplied path against the workspace root.

    Relative paths are joined onto the root. Absolute paths are taken as-is.
    Unless ``mode`` is full access, the resolved path must stay within the
    resolved root (symlinks are followed before the check).

    Args:
        raw_path: Path as supplied by the model.
        root: Workspace root.
        mode: Active sandbox mode.

    Returns:
        Ok(absolute_path) or Err(SecurityError) describing the violation.
    """
    text = str(raw_path).strip()
    if not text:
        return Err(SecurityError("Empty path", context={"path": text}))
    if "\x00" in text:
        return Err(SecurityError("Path contains NUL byte", context={"path": repr(text)}))

    base = Path(root).expanduser()
    try:
        base_root = base.resolve()
    except OSError as exc:
        return Err(SecurityError(f"Cannot resolve workspace root: {exc}"))

    expanded = Path(os.path.expanduser(text))
    candidate_path = expanded if expanded.is_absolute() else base_root / expanded

    match _resolve_with_limit(candidate_path):
        case Err() as err:
            return err
        case Ok(candidate):
            pass

    if mode.confines_paths and not is_within(candidate, base_root):
        return Err(
            SecurityError(
                f"Path escapes workspace: {text}",
                context={"path": str(candidate), "root": str(base_root), "mode": mode.value},
            )
        )
    return Ok(candidate)


__all__ = [
    "MAX_SYMLINK_DEPTH",
    "SandboxMode",
    "is_within",
    "resolve_workspace_path",
    "validate_workspace_root",
]
