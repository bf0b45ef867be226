"""
Sandbox enforcement for tool execution.

- Path resolution confined to the workspace root
- Pre-flight rejection of privilege-escalating shell commands

Usage:
    from coderide.core.security import SandboxMode, resolve_workspace_path
"""

from __future__ import annotations

from coderide.core.security.command import FORBIDDEN_BINARIES, check_shell_command
from coderide.core.security.path import (
    MAX_SYMLINK_DEPTH,
    SandboxMode,
    is_within,
    resolve_workspace_path,
    validate_workspace_root,
)

__all__ = [
    "FORBIDDEN_BINARIES",
    "MAX_SYMLINK_DEPTH",
    "SandboxMode",
    "check_shell_command",
    "is_within",
    "resolve_workspace_path",
    "validate_workspace_root",
]
