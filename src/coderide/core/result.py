"""
Result types and the coderide error hierarchy.

Sandbox checks and config loading return ``Ok``/``Err`` because a refusal
is an expected outcome there; callers ``match`` on the result. Everything
else raises a ``CoderideError`` subclass.

Usage:
    match resolve_workspace_path(raw, root, mode):
        case Ok(path):
            ...
        case Err(err):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E", bound=Exception)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    error: E


Result = Ok[T] | Err[E]


class CoderideError(Exception):
    """Base exception for all coderide errors.

    Carries a message plus an optional context mapping rendered after it.
    """

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class SecurityError(CoderideError):
    """Sandbox violation: a path outside the workspace, or a mutating tool under read-only."""


class ConfigurationError(CoderideError):
    """Invalid or unreadable configuration, or a broken prompt template."""


class ToolExecutionError(CoderideError):
    pass


class ProviderError(CoderideError):
    """An LLM backend failed to produce a response."""


class WorkspaceError(CoderideError):
    pass


__all__ = [
    "CoderideError",
    "ConfigurationError",
    "Err",
    "Ok",
    "ProviderError",
    "Result",
    "SecurityError",
    "ToolExecutionError",
    "WorkspaceError",
]
