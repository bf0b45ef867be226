"""
External CLI provider adapter.

Wraps any agent CLI that accepts a prompt as its last argument and prints
its answer on stdout (for example ``codex exec`` or ``claude -p``). Each
stdout line becomes a text delta. A non-zero exit becomes an ErrorEvent
carrying the exit code and the tail of the process output.

Usage:
    from coderide.providers.command import CommandProvider

    provider = CommandProvider.from_config(config.provider)
    async for event in provider.send("Explain main.py", context):
        ...
"""

from __future__ import annotations

import shutil
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from coderide.core.console import get_logger
from coderide.core.result import ProviderError
from coderide.core.sys import ProcessRunnerError, stream_lines
from coderide.providers import Completed, ErrorEvent, Started, StreamEvent, TextDelta

if TYPE_CHECKING:
    from coderide.core.config import ProviderConfig
    from coderide.core.workspace import WorkspaceContext

logger = get_logger(__name__)


class CommandNotFoundError(ProviderError):
    """Raised when the configured CLI binary is not on PATH."""

    def __init__(self, command: str) -> None:
        super().__init__(f"Provider CLI not found: {command}", context={"command": command})


def _find_binary(command: str) -> str | None:
    if "/" in command:
        return command if Path(command).exists() else None
    return shutil.which(command)


def build_command_args(
    args: Sequence[str],
    prompt: str,
    context: WorkspaceContext,
    image_refs: Sequence[Path] | None = None,
) -> list[str]:
    """Build the CLI argument vector: fixed args, image flags, then the prompt.

    The workspace description is prepended to the prompt.
    """
    cmd = list(args)
    for image in image_refs or ():
        cmd.extend(["--image", str(image)])
    cmd.append(f"{context.context_prompt()}\n\n{prompt}")
    return cmd


class CommandProvider:
    """LLMProvider backed by an external CLI process."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._command = command
        self._args = list(args)
        self._env = dict(env or {})

    @classmethod
    def from_config(cls, config: ProviderConfig) -> CommandProvider:
        return cls(config.command, config.args, env=config.env)

    @property
    def provider_id(self) -> str:
        return f"cli:{Path(self._command).name}"

    async def send(
        self,
        prompt: str,
        context: WorkspaceContext,
        image_refs: Sequence[Path] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        binary = _find_binary(self._command)
        if binary is None:
            yield ErrorEvent(message=str(CommandNotFoundError(self._command)))
            return

        yield Started()
        argv = build_command_args(self._args, prompt, context, image_refs)
        logger.debug("Running provider %s in %s", binary, context.root)
        try:
            async for line in stream_lines(binary, argv, cwd=context.root, env=self._env):
                yield TextDelta(text=line + "\n")
        except ProcessRunnerError as exc:
            yield ErrorEvent(message=str(exc))
            return
        yield Completed()


__all__ = ["CommandNotFoundError", "CommandProvider", "build_command_args"]
