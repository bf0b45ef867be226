"""
Pre-flight checks for model-issued shell commands.

The bash tool runs arbitrary commands inside the workspace, so this is not an
allowlist. It rejects the small set of binaries that escalate privileges or
touch devices, before the command reaches the shell. Isolation beyond that is
the job of the sandbox mode.
"""

from __future__ import annotations

import shlex

from coderide.core.result import Err, Ok, Result, SecurityError

FORBIDDEN_BINARIES: frozenset[str] = frozenset(
    {
        "sudo",
        "su",
        "doas",
        "pkexec",
        "shutdown",
        "reboot",
        "halt",
        "poweroff",
        "mkfs",
        "dd",
        "fdisk",
    }
)

_SEPARATORS = frozenset({"|", "||", "&&", ";", "&", "(", ")"})


def _binary_name(token: str) -> str:
    return token.rsplit("/", 1)[-1]


def check_shell_command(command: str) -> Result[str, SecurityError]:
    """Reject empty, unparseable, or privilege-escalating commands.

    Every pipeline segment is inspected, so ``ls && sudo rm`` is caught.

    Returns:
        Ok(command) unchanged, or Err(SecurityError) naming the offending binary.
    """
    stripped = command.strip()
    if not stripped:
        return Err(SecurityError("Empty command"))

    lexer = shlex.shlex(stripped, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    try:
        tokens = list(lexer)
    except ValueError as exc:
        return Err(SecurityError(f"Unparseable command: {exc}", context={"command": stripped}))

    expect_binary = True
    for token in tokens:
        if token in _SEPARATORS:
            expect_binary = True
            continue
        if expect_binary:
            if "=" in token and not token.startswith("="):
                # FOO=bar prefix assignment
                continue
            binary = _binary_name(token)
            if binary in FORBIDDEN_BINARIES or binary.startswith("mkfs."):
                return Err(
                    SecurityError(f"Forbidden binary: {binary}", context={"command": stripped})
                )
            expect_binary = False
    return Ok(stripped)


__all__ = ["FORBIDDEN_BINARIES", "check_shell_command"]
