"""System utilities package.

Organized submodules:
- execution: Streaming and bounded subprocess execution
"""

from coderide.core.sys.execution import (
    CommandResult,
    ProcessRunnerError,
    run_collecting,
    run_shell,
    stream_lines,
)

__all__ = [
    "CommandResult",
    "ProcessRunnerError",
    "run_collecting",
    "run_shell",
    "stream_lines",
]
