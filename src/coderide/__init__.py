"""coderide - multi-agent LLM swarm orchestration for coding tasks.

This package provides the core of the `coderide` command-line tool:
task planning, ordered parallel agent execution, partitioned codebase
review with file locking, and a marker-based tool protocol.

Exports:
    __version__: Package version string.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.4.0"
