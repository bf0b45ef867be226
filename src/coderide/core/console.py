"""Console output and logging.

Model text streams to ``console`` (stdout) untouched so it can be piped.
Log records go through a Rich handler on ``stderr_console``.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()
stderr_console = Console(stderr=True)

PACKAGE_LOGGER = "coderide"

# Libraries whose debug output drowns the swarm's own records.
_QUIET_LOGGERS = ("asyncio", "markdown_it")


def _level_from(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: str | int = logging.INFO, verbose: bool = False) -> logging.Logger:
    """Install the stderr Rich handler and return the ``coderide`` logger.

    ``verbose`` forces DEBUG for coderide loggers only. Calling this again
    replaces the handler instead of stacking a second one.
    """
    package_level = logging.DEBUG if verbose else _level_from(level)

    handler = RichHandler(
        console=stderr_console,
        markup=False,
        rich_tracebacks=True,
        show_path=verbose,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(package_level)
    return package_logger


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or PACKAGE_LOGGER)


__all__ = ["PACKAGE_LOGGER", "console", "get_logger", "setup_logging", "stderr_console"]
