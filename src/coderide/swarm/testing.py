"""Detection of a project's test command."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

_PYTHON_MARKERS = ("pyproject.toml", "setup.py", "setup.cfg", "requirements.txt")


@dataclass(frozen=True, slots=True)
class TestCommand:
    """A shell command that runs the project's test suite."""

    __test__ = False

    command: str
    project_type: str


def detect_test_command(root: Path) -> TestCommand | None:
    """Guess the test command from well-known project files in ``root``."""
    if (root / "Package.swift").is_file():
        return TestCommand("swift test", "swift")
    if (root / "package.json").is_file():
        return TestCommand("npm test", "node")
    if any((root / marker).is_file() for marker in _PYTHON_MARKERS):
        command = "pytest" if shutil.which("pytest") else "python3 -m pytest"
        return TestCommand(command, "python")
    if (root / "Cargo.toml").is_file():
        return TestCommand("cargo test", "rust")
    return None


def output_needs_attention(returncode: int, output: str) -> bool:
    """True when a test run failed or printed warnings."""
    return returncode != 0 or "warning:" in output.lower()


__all__ = ["TestCommand", "detect_test_command", "output_needs_attention"]
