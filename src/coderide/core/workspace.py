"""Workspace context and source-file discovery.

Key components:
    - WorkspaceContext: What a provider call knows about the workspace
    - list_source_files(): Recursive scan for reviewable source files
    - list_uncommitted_files(): Source files touched according to git
    - load_open_files(): Preload file contents for a scoped context
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath

from coderide.core.console import get_logger

logger = get_logger(__name__)

SOURCE_EXTENSIONS: frozenset[str] = frozenset(
    {
        "swift", "ts", "tsx", "js", "jsx", "py", "go", "rs", "java",
        "kt", "rb", "php", "c", "cpp", "h", "hpp", "m", "mm",
    }
)

DEFAULT_EXCLUDED_DIRS: frozenset[str] = frozenset(
    {"node_modules", ".git", ".build", "build", "DerivedData", "dist", "out"}
)

MAX_OPEN_FILE_CHARS = 20_000


@dataclass(frozen=True, slots=True)
class OpenFile:
    """A file whose contents are attached to a prompt."""

    path: str
    content: str


@dataclass(frozen=True, slots=True)
class WorkspaceContext:
    """Workspace information passed to every provider call.

    Attributes:
        workspace_paths: Workspace roots; the first one is primary.
        excluded_paths: Workspace-relative paths the agent must ignore.
        included_paths: When non-empty, the only paths the agent should touch.
        open_files: Files whose contents accompany the prompt.
        active_file: File focused by the user, if any.
        selection: Selected text in the active file, if any.
    """

    workspace_paths: tuple[Path, ...] = ()
    excluded_paths: tuple[str, ...] = ()
    included_paths: tuple[str, ...] = ()
    open_files: tuple[OpenFile, ...] = field(default=())
    active_file: str | None = None
    selection: str | None = None

    @classmethod
    def for_root(cls, root: Path, *, excluded: Iterable[str] = ()) -> WorkspaceContext:
        return cls(workspace_paths=(root,), excluded_paths=tuple(excluded))

    @property
    def root(self) -> Path:
        return self.workspace_paths[0] if self.workspace_paths else Path.cwd()

    def scoped(
        self, paths: Sequence[str], open_files: Sequence[OpenFile] = ()
    ) -> WorkspaceContext:
        """Return a copy restricted to ``paths`` with the given files attached."""
        return replace(
            self,
            included_paths=tuple(paths),
            open_files=tuple(open_files),
            active_file=None,
            selection=None,
        )

    def context_prompt(self) -> str:
        """Render the workspace description prepended to worker prompts."""
        lines = [f"Workspace root: {self.root}"]
        extra_roots = [str(p) for p in self.workspace_paths[1:]]
        if extra_roots:
            lines.append("Additional roots: " + ", ".join(extra_roots))
        if self.included_paths:
            lines.append("Only work on these paths:")
            lines.extend(f"- {path}" for path in self.included_paths)
        if self.excluded_paths:
            lines.append("Never read or modify these paths:")
            lines.extend(f"- {path}" for path in self.excluded_paths)
        if self.active_file:
            lines.append(f"Active file: {self.active_file}")
        if self.selection:
            lines.append("Selected text:")
            lines.append("```")
            lines.append(self.selection)
            lines.append("```")
        for open_file in self.open_files:
            lines.append(f"File: {open_file.path}")
            lines.append("```")
            lines.append(open_file.content)
            lines.append("```")
        return "\n".join(lines)


def is_source_file(path: str) -> bool:
    suffix = PurePosixPath(path).suffix.lstrip(".")
    return suffix in SOURCE_EXTENSIONS


def _is_excluded(relative: str, excluded: Sequence[str]) -> bool:
    for entry in excluded:
        cleaned = entry.strip().strip("/")
        if not cleaned:
            continue
        if relative == cleaned or relative.startswith(cleaned + "/"):
            return True
    return False


def list_source_files(root: Path, excluded: Sequence[str] = ()) -> list[str]:
    """Recursively list source files under root as workspace-relative POSIX paths.

    Hidden entries, default build/dependency directories and ``excluded``
    paths are skipped. The result is sorted case-insensitively.
    """
    results: list[str] = []
    root = root.resolve()
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir
        dirnames[:] = [
            name
            for name in dirnames
            if not name.startswith(".")
            and name not in DEFAULT_EXCLUDED_DIRS
            and not _is_excluded(f"{rel_dir}/{name}".lstrip("/"), excluded)
        ]
        for name in filenames:
            if name.startswith("."):
                continue
            relative = f"{rel_dir}/{name}".lstrip("/")
            if is_source_file(relative) and not _is_excluded(relative, excluded):
                results.append(relative)
    return sorted(results, key=str.lower)


def _unquote(path: str) -> str:
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        return path[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return path


def parse_porcelain(output: str) -> list[str]:
    """Extract added/modified/renamed/copied/untracked paths from ``git status --porcelain``.

    Deleted entries are skipped and renames resolve to their new path.
    """
    paths: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        status, path = line[:2], line[3:]
        if "D" in status:
            continue
        if status != "??" and not any(flag in status for flag in "MARC"):
            continue
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(_unquote(path.strip()))
    return paths


def list_uncommitted_files(root: Path, excluded: Sequence[str] = ()) -> list[str]:
    """List uncommitted source files reported by git, sorted case-insensitively.

    Returns an empty list outside a git repository.
    """
    try:
        proc = subprocess.run(
            ["git", "-C", str(root), "status", "--porcelain", "-u"],
            check=False,
            capture_output=True,
            text=True,
        )
    except OSError as exc:
        logger.warning("git unavailable: %s", exc)
        return []

    if proc.returncode != 0:
        logger.warning("git status failed in %s: %s", root, proc.stderr.strip())
        return []

    candidates = {
        path
        for path in parse_porcelain(proc.stdout)
        if is_source_file(path)
        and not _is_excluded(path, excluded)
        and (root / path).is_file()
    }
    return sorted(candidates, key=str.lower)


def load_open_files(
    root: Path,
    paths: Sequence[str],
    *,
    limit: int,
    max_chars: int = MAX_OPEN_FILE_CHARS,
) -> list[OpenFile]:
    """Read up to ``limit`` files for attachment; unreadable files are skipped."""
    loaded: list[OpenFile] = []
    for relative in paths[:limit]:
        try:
            content = (root / relative).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Skipping %s: %s", relative, exc)
            continue
        loaded.append(OpenFile(path=relative, content=content[:max_chars]))
    return loaded


__all__ = [
    "DEFAULT_EXCLUDED_DIRS",
    "SOURCE_EXTENSIONS",
    "OpenFile",
    "WorkspaceContext",
    "is_source_file",
    "list_source_files",
    "list_uncommitted_files",
    "load_open_files",
    "parse_porcelain",
]
