"""Tests for workspace context and file discovery."""

from __future__ import annotations

from pathlib import Path

from coderide.core.workspace import (
    OpenFile,
    WorkspaceContext,
    is_source_file,
    list_source_files,
    load_open_files,
    parse_porcelain,
)


class TestWorkspaceContext:
    """Test context rendering and scoping."""

    def test_root_defaults_to_first_path(self, tmp_path: Path) -> None:
        context = WorkspaceContext(workspace_paths=(tmp_path, tmp_path / "other"))
        assert context.root == tmp_path

    def test_context_prompt_lists_scope(self, tmp_path: Path) -> None:
        context = WorkspaceContext.for_root(tmp_path, excluded=["vendor"]).scoped(
            ["src/app.py"], [OpenFile(path="src/app.py", content="print(1)")]
        )
        prompt = context.context_prompt()
        assert prompt.startswith(f"Workspace root: {tmp_path}")
        assert "Only work on these paths:\n- src/app.py" in prompt
        assert "Never read or modify these paths:\n- vendor" in prompt
        assert "File: src/app.py\n```\nprint(1)\n```" in prompt

    def test_scoped_clears_selection(self, tmp_path: Path) -> None:
        context = WorkspaceContext(workspace_paths=(tmp_path,), active_file="a.py", selection="x = 1")
        scoped = context.scoped(["b.py"])
        assert scoped.active_file is None
        assert scoped.selection is None
        assert context.selection == "x = 1"


class TestSourceDiscovery:
    """Test list_source_files and is_source_file."""

    def test_is_source_file(self) -> None:
        assert is_source_file("src/app.py")
        assert is_source_file("Sources/App.swift")
        assert not is_source_file("README.md")
        assert not is_source_file("Makefile")

    def test_lists_sorted_source_files(self, workspace: Path) -> None:
        assert list_source_files(workspace) == ["src/app.py", "src/util.py", "tests/test_app.py"]

    def test_skips_hidden_and_build_dirs(self, workspace: Path) -> None:
        for directory in ("node_modules/pkg", ".venv/lib", "build"):
            (workspace / directory).mkdir(parents=True)
            (workspace / directory / "mod.py").write_text("", encoding="utf-8")
        assert list_source_files(workspace) == ["src/app.py", "src/util.py", "tests/test_app.py"]

    def test_excluded_paths(self, workspace: Path) -> None:
        assert list_source_files(workspace, excluded=["tests/"]) == ["src/app.py", "src/util.py"]
        assert list_source_files(workspace, excluded=["src/util.py"]) == ["src/app.py", "tests/test_app.py"]


class TestParsePorcelain:
    """Test git status parsing."""

    def test_statuses(self) -> None:
        output = "\n".join(
            [
                " M src/app.py",
                "A  src/new.py",
                "?? scratch.py",
                " D gone.py",
                "R  old.py -> renamed.py",
                '?? "with space.py"',
                "!! ignored.py",
            ]
        )
        assert parse_porcelain(output) == [
            "src/app.py",
            "src/new.py",
            "scratch.py",
            "renamed.py",
            "with space.py",
        ]

    def test_empty(self) -> None:
        assert parse_porcelain("") == []


class TestLoadOpenFiles:
    """Test preloading file contents."""

    def test_respects_limit_and_skips_missing(self, workspace: Path) -> None:
        files = load_open_files(workspace, ["missing.py", "src/util.py", "src/app.py"], limit=2)
        assert files == [OpenFile(path="src/util.py", content="VALUE = 2\n")]

    def test_truncates_content(self, workspace: Path) -> None:
        files = load_open_files(workspace, ["src/app.py"], limit=1, max_chars=3)
        assert files[0].content == "def"
