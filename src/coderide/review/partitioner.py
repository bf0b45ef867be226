"""Codebase partitioning for parallel review workers.

Two strategies split a file list into non-overlapping partitions:

- ``directory`` keeps files of the same top-level directory together and
  merges adjacent directories when there are more directories than workers.
- ``balanced`` cuts the list into contiguous slices of near-equal size.

Every input path lands in exactly one partition. An empty input still
yields one (empty) partition so callers never handle a zero-length plan.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from coderide.core.workspace import list_source_files, list_uncommitted_files

ROOT_BUCKET = "_root"


class PartitionStrategy(StrEnum):
    DIRECTORY = "directory"
    BALANCED = "balanced"


class ReviewScope(StrEnum):
    ALL = "all"
    UNCOMMITTED = "uncommitted"


@dataclass(frozen=True, slots=True)
class CodebasePartition:
    """A named, read-only slice of workspace-relative paths."""

    id: str
    paths: tuple[str, ...]


def _partition_id(index: int) -> str:
    return f"p{index}"


def _by_directory(files: Sequence[str], count: int) -> list[list[str]]:
    groups: dict[str, list[str]] = {}
    for path in files:
        head, sep, _ = path.partition("/")
        groups.setdefault(head if sep else ROOT_BUCKET, []).append(path)

    ordered = [groups[key] for key in sorted(groups)]
    if len(ordered) <= count:
        return ordered

    per_bucket = math.ceil(len(ordered) / count)
    return [
        [path for group in ordered[start : start + per_bucket] for path in group]
        for start in range(0, len(ordered), per_bucket)
    ]


def _balanced(files: Sequence[str], count: int) -> list[list[str]]:
    slices = min(count, len(files))
    chunk = math.ceil(len(files) / slices)
    return [list(files[start : start + chunk]) for start in range(0, len(files), chunk)]


def partition_files(
    files: Sequence[str],
    count: int,
    strategy: PartitionStrategy | str = PartitionStrategy.DIRECTORY,
) -> list[CodebasePartition]:
    """Split ``files`` into at most ``count`` partitions with ids p0, p1, ..."""
    if not files:
        return [CodebasePartition(id=_partition_id(0), paths=())]

    count = max(1, count)
    if PartitionStrategy(strategy) is PartitionStrategy.BALANCED:
        buckets = _balanced(files, count)
    else:
        buckets = _by_directory(files, count)
    return [
        CodebasePartition(id=_partition_id(index), paths=tuple(bucket))
        for index, bucket in enumerate(buckets)
    ]


def list_review_files(
    root: Path, scope: ReviewScope | str = ReviewScope.ALL, excluded: Sequence[str] = ()
) -> list[str]:
    if ReviewScope(scope) is ReviewScope.UNCOMMITTED:
        return list_uncommitted_files(root, excluded)
    return list_source_files(root, excluded)


async def partition_workspace(
    root: Path,
    count: int,
    strategy: PartitionStrategy | str = PartitionStrategy.DIRECTORY,
    *,
    excluded: Sequence[str] = (),
    scope: ReviewScope | str = ReviewScope.ALL,
) -> list[CodebasePartition]:
    """Scan ``root`` off the event loop and partition the files found."""
    files = await asyncio.to_thread(list_review_files, root, scope, excluded)
    return partition_files(files, count, strategy)


__all__ = [
    "ROOT_BUCKET",
    "CodebasePartition",
    "PartitionStrategy",
    "ReviewScope",
    "list_review_files",
    "partition_files",
    "partition_workspace",
]
