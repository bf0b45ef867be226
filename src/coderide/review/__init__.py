"""Partitioned parallel review of a workspace with file-level locking."""

from coderide.review.locks import ExecutionStep, FileLockCoordinator, plan_execution
from coderide.review.partitioner import (
    CodebasePartition,
    PartitionStrategy,
    ReviewScope,
    partition_files,
    partition_workspace,
)

__all__ = [
    "CodebasePartition",
    "ExecutionStep",
    "FileLockCoordinator",
    "PartitionStrategy",
    "ReviewScope",
    "partition_files",
    "partition_workspace",
    "plan_execution",
]
