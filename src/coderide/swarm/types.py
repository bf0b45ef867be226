"""Agent roles and planned tasks for swarm execution.

This module defines the data model shared by the planner and the
worker runner:
    - AgentRole: Closed set of worker specializations
    - AgentTask: One unit of work assigned to a role within an order group
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from enum import StrEnum
from itertools import groupby

from pydantic import BaseModel, ConfigDict, Field


class AgentRole(StrEnum):
    """Specialization of a swarm worker."""

    PLANNER = "planner"
    CODER = "coder"
    DEBUGGER = "debugger"
    REVIEWER = "reviewer"
    DOC_WRITER = "docWriter"
    SECURITY_AUDITOR = "securityAuditor"
    TEST_WRITER = "testWriter"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def brief(self) -> str:
        return _BRIEFS[self]

    @classmethod
    def parse(cls, raw: str) -> AgentRole | None:
        """Resolve a role from its identifier, tolerating case and separators."""
        key = raw.strip().replace("_", "").replace("-", "").replace(" ", "").lower()
        for role in cls:
            if role.value.lower() == key:
                return role
        return None


_DISPLAY_NAMES: dict[AgentRole, str] = {
    AgentRole.PLANNER: "Planner",
    AgentRole.CODER: "Coder",
    AgentRole.DEBUGGER: "Debugger",
    AgentRole.REVIEWER: "Reviewer",
    AgentRole.DOC_WRITER: "Doc Writer",
    AgentRole.SECURITY_AUDITOR: "Security Auditor",
    AgentRole.TEST_WRITER: "Test Writer",
}

_BRIEFS: dict[AgentRole, str] = {
    AgentRole.PLANNER: "Analyzes the request and breaks it into concrete implementation steps.",
    AgentRole.CODER: "Writes and modifies code to implement the requested changes.",
    AgentRole.DEBUGGER: "Finds the root cause of failures and fixes them.",
    AgentRole.REVIEWER: "Reviews changes for bugs, regressions, and quality issues.",
    AgentRole.DOC_WRITER: "Writes and updates documentation and comments.",
    AgentRole.SECURITY_AUDITOR: "Audits code for vulnerabilities and unsafe patterns.",
    AgentRole.TEST_WRITER: "Writes tests that cover the implemented behavior.",
}


class AgentTask(BaseModel):
    """A task assigned to one role. Tasks sharing ``order`` run concurrently."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    role: AgentRole
    task_description: str = Field(min_length=1)
    order: int = Field(ge=0)


def sort_tasks(tasks: Iterable[AgentTask]) -> list[AgentTask]:
    """Sort tasks by ascending order, keeping plan order for ties."""
    return sorted(tasks, key=lambda task: task.order)


def group_by_order(tasks: Iterable[AgentTask]) -> list[list[AgentTask]]:
    """Split tasks into execution groups of equal order, ascending."""
    return [list(group) for _, group in groupby(sort_tasks(tasks), key=lambda t: t.order)]


def roles_summary(tasks: Sequence[AgentTask]) -> str:
    return ",".join(task.role.display_name for task in tasks)


__all__ = ["AgentRole", "AgentTask", "group_by_order", "roles_summary", "sort_tasks"]
