"""Task planning for the agent swarm.

This module turns a user request into an ordered list of AgentTask values:
- build_planner_prompt: Render the role roster and JSON contract
- parse_plan: Extract tasks from unreliable model output
- fallback_plan: Deterministic plan used whenever planning fails
- TaskPlanner: Ask a provider for a plan, never raising
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from coderide.core.console import get_logger
from coderide.core.templates import render_template
from coderide.core.workspace import WorkspaceContext
from coderide.providers import LLMProvider, collect_text
from coderide.swarm.types import AgentRole, AgentTask, sort_tasks

logger = get_logger(__name__)


class _PlanItem(BaseModel):
    """Lenient shape of one planned task as produced by a model."""

    model_config = ConfigDict(extra="ignore")

    role: str
    task_description: str = Field(
        validation_alias=AliasChoices("taskDescription", "task_description", "task", "description")
    )
    order: int


def _extract_from_code_fence(text: str) -> str | None:
    """Return the body of a ```json fence, else of the first fence of any language."""
    lowered = text.lower()
    fence_start = lowered.find("```json")
    if fence_start == -1:
        fence_start = text.find("```")
        if fence_start == -1:
            return None

    content_start = text.find("\n", fence_start)
    if content_start == -1:
        return None
    content_start += 1

    fence_end = text.find("```", content_start)
    if fence_end == -1:
        return None
    return text[content_start:fence_end].strip()


def _extract_bracketed(text: str) -> str | None:
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def _decode_array(raw: str) -> list[Any] | None:
    candidates = [_extract_from_code_fence(raw), raw.strip()]
    for candidate in candidates:
        if not candidate:
            continue
        for text in (candidate, _extract_bracketed(candidate)):
            if not text:
                continue
            try:
                decoded = json.loads(text)
            except json.JSONDecodeError:
                continue
            if isinstance(decoded, dict) and isinstance(decoded.get("tasks"), list):
                decoded = decoded["tasks"]
            if isinstance(decoded, list):
                return decoded
    return None


def parse_plan(raw: str, enabled_roles: Sequence[AgentRole]) -> list[AgentTask]:
    """Parse planner output into tasks restricted to ``enabled_roles``.

    Items that are malformed or name an unknown or disabled role are
    dropped. Returns an empty list when no JSON array can be recovered.
    """
    items = _decode_array(raw)
    if items is None:
        return []

    allowed = set(enabled_roles)
    tasks: list[AgentTask] = []
    for item in items:
        try:
            parsed = _PlanItem.model_validate(item)
        except ValidationError:
            logger.debug("Dropping malformed plan item: %r", item)
            continue
        role = AgentRole.parse(parsed.role)
        if role is None or role not in allowed:
            logger.debug("Dropping plan item for unavailable role %r", parsed.role)
            continue
        description = parsed.task_description.strip()
        if not description:
            continue
        tasks.append(AgentTask(role=role, task_description=description, order=max(0, parsed.order)))
    return sort_tasks(tasks)


def fallback_plan(user_prompt: str, enabled_roles: Sequence[AgentRole]) -> list[AgentTask]:
    """Planner then coder (or debugger) plan used when planning fails."""
    enabled = set(enabled_roles)
    tasks: list[AgentTask] = []
    if AgentRole.PLANNER in enabled:
        tasks.append(
            AgentTask(
                role=AgentRole.PLANNER,
                task_description=f"Break the request down into concrete steps: {user_prompt}",
                order=1,
            )
        )
    for role in (AgentRole.CODER, AgentRole.DEBUGGER):
        if role in enabled:
            tasks.append(
                AgentTask(role=role, task_description=f"Implement the request: {user_prompt}", order=2)
            )
            break
    if not tasks and enabled_roles:
        first = next(role for role in AgentRole if role in enabled)
        tasks.append(AgentTask(role=first, task_description=user_prompt, order=1))
    return tasks


def build_planner_prompt(user_prompt: str, enabled_roles: Sequence[AgentRole]) -> str:
    return render_template(
        "planner.j2",
        {
            "roles": [role for role in AgentRole if role in set(enabled_roles)],
            "prompt": user_prompt,
        },
    )


class TaskPlanner:
    """Asks a provider for a task plan and falls back when the answer is unusable."""

    def __init__(self, provider: LLMProvider, enabled_roles: Sequence[AgentRole] | None = None) -> None:
        self._provider = provider
        self._enabled_roles = list(enabled_roles) if enabled_roles else list(AgentRole)

    async def plan(self, user_prompt: str, context: WorkspaceContext) -> list[AgentTask]:
        """Return a non-empty plan (when any role is enabled). Never raises."""
        prompt = build_planner_prompt(user_prompt, self._enabled_roles)
        try:
            raw, error = await collect_text(self._provider.send(prompt, context))
        except Exception as exc:
            logger.warning("Planner provider failed: %s; using fallback plan", exc)
            return fallback_plan(user_prompt, self._enabled_roles)

        if error is not None:
            logger.warning("Planner provider reported an error: %s; using fallback plan", error)
            return fallback_plan(user_prompt, self._enabled_roles)

        tasks = parse_plan(raw, self._enabled_roles)
        if not tasks:
            logger.warning("Planner output contained no usable tasks; using fallback plan")
            return fallback_plan(user_prompt, self._enabled_roles)
        logger.debug("Planned %s tasks", len(tasks))
        return tasks


__all__ = ["TaskPlanner", "build_planner_prompt", "fallback_plan", "parse_plan"]
