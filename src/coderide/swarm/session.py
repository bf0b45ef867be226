"""Agent swarm session: plan, run, test, review.

AgentSwarm is itself an LLMProvider. A request is planned by TaskPlanner,
extended with the post-code pipeline (reviewer and test writer after any
coder work), and executed by SwarmWorkerRunner. When tests were written
and the project type is recognised, the test suite is run and a debugger
task is dispatched after each failing run. Optional review loops follow.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from pathlib import Path

from coderide.core.config import SwarmConfig
from coderide.core.console import get_logger
from coderide.core.runtime import ExecutionController
from coderide.core.sys import run_shell
from coderide.core.templates import render_template
from coderide.core.workspace import WorkspaceContext
from coderide.providers import (
    Completed,
    LLMProvider,
    Started,
    StreamEvent,
    TextDelta,
)
from coderide.swarm.planner import TaskPlanner
from coderide.swarm.runner import SwarmWorkerRunner
from coderide.swarm.testing import detect_test_command, output_needs_attention
from coderide.swarm.types import AgentRole, AgentTask, sort_tasks

logger = get_logger(__name__)

TEST_TIMEOUT_MS = 600_000
REVIEW_ISSUE_KEYWORDS = ("priority", "bug", "fix", "issue", "problem")
NO_ISSUES_PHRASE = "no issues found"
REVIEW_ISSUE_MIN_CHARS = 100

REVIEW_TASK = (
    "Review all modified code. Look for bugs, style problems and missed optimizations."
)
TEST_WRITER_TASK = (
    "Write tests for the modified code using the project's test framework "
    "(pytest for Python, Jest/Vitest for Node, XCTest for Swift). "
    "Include unit, smoke and integration tests where appropriate."
)
REVIEW_LOOP_TASK = (
    "Review all code in the workspace. List remaining bugs, style problems and missed "
    f"optimizations. If everything is fine, answer only: '{NO_ISSUES_PHRASE.capitalize()}.'"
)
REVIEW_FIX_TASK = "Fix every problem listed in the previous reviewer report."


def with_post_code_pipeline(tasks: Sequence[AgentTask], config: SwarmConfig) -> list[AgentTask]:
    """Append reviewer and test writer tasks after the last group when a coder is planned."""
    planned = sort_tasks(tasks)
    if not config.auto_post_code_pipeline:
        return planned
    if not any(task.role is AgentRole.CODER for task in planned):
        return planned

    post_order = max(task.order for task in planned) + 1
    enabled = set(config.enabled_roles)
    if AgentRole.REVIEWER in enabled:
        planned.append(AgentTask(role=AgentRole.REVIEWER, task_description=REVIEW_TASK, order=post_order))
    if AgentRole.TEST_WRITER in enabled:
        planned.append(
            AgentTask(role=AgentRole.TEST_WRITER, task_description=TEST_WRITER_TASK, order=post_order)
        )
    return planned


def review_reports_issues(report: str) -> bool:
    lowered = report.lower()
    # The all-clear phrase itself contains "issue".
    remainder = lowered.replace(NO_ISSUES_PHRASE, "")
    if any(keyword in remainder for keyword in REVIEW_ISSUE_KEYWORDS):
        return True
    return len(report) > REVIEW_ISSUE_MIN_CHARS and NO_ISSUES_PHRASE not in lowered


class AgentSwarm:
    """LLMProvider that answers a request with a planned team of agents."""

    def __init__(
        self,
        worker: LLMProvider,
        config: SwarmConfig | None = None,
        *,
        planner: LLMProvider | None = None,
        controller: ExecutionController | None = None,
        test_timeout_ms: int = TEST_TIMEOUT_MS,
    ) -> None:
        self._worker = worker
        self._config = config or SwarmConfig()
        self._planner = TaskPlanner(planner or worker, self._config.enabled_roles)
        self._controller = controller or ExecutionController()
        self._test_timeout_ms = test_timeout_ms

    @property
    def provider_id(self) -> str:
        return f"swarm:{self._worker.provider_id}"

    @property
    def controller(self) -> ExecutionController:
        return self._controller

    async def plan(self, prompt: str, context: WorkspaceContext) -> list[AgentTask]:
        tasks = await self._planner.plan(prompt, context)
        return with_post_code_pipeline(tasks, self._config)

    async def send(
        self,
        prompt: str,
        context: WorkspaceContext,
        image_refs: Sequence[Path] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self._controller.reset()
        yield Started()

        tasks = await self.plan(prompt, context)
        if not tasks:
            yield TextDelta(text="No tasks to run. Try rephrasing the request.")
            yield Completed()
            return

        runner = SwarmWorkerRunner(self._worker, is_cancelled=lambda: self._controller.is_cancelled)
        async for event in self._forward(runner.run(tasks, context, user_prompt=prompt, image_refs=image_refs)):
            yield event

        if not self._controller.is_cancelled and any(t.role is AgentRole.TEST_WRITER for t in tasks):
            async for event in self._test_loop(runner, prompt, context):
                yield event

        if (
            not self._controller.is_cancelled
            and self._config.max_review_loops > 0
            and AgentRole.REVIEWER in self._config.enabled_roles
            and any(t.role is AgentRole.CODER for t in tasks)
        ):
            async for event in self._review_loops(runner, prompt, context):
                yield event

        yield Completed()

    async def _forward(self, stream: AsyncIterator[StreamEvent]) -> AsyncIterator[StreamEvent]:
        """Relay a runner stream without its own Started/Completed, honouring pause."""
        async for event in stream:
            if isinstance(event, Started | Completed):
                continue
            await self._controller.wait_while_paused()
            yield event

    async def _test_loop(
        self, runner: SwarmWorkerRunner, prompt: str, context: WorkspaceContext
    ) -> AsyncIterator[StreamEvent]:
        command = await asyncio.to_thread(detect_test_command, context.root)
        if command is None:
            yield TextDelta(text="\n**Unrecognized project type; skipping the automatic test run.**\n")
            return

        max_retries = self._config.max_post_code_retries
        for attempt in range(max_retries + 1):
            if not await self._controller.wait_while_paused():
                return
            suffix = f" (attempt {attempt + 1}/{max_retries + 1})" if attempt else ""
            yield TextDelta(text=f"\n\n## Running tests{suffix}\n\n")

            result = await run_shell(command.command, cwd=context.root, timeout_ms=self._test_timeout_ms)
            for line in result.output.splitlines():
                yield TextDelta(text=f"[Test] {line}\n")

            if not output_needs_attention(result.returncode, result.output) and not result.timed_out:
                yield TextDelta(text="\n**Tests passed with no errors or warnings.**\n")
                return
            if attempt >= max_retries:
                yield TextDelta(text=f"\n**Reached the limit of {max_retries + 1} attempts.**\n")
                return

            logger.info("Test run %s failed with exit code %s", attempt + 1, result.returncode)
            yield TextDelta(text="\n**Tests need attention. Running the debugger...**\n\n")
            debug_task = AgentTask(
                role=AgentRole.DEBUGGER,
                task_description=render_template(
                    "test_failure.j2",
                    {
                        "command": command.command,
                        "attempt": attempt + 1,
                        "max_attempts": max_retries + 1,
                        "output": result.output[-8000:],
                    },
                ),
                order=1,
            )
            async for event in self._forward(runner.run([debug_task], context, user_prompt=prompt)):
                yield event

    async def _review_loops(
        self, runner: SwarmWorkerRunner, prompt: str, context: WorkspaceContext
    ) -> AsyncIterator[StreamEvent]:
        total = self._config.max_review_loops
        for loop in range(1, total + 1):
            if not await self._controller.wait_while_paused():
                return
            yield TextDelta(text=f"\n\n## Review loop {loop}/{total}\n\n")
            review_task = AgentTask(role=AgentRole.REVIEWER, task_description=REVIEW_LOOP_TASK, order=1)
            parts: list[str] = []
            async for event in self._forward(runner.run([review_task], context, user_prompt=prompt)):
                if isinstance(event, TextDelta):
                    parts.append(event.text)
                yield event

            report = runner.outputs[-1].output if runner.outputs else "".join(parts)
            if not review_reports_issues(report):
                return
            if AgentRole.CODER not in self._config.enabled_roles:
                return
            yield TextDelta(text="\n**The reviewer found issues. Running the coder...**\n\n")
            fix_task = AgentTask(role=AgentRole.CODER, task_description=REVIEW_FIX_TASK, order=1)
            async for event in self._forward(
                runner.run([fix_task], context, user_prompt=f"{prompt}\n\nReviewer report:\n{report}")
            ):
                yield event


__all__ = ["AgentSwarm", "review_reports_issues", "with_post_code_pipeline"]
