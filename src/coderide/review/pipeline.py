"""Multi-swarm review pipeline.

A review round has two phases:

1. Analysis: the workspace is partitioned and one read-only worker per
   partition reviews its files concurrently. Reports are emitted in
   partition order.
2. Execution: for partitions with significant findings, a fix worker runs
   under a file lock covering the partition. Steps are ordered with
   plan_execution; a failed step does not stop the others.

The execution phase only starts when the request confirms it (or yolo mode
is on). Rounds repeat until no significant findings remain or the round
limit is reached. If every analysis worker fails, the run aborts with a
breakdown of failure reasons.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from pathlib import Path

from coderide.core.config import ReviewConfig
from coderide.core.console import get_logger
from coderide.core.runtime import ExecutionController
from coderide.core.templates import render_template
from coderide.core.workspace import WorkspaceContext, load_open_files
from coderide.providers import (
    Completed,
    ErrorEvent,
    EventStream,
    LLMProvider,
    RawEvent,
    Started,
    StreamEvent,
    TextDelta,
    collect_text,
)
from coderide.review.failures import (
    MISSING_OUTPUT_SENTINEL,
    FailureReason,
    classify_report,
    failure_breakdown,
    format_breakdown,
    retry_after_seconds,
)
from coderide.review.locks import ExecutionStep, FileLockCoordinator, plan_execution
from coderide.review.partitioner import (
    CodebasePartition,
    PartitionStrategy,
    ReviewScope,
    partition_workspace,
)

logger = get_logger(__name__)

CONFIRMATION_PROMPT = (
    "\n**Analysis complete.** Reply with \"proceed\" (or \"apply\") to run the fix phase, "
    "or enable yolo mode to apply fixes automatically.\n"
)


@dataclass(frozen=True, slots=True)
class PartitionReport:
    """Analysis output for one partition."""

    partition: CodebasePartition
    text: str

    @property
    def failure(self) -> FailureReason | None:
        return classify_report(self.text)


def _contains_any(text: str, phrases: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(phrase.lower() in lowered for phrase in phrases if phrase.strip())


def detect_scope(request: str, config: ReviewConfig) -> ReviewScope:
    """Uncommitted scope when the request mentions changed work, else the whole workspace."""
    return ReviewScope.UNCOMMITTED if _contains_any(request, config.scope_phrases) else ReviewScope.ALL


def execution_confirmed(request: str, config: ReviewConfig) -> bool:
    """Whether the fix phase may run for this request."""
    if config.phases == "analysis-only":
        return False
    return config.yolo or _contains_any(request, config.continuation_phrases)


def is_significant(report: str, config: ReviewConfig) -> bool:
    """A report is significant when it is long enough and mentions a finding keyword."""
    if classify_report(report) is not None:
        return False
    if len(report.strip()) <= config.min_report_chars:
        return False
    return _contains_any(report, config.finding_keywords)


class MultiSwarmReview:
    """LLMProvider that reviews (and optionally fixes) the workspace in parallel partitions."""

    def __init__(
        self,
        analysis_provider: LLMProvider,
        execution_provider: LLMProvider | None = None,
        config: ReviewConfig | None = None,
        *,
        controller: ExecutionController | None = None,
    ) -> None:
        self._analysis = analysis_provider
        self._execution = execution_provider or analysis_provider
        self._config = config or ReviewConfig()
        self._controller = controller or ExecutionController()
        self._locks = FileLockCoordinator()

    @property
    def provider_id(self) -> str:
        return "multi-swarm-review"

    @property
    def locks(self) -> FileLockCoordinator:
        return self._locks

    async def send(
        self,
        prompt: str,
        context: WorkspaceContext,
        image_refs: Sequence[Path] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        config = self._config
        scope = detect_scope(prompt, config)
        confirmed = execution_confirmed(prompt, config)
        yield Started()

        for round_number in range(1, config.max_review_rounds + 1):
            if self._controller.is_cancelled:
                yield TextDelta(text="\n**Review stopped by user.**\n")
                break

            partitions = [
                partition
                for partition in await partition_workspace(
                    context.root,
                    config.partition_count,
                    PartitionStrategy(config.strategy),
                    excluded=context.excluded_paths,
                    scope=scope,
                )
                if partition.paths
            ]
            if not partitions:
                yield TextDelta(text=f"No source files found to review (scope: {scope.value}).\n")
                break

            yield TextDelta(
                text=(
                    f"\n## Review round {round_number}/{config.max_review_rounds}: "
                    f"analysis of {len(partitions)} partitions\n\n"
                )
            )
            reports = await self._analyze(partitions, prompt, context)
            for report in reports:
                yield TextDelta(
                    text=(
                        f"\n### Partition {report.partition.id} "
                        f"({len(report.partition.paths)} files)\n\n{report.text.strip()}\n"
                    )
                )

            if all(report.failure is not None for report in reports):
                for event in self._abort_events(reports, round_number):
                    yield event
                break

            actionable = [report for report in reports if report.failure is None]
            if round_number > 1:
                # Re-analysis after fixes: only reports that still name real problems go on.
                actionable = [report for report in actionable if is_significant(report.text, config)]
            if not actionable:
                yield TextDelta(text="\n**No significant findings. Review complete.**\n")
                break
            if config.phases == "analysis-only":
                yield TextDelta(text="\n**Analysis-only mode: skipping the fix phase.**\n")
                break
            if not confirmed:
                yield TextDelta(text=CONFIRMATION_PROMPT)
                break
            if self._controller.is_cancelled:
                yield TextDelta(text="\n**Review stopped by user.**\n")
                break

            yield TextDelta(text=f"\n## Review round {round_number}: applying fixes\n\n")
            async for event in self._execute(actionable, prompt, context):
                yield event

            if round_number == config.max_review_rounds:
                yield TextDelta(
                    text=f"\n**Reached the limit of {config.max_review_rounds} review rounds.**\n"
                )

        yield Completed()

    def _abort_events(self, reports: Sequence[PartitionReport], round_number: int) -> list[StreamEvent]:
        breakdown = failure_breakdown(report.text for report in reports)
        formatted = format_breakdown(breakdown)
        logger.warning("All %s analysis workers failed: %s", len(reports), formatted)
        message = f"\n**All {len(reports)} analysis workers failed: {formatted}. Skipping the fix phase.**\n"
        hints = [seconds for r in reports if (seconds := retry_after_seconds(r.text)) is not None]
        if hints:
            message += f"Retry after {max(hints)} seconds.\n"
        return [
            TextDelta(text=message),
            RawEvent(
                type="review_failure",
                payload={
                    "breakdown": formatted,
                    "partitions": str(len(reports)),
                    "round": str(round_number),
                },
            ),
        ]

    async def _analyze(
        self,
        partitions: Sequence[CodebasePartition],
        request: str,
        context: WorkspaceContext,
    ) -> list[PartitionReport]:
        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(self._analyze_partition(partition, request, context))
                for partition in partitions
            ]
        reports = [task.result() for task in tasks]
        return sorted(reports, key=lambda report: int(report.partition.id.removeprefix("p")))

    async def _scoped_context(
        self, partition: CodebasePartition, context: WorkspaceContext
    ) -> WorkspaceContext:
        open_files = await asyncio.to_thread(
            load_open_files,
            context.root,
            list(partition.paths),
            limit=self._config.max_preloaded_files,
        )
        return context.scoped(partition.paths, open_files)

    async def _analyze_partition(
        self,
        partition: CodebasePartition,
        request: str,
        context: WorkspaceContext,
    ) -> PartitionReport:
        prompt = render_template("review_analysis.j2", {"partition": partition, "request": request})
        try:
            scoped = await self._scoped_context(partition, context)
            text, error = await collect_text(self._analysis.send(prompt, scoped))
        except Exception as exc:
            text, error = "", str(exc) or type(exc).__name__

        if error is not None:
            logger.warning("Analysis worker %s failed: %s", partition.id, error)
            return PartitionReport(partition, f"[Error {partition.id}: {error}]")
        if not text.strip():
            return PartitionReport(partition, MISSING_OUTPUT_SENTINEL)
        return PartitionReport(partition, text)

    async def _execute(
        self,
        reports: Sequence[PartitionReport],
        request: str,
        context: WorkspaceContext,
    ) -> AsyncIterator[StreamEvent]:
        by_id = {report.partition.id: report for report in reports}
        claims = [
            ExecutionStep(swarm_id=report.partition.id, files=frozenset(report.partition.paths))
            for report in reports
        ]
        for step in plan_execution(claims):
            if self._controller.is_cancelled:
                yield TextDelta(text="\n**Review stopped by user.**\n")
                return
            report = by_id[step.swarm_id]
            yield TextDelta(text=f"\n### Fixing partition {step.swarm_id}\n\n")
            await self._locks.acquire_lock(step.files, step.swarm_id)
            try:
                async for event in self._fix_partition(report, request, context):
                    yield event
            finally:
                await self._locks.release_lock(step.files, step.swarm_id)

    async def _fix_partition(
        self,
        report: PartitionReport,
        request: str,
        context: WorkspaceContext,
    ) -> AsyncIterator[StreamEvent]:
        partition = report.partition
        prompt = render_template(
            "review_fix.j2",
            {"partition": partition, "request": request, "report": report.text.strip()},
        )
        try:
            scoped = await self._scoped_context(partition, context)
            async for event in EventStream(self._execution.send(prompt, scoped)):
                match event:
                    case TextDelta() | RawEvent():
                        yield event
                    case ErrorEvent(message=message):
                        logger.warning("Fix worker %s failed: %s", partition.id, message)
                        yield TextDelta(text=f"\n[Error {partition.id}: {message}]\n")
                    case Started() | Completed():
                        pass
        except Exception as exc:
            logger.warning("Fix worker %s failed: %s", partition.id, exc)
            yield TextDelta(text=f"\n[Error {partition.id}: {exc}]\n")


__all__ = [
    "MultiSwarmReview",
    "PartitionReport",
    "detect_scope",
    "execution_confirmed",
    "is_significant",
]
