from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from types import FrameType

import typer
from rich import box
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .core.config import AppConfig, ConfigLoadResult, load_config
from .core.console import console, setup_logging
from .core.runtime import ExecutionController, ExecutionScope, controller_context
from .core.security import SandboxMode
from .core.workspace import WorkspaceContext
from .providers import ErrorEvent, LLMProvider, RawEvent, StreamEvent, TextDelta
from .providers.command import CommandProvider
from .review.partitioner import PartitionStrategy, ReviewScope, partition_workspace
from .review.pipeline import MultiSwarmReview
from .swarm.session import AgentSwarm
from .tools.provider import ToolEnabledProvider
from .tools.runtime import ToolRuntime, ToolRuntimePolicy

app = typer.Typer(help="coderide: plan, run and review code changes with a swarm of agents.")
logger = logging.getLogger(__name__)


class ApplicationLifecycle:
    """Owns the execution controller and translates signals into stop requests.

    The first SIGINT/SIGTERM asks running workers to stop at the next
    boundary and terminates the active subprocess. A second one exits.
    """

    def __init__(self) -> None:
        self.controller = ExecutionController()
        self._shutdown_requested = False

    def handle_shutdown(self, signum: int, frame: FrameType | None) -> None:
        if self._shutdown_requested:
            console.print("\n[red]Force exit.[/red]")
            raise SystemExit(128 + signum)

        self._shutdown_requested = True
        console.print("\n[yellow]Stopping after the current step... (press again to force)[/yellow]")
        self.controller.request_stop()

    def register_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self.handle_shutdown)
        signal.signal(signal.SIGTERM, self.handle_shutdown)


@dataclass
class AppState:
    config: AppConfig
    config_meta: ConfigLoadResult
    logger: logging.Logger
    verbose: bool = False
    lifecycle: ApplicationLifecycle = field(default_factory=ApplicationLifecycle)

    @property
    def workspace(self) -> WorkspaceContext:
        return WorkspaceContext.for_root(
            self.config.user.workspace_root, excluded=self.config.user.excluded_paths
        )


def build_worker_provider(
    config: AppConfig,
    *,
    scope: ExecutionScope,
    sandbox_mode: SandboxMode | None = None,
) -> LLMProvider:
    """CLI backend, wrapped with the tool runtime unless tools are disabled."""
    base = CommandProvider.from_config(config.provider)
    if not config.tools.enabled:
        return base
    policy = ToolRuntimePolicy(
        sandbox_mode=sandbox_mode or config.tools.sandbox_mode,
        timeout_ms=config.tools.timeout_ms,
    )
    return ToolEnabledProvider(
        base,
        runtime=ToolRuntime(),
        policy=policy,
        scope=scope,
        max_tool_rounds=config.tools.max_tool_rounds,
    )


def _describe_activity(event: RawEvent) -> str:
    payload = event.payload
    subject = (
        payload.get("title")
        or payload.get("path")
        or payload.get("command")
        or payload.get("tool")
        or payload.get("steps")
        or payload.get("breakdown")
        or ""
    )
    status = payload.get("status") or payload.get("detail") or ""
    agent = f"[{payload['agent']}] " if "agent" in payload else ""
    return f"{agent}{event.type} {subject} {status}".strip()


async def _render(stream: AsyncIterator[StreamEvent], state: AppState) -> bool:
    """Print a stream to the console. Returns False when it ended with an error."""
    ok = True
    with controller_context(state.lifecycle.controller):
        async for event in stream:
            match event:
                case TextDelta(text=text):
                    console.print(text, end="", markup=False, highlight=False, soft_wrap=True)
                case RawEvent():
                    if state.verbose:
                        console.print(f"· {_describe_activity(event)}", style="dim", markup=False)
                case ErrorEvent(message=message):
                    console.print(f"\n[red]Error:[/red] {message}")
                    ok = False
    console.print()
    return ok


def _finish(ok: bool) -> None:
    if not ok:
        raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to a coderide config file (TOML or JSON)."
    ),
    workspace: Path | None = typer.Option(
        None, "--workspace", "-w", help="Workspace root (defaults to the configured root)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    loaded_config, meta = load_config(config_path=config)
    if workspace is not None:
        updated_user = loaded_config.user.model_copy(
            update={"workspace_root": workspace.expanduser().resolve()}
        )
        loaded_config = loaded_config.model_copy(update={"user": updated_user})

    app_logger = setup_logging(level=loaded_config.user.log_level, verbose=verbose)
    lifecycle = ApplicationLifecycle()
    lifecycle.register_signal_handlers()

    ctx.obj = AppState(
        config=loaded_config,
        config_meta=meta,
        logger=app_logger,
        verbose=verbose,
        lifecycle=lifecycle,
    )

    if meta.error:
        console.print(
            Panel(
                f"[bold red]Configuration Error - Safe Mode Active[/bold red]\n\n"
                f"Failed to load {meta.path}:\n{meta.error}\n\n"
                f"[yellow]Using default settings.[/yellow]",
                border_style="red",
            )
        )
    else:
        app_logger.debug(
            "Loaded configuration from %s (env overrides: %s)",
            meta.path,
            sorted(meta.env_overrides),
        )


@app.command("plan")
def plan_command(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="What the swarm should do."),
) -> None:
    """Show the task plan the swarm would run for PROMPT."""
    state: AppState = ctx.obj
    swarm = AgentSwarm(
        build_worker_provider(state.config, scope=ExecutionScope.PLAN, sandbox_mode=SandboxMode.READ_ONLY),
        state.config.swarm,
        controller=state.lifecycle.controller,
    )
    tasks = asyncio.run(swarm.plan(prompt, state.workspace))

    table = Table(title="Plan", box=box.SIMPLE, expand=True)
    table.add_column("Order", style="cyan", no_wrap=True)
    table.add_column("Role", style="magenta", no_wrap=True)
    table.add_column("Task", style="white")
    for task in tasks:
        table.add_row(str(task.order), task.role.display_name, task.task_description)
    console.print(table)


@app.command("swarm")
def swarm_command(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="What the swarm should do."),
) -> None:
    """Plan PROMPT and run it with the agent swarm."""
    state: AppState = ctx.obj
    swarm = AgentSwarm(
        build_worker_provider(state.config, scope=ExecutionScope.SWARM),
        state.config.swarm,
        controller=state.lifecycle.controller,
    )
    _finish(asyncio.run(_render(swarm.send(prompt, state.workspace), state)))


@app.command("review")
def review_command(
    ctx: typer.Context,
    request: str = typer.Argument("Review the codebase.", help="Review request."),
    yolo: bool = typer.Option(False, "--yolo", help="Apply fixes without confirmation."),
    partitions: int | None = typer.Option(None, "--partitions", "-p", help="Parallel workers (2-12)."),
    rounds: int | None = typer.Option(None, "--rounds", "-r", help="Review rounds (1-10)."),
    analysis_only: bool = typer.Option(False, "--analysis-only", help="Never run the fix phase."),
) -> None:
    """Review the workspace in parallel partitions and optionally fix findings."""
    state: AppState = ctx.obj
    update: dict[str, object] = {}
    if yolo:
        update["yolo"] = True
    if partitions is not None:
        update["partition_count"] = partitions
    if rounds is not None:
        update["max_review_rounds"] = rounds
    if analysis_only:
        update["phases"] = "analysis-only"
    review_config = state.config.review.model_validate(
        {**state.config.review.model_dump(), **update}
    )

    pipeline = MultiSwarmReview(
        build_worker_provider(state.config, scope=ExecutionScope.REVIEW, sandbox_mode=SandboxMode.READ_ONLY),
        build_worker_provider(state.config, scope=ExecutionScope.REVIEW),
        review_config,
        controller=state.lifecycle.controller,
    )
    _finish(asyncio.run(_render(pipeline.send(request, state.workspace), state)))


@app.command("ask")
def ask_command(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Prompt for a single agent."),
) -> None:
    """Send PROMPT to a single agent with workspace tools."""
    state: AppState = ctx.obj
    provider = build_worker_provider(state.config, scope=ExecutionScope.AGENT)
    _finish(asyncio.run(_render(provider.send(prompt, state.workspace), state)))


@app.command("partition")
def partition_command(
    ctx: typer.Context,
    count: int = typer.Option(3, "--count", "-n", help="Number of partitions."),
    strategy: PartitionStrategy = typer.Option(
        PartitionStrategy.DIRECTORY, "--strategy", "-s", help="Partitioning strategy."
    ),
    uncommitted: bool = typer.Option(False, "--uncommitted", help="Only uncommitted files."),
) -> None:
    """Show how the workspace would be split across review workers."""
    state: AppState = ctx.obj
    scope = ReviewScope.UNCOMMITTED if uncommitted else ReviewScope.ALL
    result = asyncio.run(
        partition_workspace(
            state.config.user.workspace_root,
            count,
            strategy,
            excluded=state.config.user.excluded_paths,
            scope=scope,
        )
    )

    table = Table(title=f"Partitions ({scope.value})", box=box.SIMPLE, expand=True)
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Files", style="magenta", no_wrap=True)
    table.add_column("Paths", style="white")
    for partition in result:
        preview = ", ".join(partition.paths[:5]) + (" ..." if len(partition.paths) > 5 else "")
        table.add_row(partition.id, str(len(partition.paths)), preview)
    console.print(table)


@app.command("config")
def show_config(ctx: typer.Context) -> None:
    """Show the active configuration and where it came from."""
    state: AppState = ctx.obj
    meta = state.config_meta

    table = Table(title="Config", box=box.SIMPLE, expand=True)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    for key, value in state.config.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)

    meta_lines = [
        f"Path: {meta.path}",
        "File loaded: yes" if meta.file_loaded else "File loaded: no (using defaults + env)",
    ]
    if meta.env_overrides:
        meta_lines.append("Env overrides: " + ", ".join(sorted(meta.env_overrides)))
    console.print(Panel("\n".join(meta_lines), title="Config source", box=box.SIMPLE))


@app.command("version")
def show_version() -> None:
    """Print the coderide version."""
    console.print(__version__)


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
