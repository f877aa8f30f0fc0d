"""CLI entrypoint for issueloop.

issueloop repeatedly sends an AI coding assistant a prompt built from an
instruction template, the tracker's issues, the generated task backlog and
recent progress, until the assistant reports that all work is complete.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import DEFAULT_CONFIG_FILE, ConfigError, LoopConfig
from .console import ConsoleOutput
from .event_stream import EventStreamError, EventStreamWriter
from .loop_logger import LoopLogger
from .runner import EXIT_FAILED, LoopRunner
from .task_registry import TaskRegistry, TaskRegistryError
from .tools import tool_definitions

app = typer.Typer(
    name="issueloop",
    help="Run an AI coding assistant in a loop over your open issues.",
    add_completion=False,
)

console = Console()

DEFAULT_PROMPT = """\
You are working in this repository to resolve the open issues listed below.

- Pick the most important open issue that is not done yet.
- Use the tools to check the task backlog and earlier progress before starting.
- Make focused changes, run the project's tests, and fix what you break.
- Do not repeat work that the progress log says is already finished.
"""


def setup_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level regardless of ``level``.
        level: Log level name from configuration.
    """
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"issueloop version {__version__}")
        raise typer.Exit()


def load_config(config_file: Optional[Path]) -> LoopConfig:
    try:
        return LoopConfig.from_env(config_file)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_FAILED)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Run an AI coding assistant in a loop over your open issues."""
    pass


async def _run_loop(config: LoopConfig) -> int:
    event_stream = None
    if config.stream_events:
        try:
            event_stream = EventStreamWriter.open(config.stream_events)
        except EventStreamError as e:
            console.print(f"[red]Error:[/red] {e}")
            return EXIT_FAILED

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        # Signal handlers are unavailable on some platforms; Ctrl+C then aborts the process
        pass

    loop_logger = LoopLogger(config.log_dir, model=config.model)
    output = ConsoleOutput(
        console=console,
        colorized=config.colorized_output,
        show_reasoning=config.show_reasoning,
    )
    runner = LoopRunner(
        config,
        output=output,
        loop_logger=loop_logger,
        cancel_event=cancel_event,
        event_stream=event_stream,
    )
    try:
        result = await runner.run()
    finally:
        if event_stream:
            event_stream.close()
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    loop_logger.print_summary(console)
    if result.error and result.exit_code == EXIT_FAILED:
        console.print(f"\n[red]Error:[/red] {result.error}")
    return result.exit_code


@app.command()
def run(
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        help="Maximum number of loop iterations.",
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        help="Model to use for each session.",
    ),
    prompt_file: Optional[Path] = typer.Option(
        None,
        "--prompt-file",
        help="Instruction template (default: prompt.md).",
    ),
    issues_file: Optional[Path] = typer.Option(
        None,
        "--issues-file",
        help="Issues snapshot JSON (default: issues.json).",
    ),
    tasks_file: Optional[Path] = typer.Option(
        None,
        "--tasks-file",
        help="Generated task backlog JSON (default: generated_tasks.json).",
    ),
    progress_file: Optional[Path] = typer.Option(
        None,
        "--progress-file",
        help="Progress journal (default: progress.txt).",
    ),
    refresh_issues: Optional[bool] = typer.Option(
        None,
        "--refresh-issues",
        help="Refresh the issues snapshot with `gh issue list` before starting.",
    ),
    repo: Optional[str] = typer.Option(
        None,
        "--repo",
        help="Repository override for gh (owner/name).",
    ),
    stop_without_open_issues: Optional[bool] = typer.Option(
        None,
        "--stop-without-open-issues",
        help="Exit immediately when the snapshot has no open issues.",
    ),
    show_reasoning: Optional[bool] = typer.Option(
        None,
        "--show-reasoning/--no-show-reasoning",
        help="Stream model reasoning to the terminal.",
    ),
    colorized: Optional[bool] = typer.Option(
        None,
        "--colorized/--no-colorized",
        help="Colorize terminal output.",
    ),
    stream_events: Optional[Path] = typer.Option(
        None,
        "--stream-events",
        help="Append session events as JSON lines to this file.",
    ),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Config file (default: {DEFAULT_CONFIG_FILE}).",
    ),
    mock: bool = typer.Option(
        False,
        "--mock",
        "-m",
        help="Run in mock mode (no API calls).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Run the session loop until the assistant reports completion."""
    config = load_config(config_file).with_overrides(
        max_iterations=max_iterations,
        model=model,
        prompt_file=prompt_file,
        issues_file=issues_file,
        tasks_file=tasks_file,
        progress_file=progress_file,
        refresh_issues=refresh_issues,
        repo=repo,
        stop_without_open_issues=stop_without_open_issues,
        show_reasoning=show_reasoning,
        colorized_output=colorized,
        stream_events=stream_events,
        mock_mode=True if mock else None,
    )
    setup_logging(verbose, config.log_level)

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(EXIT_FAILED)

    console.print("[bold]Starting issueloop[/bold]")
    console.print(f"[dim]Model:[/dim] {config.model}")
    console.print(f"[dim]Max iterations:[/dim] {config.max_iterations}")
    console.print(f"[dim]Prompt file:[/dim] {config.prompt_file}")
    console.print(f"[dim]Issues file:[/dim] {config.issues_file}")
    console.print(f"[dim]Progress file:[/dim] {config.progress_file}")
    if config.mock_mode:
        console.print("[dim]Mock mode:[/dim] enabled")
    if config.stream_events:
        console.print(f"[dim]Event stream:[/dim] {config.stream_events}")

    exit_code = asyncio.run(_run_loop(config))
    raise typer.Exit(exit_code)


def _write_if_missing(path: Path, content: str) -> bool:
    if path.exists():
        console.print(f"[yellow]{path} already exists, skipping.[/yellow]")
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    console.print(f"[green]Created {path}[/green]")
    return True


@app.command()
def init(
    config_file: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILE),
        "--config",
        "-c",
        help="Config file to create.",
    ),
) -> None:
    """Create a default config, prompt, issues snapshot and progress journal.

    Existing files are never overwritten.
    """
    defaults = LoopConfig()
    config_text = yaml.safe_dump(defaults.to_dict(), sort_keys=False)

    _write_if_missing(config_file, config_text)
    _write_if_missing(defaults.prompt_file, DEFAULT_PROMPT)
    _write_if_missing(defaults.issues_file, "[]\n")
    _write_if_missing(defaults.progress_file, "")

    console.print("\nNext steps:")
    console.print(f"  1. Review and customize {defaults.prompt_file} for your project")
    console.print(f"  2. Add issues to {defaults.issues_file} (or use --refresh-issues)")
    console.print("  3. Run: issueloop run --max-iterations 5")


@app.command()
def tools() -> None:
    """List the tools exposed to the assistant with their argument schemas."""
    for definition in tool_definitions():
        console.print(f"[bold cyan]{definition['name']}[/bold cyan]")
        console.print(f"  {definition['description']}")
        console.print(json.dumps(definition["input_schema"], indent=2), markup=False, highlight=False)
        console.print()


@app.command()
def tasks(
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Config file (default: {DEFAULT_CONFIG_FILE}).",
    ),
) -> None:
    """Show the generated task backlog and its progress."""
    config = load_config(config_file)
    registry = TaskRegistry(config.issues_file, config.tasks_file)
    try:
        registry.load()
    except TaskRegistryError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_FAILED)

    if not registry.tasks:
        console.print(f"[yellow]No tasks in {config.tasks_file}.[/yellow]")
        return

    progress = registry.get_progress()
    table = Table(title=f"Tasks ({progress['completed']}/{progress['total']} done, {progress['percentage']}%)")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Issue", justify="right")
    table.add_column("Title")
    for task in registry.tasks:
        table.add_row(
            task.id,
            task.status.value,
            f"#{task.origin_issue_id}" if task.origin_issue_id else "",
            task.title or task.description,
        )
    console.print(table)
