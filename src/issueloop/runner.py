"""Loop driver: wires the components together and runs iterations."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

from .backend import AnthropicBackend, AssistantBackend, ScriptedBackend
from .completion import PROMISE_MARKER
from .config import LoopConfig
from .console import ConsoleOutput
from .event_stream import EventStreamWriter
from .events import SessionEnded, TextDelta, ToolCallRequested
from .gh_issues import GhIssuesError, refresh_issues_file
from .loop_logger import LoopLogger
from .orchestrator import SessionOrchestrator
from .progress_store import ProgressStore, ProgressStoreError
from .prompts import PromptAssembler, read_template
from .task_registry import TaskRegistry, TaskRegistryError
from .tools import ToolDispatcher

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NOT_COMPLETED = 1
EXIT_FAILED = 2

NO_OPEN_ISSUES = "NO_OPEN_ISSUES"


@dataclass(frozen=True)
class LoopResult:
    """How a run of the loop ended."""

    exit_code: int
    iterations: int = 0
    completed: bool = False
    error: Optional[str] = None


def mock_scripts() -> list[list]:
    """Event scripts replayed by the backend in --mock mode."""
    return [[
        ToolCallRequested(name="list_open_issues", arguments={}, call_id="mock-1"),
        TextDelta("Mock run: reviewed the open issues without calling a model.\n\n"),
        TextDelta("Learnings:\n- mock mode makes no API calls\n\n"),
        TextDelta(PROMISE_MARKER + "\n"),
        SessionEnded("end_turn"),
    ]]


def build_backend(config: LoopConfig) -> AssistantBackend:
    """Select the backend for this run."""
    if config.mock_mode:
        return ScriptedBackend(mock_scripts())
    return AnthropicBackend(api_key=config.anthropic_api_key, timeout=config.timeout)


class LoopRunner:
    """Runs up to ``max_iterations`` sessions until the assistant reports completion.

    Exit codes:
        0: completed, or no open issues with ``stop_without_open_issues`` set
        1: iteration cap reached without completion
        2: fatal session error, cancellation, or invalid input files
    """

    def __init__(
        self,
        config: LoopConfig,
        backend: Optional[AssistantBackend] = None,
        output: Optional[ConsoleOutput] = None,
        loop_logger: Optional[LoopLogger] = None,
        cancel_event: Optional[asyncio.Event] = None,
        event_stream: Optional[EventStreamWriter] = None,
    ):
        self.config = config
        self.backend = backend or build_backend(config)
        self.output = output or ConsoleOutput(
            colorized=config.colorized_output,
            show_reasoning=config.show_reasoning,
        )
        self.loop_logger = loop_logger
        self.cancel_event = cancel_event
        self.event_stream = event_stream

        self.registry = TaskRegistry(config.issues_file, config.tasks_file)
        self.progress = ProgressStore(config.progress_file)
        self.assembler = PromptAssembler(config.progress_window)

    async def _prepare(self) -> Optional[LoopResult]:
        """Refresh and load inputs. Returns a result if the run should stop early."""
        if self.config.refresh_issues:
            # Runs in a worker thread so SIGINT still reaches the cancel event
            try:
                await asyncio.to_thread(refresh_issues_file, self.config.issues_file, self.config.repo)
            except GhIssuesError as e:
                self.output.write_error(str(e))
                return LoopResult(EXIT_FAILED, error=str(e))
            if self.cancel_event is not None and self.cancel_event.is_set():
                self.output.write_info("Cancelled.")
                return LoopResult(EXIT_FAILED, error="cancelled")

        try:
            self.registry.load_issues()
            self.registry.load()
        except TaskRegistryError as e:
            self.output.write_error(str(e))
            return LoopResult(EXIT_FAILED, error=str(e))

        try:
            self.progress.read_text()
        except ProgressStoreError as e:
            self.output.write_error(str(e))
            return LoopResult(EXIT_FAILED, error=str(e))

        if not self.registry.has_open_issues():
            self.output.write_info(NO_OPEN_ISSUES)
            if self.config.stop_without_open_issues:
                logger.info("No open issues; nothing to do")
                return LoopResult(EXIT_OK)

        self.registry.sync_from_issues()
        try:
            self.registry.save()
        except TaskRegistryError as e:
            logger.error(f"Could not save task backlog: {e}")
        return None

    async def run(self) -> LoopResult:
        """Run the loop.

        Returns:
            LoopResult with the process exit code.
        """
        if self.event_stream:
            self.event_stream.write_session_header(os.getcwd())

        early = await self._prepare()
        if early is not None:
            return self._done(early)

        try:
            template = read_template(self.config.prompt_file)
        except OSError as e:
            message = f"Failed to read prompt file {self.config.prompt_file}: {e}"
            self.output.write_error(message)
            return self._done(LoopResult(EXIT_FAILED, error=message))

        orchestrator = SessionOrchestrator(
            config=self.config,
            backend=self.backend,
            dispatcher=ToolDispatcher(self.registry, self.progress),
            progress=self.progress,
            output=self.output,
            loop_logger=self.loop_logger,
            cancel_event=self.cancel_event,
            event_stream=self.event_stream,
        )

        max_iterations = self.config.max_iterations
        for count in range(1, max_iterations + 1):
            try:
                tail = self.progress.tail(self.config.progress_window)
                iteration = self.progress.next_iteration()
            except ProgressStoreError as e:
                logger.error(f"Could not read progress journal: {e}")
                tail, iteration = [], count

            prompt = self.assembler.assemble(
                template,
                self.registry.issues,
                self.registry.tasks,
                tail,
            )

            self.output.write_iteration_header(count, max_iterations)
            if self.loop_logger:
                self.loop_logger.log_iteration_start(iteration, max_iterations)

            outcome = await orchestrator.run_once(prompt, iteration=iteration)

            if self.loop_logger:
                self.loop_logger.log_iteration_end(
                    iteration, outcome.status.value, completed=outcome.completed
                )

            if outcome.fatal:
                return self._done(LoopResult(EXIT_FAILED, count, error=outcome.error))
            if outcome.cancelled:
                self.output.write_info("Cancelled.")
                return self._done(LoopResult(EXIT_FAILED, count, error="cancelled"))
            if outcome.completed:
                self.output.write_info(f"Completion marker detected after {count} iteration(s).")
                return self._done(LoopResult(EXIT_OK, count, completed=True))

        self.output.write_info(f"Reached max iterations ({max_iterations}) without completion.")
        return self._done(LoopResult(EXIT_NOT_COMPLETED, max_iterations))

    def _done(self, result: LoopResult) -> LoopResult:
        if self.loop_logger:
            self.loop_logger.finalize(result.exit_code, result.completed)
        if self.event_stream:
            self.event_stream.emit(
                "agent_end",
                exit_code=result.exit_code,
                iterations=result.iterations,
                completed=result.completed,
                error=result.error,
            )
        return result
