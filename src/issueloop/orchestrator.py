"""Session orchestrator: runs one prompt to completion against the backend.

One call to ``run_once`` opens a session, streams the response to the
console, resolves tool calls through the dispatcher, and appends exactly one
entry to the progress journal.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .backend import AssistantBackend, AssistantSession, SessionError
from .completion import contains_completion_marker
from .config import LoopConfig
from .console import ConsoleOutput
from .event_stream import EventStreamWriter
from .events import (
    ReasoningDelta,
    SessionEnded,
    TextDelta,
    ToolCallRequested,
    ToolCallResult,
)
from .loop_logger import LoopLogger
from .progress_store import (
    IterationStatus,
    ProgressEntry,
    ProgressStore,
    ProgressStoreError,
    extract_learnings,
    utc_timestamp,
)
from .tools import ToolDispatcher, ToolError, tool_definitions

logger = logging.getLogger(__name__)

CANCELLED_SUMMARY = "Iteration cancelled before the assistant finished."


@dataclass(frozen=True)
class IterationOutcome:
    """Result of one ``run_once`` call."""

    full_text: str
    completed: bool
    tool_call_count: int = 0
    error: Optional[str] = None
    iteration: int = 0
    tool_error_count: int = 0
    cancelled: bool = False
    fatal: bool = False
    stop_reason: Optional[str] = None

    @property
    def status(self) -> IterationStatus:
        if self.fatal:
            return IterationStatus.FAILED
        if self.cancelled:
            return IterationStatus.CANCELLED
        if self.completed:
            return IterationStatus.COMPLETED
        return IterationStatus.INCOMPLETE


@dataclass
class _TurnState:
    """Mutable state for one session; discarded when run_once returns."""

    parts: List[str] = field(default_factory=list)
    tool_names: Dict[str, str] = field(default_factory=dict)
    tool_call_count: int = 0
    tool_error_count: int = 0
    stop_reason: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(self.parts)


class _Cancelled(Exception):
    """Raised internally when the run-scoped cancel event fires."""


class SessionOrchestrator:
    """Drives a single assistant session per iteration."""

    def __init__(
        self,
        config: LoopConfig,
        backend: AssistantBackend,
        dispatcher: ToolDispatcher,
        progress: ProgressStore,
        output: ConsoleOutput,
        loop_logger: Optional[LoopLogger] = None,
        cancel_event: Optional[asyncio.Event] = None,
        event_stream: Optional[EventStreamWriter] = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Loop configuration (model, token limit).
            backend: Backend that opens sessions.
            dispatcher: Resolves tool calls.
            progress: Journal that receives one entry per run_once call.
            output: Console renderer for streamed output.
            loop_logger: Optional structured run log.
            cancel_event: Run-scoped event; when set, the current session is aborted.
            event_stream: Optional JSONL sink for every session event.
        """
        self.config = config
        self.backend = backend
        self.dispatcher = dispatcher
        self.progress = progress
        self.output = output
        self.loop_logger = loop_logger
        self.cancel_event = cancel_event
        self.event_stream = event_stream

    async def run_once(self, prompt: str, iteration: Optional[int] = None) -> IterationOutcome:
        """Run one prompt through a fresh session.

        Args:
            prompt: Fully assembled prompt.
            iteration: Iteration number for the journal entry. Defaults to the
                next number after the journal's last entry.

        Returns:
            The iteration outcome. Backend failures come back as an outcome
            with ``fatal=True`` rather than an exception.
        """
        if iteration is None:
            iteration = self.progress.next_iteration()
        state = _TurnState()
        self._emit("turn_start", iteration)

        try:
            session = await self.backend.open_session(
                self.config.model,
                self.config.max_tokens,
                tool_definitions(),
                reasoning=self.config.show_reasoning,
            )
        except SessionError as e:
            return self._finish(iteration, state, error=str(e), fatal=True)

        try:
            async with session:
                await session.send(prompt)
                await self._consume(session, state, iteration)
        except _Cancelled:
            logger.warning(f"Iteration {iteration} cancelled")
            return self._finish(iteration, state, cancelled=True)
        except SessionError as e:
            return self._finish(iteration, state, error=str(e), fatal=True)
        finally:
            self.output.finish_line()

        return self._finish(iteration, state)

    async def _consume(self, session: AssistantSession, state: _TurnState, iteration: int) -> None:
        while True:
            event = await self._next_event(session)

            if isinstance(event, TextDelta):
                state.parts.append(event.text)
                self.output.write_assistant(event.text)
                self._emit("message_delta", iteration, text=event.text)

            elif isinstance(event, ReasoningDelta):
                self._emit("reasoning_delta", iteration, text=event.text)
                if self.config.show_reasoning:
                    self.output.write_reasoning(event.text)

            elif isinstance(event, ToolCallRequested):
                await self._handle_tool_call(session, state, event, iteration)

            elif isinstance(event, ToolCallResult):
                name = state.tool_names.get(event.call_id, event.call_id)
                logger.debug(f"Tool result delivered for {name} (error={event.is_error})")
                self.output.write_tool_complete(name, is_error=event.is_error)
                self._emit(
                    "tool_execution_end",
                    iteration,
                    tool_call_id=event.call_id,
                    name=name,
                    is_error=event.is_error,
                )

            elif isinstance(event, SessionEnded):
                state.stop_reason = event.reason
                return

            else:
                raise SessionError(f"Unexpected stream event: {event!r}")

    async def _next_event(self, session: AssistantSession):
        if self.cancel_event is None:
            return await session.next_event()
        if self.cancel_event.is_set():
            raise _Cancelled()

        event_task = asyncio.ensure_future(session.next_event())
        cancel_task = asyncio.ensure_future(self.cancel_event.wait())
        done, pending = await asyncio.wait(
            {event_task, cancel_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        if cancel_task in done:
            if event_task in done and not event_task.cancelled():
                event_task.exception()
            raise _Cancelled()
        return event_task.result()

    async def _handle_tool_call(
        self,
        session: AssistantSession,
        state: _TurnState,
        event: ToolCallRequested,
        iteration: int,
    ) -> None:
        state.tool_call_count += 1
        state.tool_names[event.call_id] = event.name
        self.output.write_tool_start(event.name)
        self._emit(
            "tool_execution_start",
            iteration,
            tool_call_id=event.call_id,
            name=event.name,
            arguments=event.arguments,
        )

        try:
            payload = self.dispatcher.dispatch(event.name, event.arguments)
            is_error = False
            error_kind = None
        except ToolError as e:
            logger.warning(f"Tool {event.name} failed: {e.kind.value}: {e.message}")
            payload = e.to_payload()
            is_error = True
            error_kind = e.kind.value
            state.tool_error_count += 1

        if self.loop_logger:
            self.loop_logger.log_tool_call(iteration, event.name, is_error, error_kind)

        await session.send_tool_result(event.call_id, payload, is_error=is_error)

    def _finish(
        self,
        iteration: int,
        state: _TurnState,
        error: Optional[str] = None,
        fatal: bool = False,
        cancelled: bool = False,
    ) -> IterationOutcome:
        full_text = "" if cancelled else state.text
        outcome = IterationOutcome(
            full_text=full_text,
            completed=not (fatal or cancelled) and contains_completion_marker(full_text),
            tool_call_count=state.tool_call_count,
            error=error,
            iteration=iteration,
            tool_error_count=state.tool_error_count,
            cancelled=cancelled,
            fatal=fatal,
            stop_reason=state.stop_reason,
        )

        if fatal:
            self.output.write_error(error or "session failed")
            if self.loop_logger:
                self.loop_logger.log_error(error or "session failed", {"iteration": iteration})

        self._emit(
            "turn_end",
            iteration,
            status=outcome.status.value,
            completed=outcome.completed,
            stop_reason=outcome.stop_reason,
            tool_calls=outcome.tool_call_count,
            tool_errors=outcome.tool_error_count,
            error=error,
        )
        self._record(outcome)
        return outcome

    def _emit(self, event_type: str, iteration: int, **fields) -> None:
        if self.event_stream is not None:
            self.event_stream.emit(event_type, turn=iteration, **fields)

    def _record(self, outcome: IterationOutcome) -> None:
        if outcome.cancelled:
            summary = CANCELLED_SUMMARY
        elif outcome.fatal:
            summary = outcome.full_text.rstrip()
            summary = f"{summary}\n\nSession error: {outcome.error}".strip()
        else:
            summary = outcome.full_text

        entry = ProgressEntry(
            iteration=outcome.iteration,
            timestamp=utc_timestamp(),
            summary=summary,
            learnings=extract_learnings(outcome.full_text),
            model=self.config.model,
            status=outcome.status,
            tool_call_count=outcome.tool_call_count,
            tool_error_count=outcome.tool_error_count,
        )
        try:
            self.progress.append(entry)
        except ProgressStoreError as e:
            logger.error(f"Could not record iteration {outcome.iteration}: {e}")
