"""AI backend sessions for the session loop.

A session is one bidirectional exchange with the backend. After ``send()`` a
producer task feeds ``StreamEvent`` values into a queue, and the orchestrator
consumes them one at a time with ``next_event()``. When the producer emits a
``ToolCallRequested`` it blocks until ``send_tool_result()`` delivers the
result for that call, so results always reach the backend before anything
else is produced.

Two backends are provided:
- AnthropicBackend: streaming Messages API with tool use
- ScriptedBackend: replays canned event scripts (tests and --mock runs)
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence

import anthropic

from .events import (
    SessionEnded,
    StreamEvent,
    TextDelta,
    ReasoningDelta,
    ToolCallRequested,
    ToolCallResult,
)

logger = logging.getLogger(__name__)

# The API rejects thinking budgets below this.
MIN_THINKING_BUDGET = 1024


def thinking_budget(max_tokens: int) -> Optional[int]:
    """Extended-thinking budget for a request, or None if max_tokens is too small.

    The budget is half of ``max_tokens`` so it always stays below it.
    """
    budget = max_tokens // 2
    if budget < MIN_THINKING_BUDGET:
        return None
    return budget


class SessionError(Exception):
    """Fatal backend failure: opening a session, transport, or a malformed stream."""
    pass


class _Failure:
    """Queue item carrying a producer exception to the consumer."""

    def __init__(self, error: BaseException):
        self.error = error


class AssistantSession(ABC):
    """One open conversation with the backend.

    Usable as an async context manager; leaving the block always closes the
    session, including its producer task.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: Dict[str, asyncio.Future] = {}
        self._producer: Optional[asyncio.Task] = None
        self.closed = False

    async def __aenter__(self) -> AssistantSession:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def send(self, prompt: str) -> None:
        """Send the prompt and start producing events."""
        if self.closed:
            raise SessionError("Session is closed")
        if self._producer is not None:
            raise SessionError("A prompt was already sent on this session")
        self._producer = asyncio.create_task(self._run_producer(prompt))

    async def next_event(self) -> StreamEvent:
        """Wait for the next event in arrival order.

        Raises:
            SessionError: If the producer failed.
        """
        if self._producer is None:
            raise SessionError("No prompt has been sent")
        item = await self._queue.get()
        if isinstance(item, _Failure):
            if isinstance(item.error, SessionError):
                raise item.error
            raise SessionError(f"{type(item.error).__name__}: {item.error}") from item.error
        return item

    async def send_tool_result(self, call_id: str, payload: Any, is_error: bool = False) -> None:
        """Deliver a tool result so the producer can continue."""
        future = self._pending.pop(call_id, None)
        if future is None or future.done():
            raise SessionError(f"No tool call pending with id {call_id!r}")
        future.set_result((payload, is_error))

    async def aclose(self) -> None:
        """Stop the producer and release the session."""
        if self.closed:
            return
        self.closed = True
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
            try:
                await self._producer
            except asyncio.CancelledError:
                pass
        for future in self._pending.values():
            future.cancel()
        self._pending.clear()
        await self._release()

    async def _wait_for_result(self, call_id: str) -> tuple[Any, bool]:
        future = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future
        return await future

    async def _run_producer(self, prompt: str) -> None:
        try:
            await self._produce(prompt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Session producer failed: {e}")
            await self._queue.put(_Failure(e))

    @abstractmethod
    async def _produce(self, prompt: str) -> None:
        """Put events on ``self._queue``; must end with SessionEnded."""

    async def _release(self) -> None:
        """Release backend resources. Called once from aclose()."""


class AssistantBackend(ABC):
    """Opens sessions against an AI backend."""

    @abstractmethod
    async def open_session(
        self,
        model: str,
        max_tokens: int,
        tools: Sequence[Dict[str, Any]],
        reasoning: bool = False,
    ) -> AssistantSession:
        """Open a new session.

        Args:
            model: Model identifier.
            max_tokens: Output token limit per response.
            tools: Tool declarations (name, description, input_schema).
            reasoning: Ask the backend to stream its reasoning when it can.

        Raises:
            SessionError: If the session can't be opened.
        """


class AnthropicSession(AssistantSession):
    """Streaming Messages API session with client-side tool execution."""

    def __init__(
        self,
        client: anthropic.AsyncAnthropic,
        model: str,
        max_tokens: int,
        tools: Sequence[Dict[str, Any]],
        max_turns: int = 50,
        reasoning: bool = False,
    ):
        super().__init__()
        self._client = client
        self.model = model
        self.max_tokens = max_tokens
        self.tools = list(tools)
        self.max_turns = max_turns
        self.messages: List[Dict[str, Any]] = []
        self.thinking_budget = thinking_budget(max_tokens) if reasoning else None
        if reasoning and self.thinking_budget is None:
            logger.debug(f"max_tokens={max_tokens} is too small for extended thinking; reasoning disabled")

    async def _produce(self, prompt: str) -> None:
        self.messages = [{"role": "user", "content": prompt}]

        for turn in range(1, self.max_turns + 1):
            request: Dict[str, Any] = {
                "model": self.model,
                "max_tokens": self.max_tokens,
                "messages": self.messages,
            }
            if self.tools:
                request["tools"] = self.tools
            if self.thinking_budget:
                request["thinking"] = {"type": "enabled", "budget_tokens": self.thinking_budget}

            try:
                async with self._client.messages.stream(**request) as stream:
                    async for event in stream:
                        if event.type == "text":
                            await self._queue.put(TextDelta(event.text))
                        elif event.type == "thinking":
                            await self._queue.put(ReasoningDelta(event.thinking))
                    message = await stream.get_final_message()
            except anthropic.APIError as e:
                raise SessionError(f"Anthropic API error: {e}") from e

            self.messages.append({"role": "assistant", "content": message.content})
            tool_uses = [block for block in message.content if block.type == "tool_use"]

            if message.stop_reason != "tool_use" or not tool_uses:
                await self._queue.put(SessionEnded(reason=message.stop_reason or "end_turn"))
                return

            results = []
            for block in tool_uses:
                await self._queue.put(
                    ToolCallRequested(name=block.name, arguments=block.input, call_id=block.id)
                )
                payload, is_error = await self._wait_for_result(block.id)
                await self._queue.put(ToolCallResult(call_id=block.id, is_error=is_error))
                results.append({
                    "type": "tool_result",
                    "tool_use_id": block.id,
                    "content": json.dumps(payload, ensure_ascii=False),
                    "is_error": is_error,
                })
            self.messages.append({"role": "user", "content": results})
            logger.debug(f"Turn {turn}: returned {len(results)} tool results")

        logger.warning(f"Session reached max turns ({self.max_turns})")
        await self._queue.put(SessionEnded(reason="max_turns"))

    async def _release(self) -> None:
        await self._client.close()


class AnthropicBackend(AssistantBackend):
    """Backend using the Anthropic Messages API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: int = 600,
        max_turns: int = 50,
    ):
        """Initialize the backend.

        Args:
            api_key: Anthropic API key. If None, the SDK reads the environment.
            timeout: Request timeout in seconds.
            max_turns: Maximum tool round-trips within one session.
        """
        self.api_key = api_key
        self.timeout = timeout
        self.max_turns = max_turns

    async def open_session(
        self,
        model: str,
        max_tokens: int,
        tools: Sequence[Dict[str, Any]],
        reasoning: bool = False,
    ) -> AssistantSession:
        try:
            client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=self.timeout)
        except anthropic.AnthropicError as e:
            raise SessionError(f"Failed to create Anthropic client: {e}") from e
        logger.debug(f"Opened Anthropic session (model={model}, reasoning={reasoning})")
        return AnthropicSession(
            client, model, max_tokens, tools, max_turns=self.max_turns, reasoning=reasoning
        )


# Script item that keeps a scripted session open until it is closed or cancelled
HOLD_OPEN = object()


class ScriptedSession(AssistantSession):
    """Replays a fixed list of events, honouring the tool-result handshake.

    ``transcript`` records, in order, every event handed to the consumer and
    every tool result received, so tests can check interleaving.
    """

    def __init__(self, script: Sequence[Any]):
        super().__init__()
        self.script = list(script)
        self.prompt: Optional[str] = None
        self.tool_results: List[tuple[str, Any, bool]] = []
        self.transcript: List[tuple[str, Any]] = []

    async def _produce(self, prompt: str) -> None:
        self.prompt = prompt
        ended = False
        for item in self.script:
            if item is HOLD_OPEN:
                await asyncio.Event().wait()
            if isinstance(item, BaseException):
                raise item
            await self._queue.put(item)
            if isinstance(item, ToolCallRequested):
                payload, is_error = await self._wait_for_result(item.call_id)
                await self._queue.put(ToolCallResult(call_id=item.call_id, is_error=is_error))
            if isinstance(item, SessionEnded):
                ended = True
                break
        if not ended:
            await self._queue.put(SessionEnded())

    async def next_event(self) -> StreamEvent:
        event = await super().next_event()
        self.transcript.append(("event", event))
        return event

    async def send_tool_result(self, call_id: str, payload: Any, is_error: bool = False) -> None:
        self.tool_results.append((call_id, payload, is_error))
        self.transcript.append(("tool_result", (call_id, payload, is_error)))
        await super().send_tool_result(call_id, payload, is_error)


class ScriptedBackend(AssistantBackend):
    """Mock backend for tests and --mock runs.

    Each opened session replays the next script; once the scripts run out the
    last one is replayed again.
    """

    DEFAULT_SCRIPT = (
        TextDelta("Mock iteration: reviewed the open issues.\n"),
        SessionEnded("end_turn"),
    )

    def __init__(
        self,
        scripts: Optional[Iterable[Sequence[Any]]] = None,
        open_error: Optional[Exception] = None,
    ):
        self.scripts = [list(script) for script in (scripts or [self.DEFAULT_SCRIPT])]
        self.open_error = open_error
        self.sessions: List[ScriptedSession] = []
        self.open_calls: List[Dict[str, Any]] = []

    async def open_session(
        self,
        model: str,
        max_tokens: int,
        tools: Sequence[Dict[str, Any]],
        reasoning: bool = False,
    ) -> AssistantSession:
        self.open_calls.append({
            "model": model,
            "max_tokens": max_tokens,
            "tools": list(tools),
            "reasoning": reasoning,
        })
        if self.open_error is not None:
            raise SessionError(str(self.open_error)) from self.open_error
        index = min(len(self.sessions), len(self.scripts) - 1)
        session = ScriptedSession(self.scripts[index])
        self.sessions.append(session)
        return session
