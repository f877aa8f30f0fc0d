"""Events emitted by an assistant session while it produces a response."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class TextDelta:
    """A fragment of assistant text."""

    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    """A fragment of model reasoning. Displayed, never accumulated."""

    text: str


@dataclass(frozen=True)
class ToolCallRequested:
    """The assistant asks for a tool to be run.

    The session produces nothing further until a result for ``call_id`` has
    been sent back.
    """

    name: str
    arguments: Any = field(default_factory=dict)
    call_id: str = ""


@dataclass(frozen=True)
class ToolCallResult:
    """Acknowledgement that a tool result was delivered to the backend."""

    call_id: str
    is_error: bool = False


@dataclass(frozen=True)
class SessionEnded:
    """The backend finished responding; ``reason`` is its stop reason."""

    reason: str = "end_turn"


StreamEvent = Union[TextDelta, ReasoningDelta, ToolCallRequested, ToolCallResult, SessionEnded]
