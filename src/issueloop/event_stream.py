"""Structured JSONL event stream for external consumers.

Every line is one JSON object with at least ``type``, ``timestamp``,
``session_id`` and a per-stream ``seq`` that increases by one per line. The
first line of a run is a ``session`` header carrying the schema version.

Event types:
- session: run header (version, cwd)
- turn_start / turn_end: one pair per iteration
- message_delta / reasoning_delta: streamed assistant text
- tool_execution_start / tool_execution_end: one pair per tool call
- agent_end: the run finished, with its exit code
- event_error: a payload that couldn't be serialized
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from .progress_store import utc_timestamp

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
FLUSH_BATCH_SIZE = 32

# Lifecycle events are flushed straight away so consumers see them promptly
IMMEDIATE_FLUSH_TYPES = frozenset({"session", "turn_end", "agent_end", "event_error"})


class EventStreamError(Exception):
    """Exception raised when the event stream can't be opened."""
    pass


class EventStreamWriter:
    """Writes session events as JSON lines."""

    def __init__(
        self,
        stream: TextIO,
        session_id: Optional[str] = None,
        flush_each_event: bool = False,
        owns_stream: bool = False,
    ):
        """Initialize the writer.

        Args:
            stream: Text stream receiving one JSON object per line.
            session_id: Identifier repeated on every line. Random if omitted.
            flush_each_event: Flush after every line instead of in batches.
            owns_stream: Close ``stream`` in close().
        """
        self.stream = stream
        self.session_id = session_id or uuid.uuid4().hex
        self.flush_each_event = flush_each_event
        self.owns_stream = owns_stream
        self._seq = 0
        self._pending = 0
        self._failed = False

    @classmethod
    def open(cls, path: Path, **kwargs: Any) -> EventStreamWriter:
        """Open ``path`` for appending and return a writer that owns it.

        Raises:
            EventStreamError: If the file can't be opened.
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            stream = open(path, "a", encoding="utf-8")
        except OSError as e:
            raise EventStreamError(f"Failed to open event stream {path}: {e}") from e
        return cls(stream, owns_stream=True, **kwargs)

    def write_session_header(self, cwd: str) -> None:
        self._write({
            "type": "session",
            "version": SCHEMA_VERSION,
            "id": self.session_id,
            "timestamp": utc_timestamp(),
            "cwd": cwd,
            "seq": self._next_seq(),
        })

    def emit(
        self,
        event_type: str,
        turn: Optional[int] = None,
        tool_call_id: Optional[str] = None,
        **fields: Any,
    ) -> None:
        """Write one event. Extra fields never overwrite the envelope keys."""
        payload: Dict[str, Any] = {
            "type": event_type,
            "timestamp": utc_timestamp(),
            "session_id": self.session_id,
            "seq": self._next_seq(),
        }
        if turn is not None:
            payload["turn"] = turn
        if tool_call_id:
            payload["tool_call_id"] = tool_call_id
        for key, value in fields.items():
            payload.setdefault(key, value)
        self._write(payload)

    def close(self) -> None:
        try:
            self.stream.flush()
            if self.owns_stream:
                self.stream.close()
        except OSError as e:
            logger.error(f"Failed to close event stream: {e}")

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _write(self, payload: Dict[str, Any]) -> None:
        if self._failed:
            return
        try:
            line = json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            line = json.dumps({
                "type": "event_error",
                "timestamp": utc_timestamp(),
                "session_id": self.session_id,
                "seq": self._next_seq(),
                "error": str(e),
                "original_type": payload.get("type"),
            })
            payload = {"type": "event_error"}

        try:
            self.stream.write(line + "\n")
            self._pending += 1
            if (
                self.flush_each_event
                or self._pending >= FLUSH_BATCH_SIZE
                or payload.get("type") in IMMEDIATE_FLUSH_TYPES
            ):
                self.stream.flush()
                self._pending = 0
        except OSError as e:
            # Stop writing after the first failure; the run itself carries on
            logger.error(f"Failed to write event stream: {e}")
            self._failed = True
