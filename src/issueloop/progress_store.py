"""Append-only progress journal for the session loop.

The journal is a UTF-8 text file. Every iteration appends one entry, and
entries are separated by a line containing only ``---``:

    ---
    # Iteration 3 (2026-01-01T12:00:00+00:00)

    Model: claude-sonnet-4-20250514
    Status: incomplete
    Tool calls: 2
    Tool errors: 0

    <assistant summary>

    ## Learnings
    - first learning
    - second learning

Entries are never rewritten once appended. Blocks that don't follow the
layout (hand-written notes, older journals) are loaded as free-text entries
with iteration 0.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)

ENTRY_SEPARATOR = "\n---\n"
LEARNINGS_HEADING = "## Learnings"

_BLOCK_SPLIT = re.compile(r"(?:^|\n)---\n(?=# Iteration \d+ \()")
_HEADER = re.compile(r"^# Iteration (\d+) \(([^)]*)\)\s*$")
_META_LINE = re.compile(r"^(Model|Status|Tool calls|Tool errors): (.*)$")
_LEARNINGS_IN_OUTPUT = re.compile(r"^\s*(?:#{1,4}\s*)?\**learnings\**:?\**\s*$", re.IGNORECASE)
_BULLET = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+(.+)$")
# Summary lines that look like an entry header get one extra leading backslash
# on disk so they can never start a new block.
_HEADER_LIKE = re.compile(r"^(\\*# Iteration \d+ \()", re.MULTILINE)
_ESCAPED_HEADER = re.compile(r"^\\(\\*# Iteration \d+ \()", re.MULTILINE)


class ProgressStoreError(Exception):
    """Exception raised when the progress journal cannot be written or read."""
    pass


class IterationStatus(str, Enum):
    """How an iteration ended, as recorded in the journal."""

    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: str) -> IterationStatus:
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.INCOMPLETE


def utc_timestamp() -> str:
    """Current UTC time in ISO-8601 form."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ProgressEntry:
    """One iteration summary. Immutable once created."""

    iteration: int
    timestamp: str
    summary: str
    learnings: tuple[str, ...] = field(default_factory=tuple)
    model: str = ""
    status: IterationStatus = IterationStatus.INCOMPLETE
    tool_call_count: int = 0
    tool_error_count: int = 0

    @property
    def had_tool_errors(self) -> bool:
        """True if any tool call in the iteration returned an error payload."""
        return self.tool_error_count > 0

    def render(self) -> str:
        """Render the entry body (without the leading separator)."""
        lines = [
            f"# Iteration {self.iteration} ({self.timestamp})",
            "",
            f"Model: {self.model}",
            f"Status: {self.status.value}",
            f"Tool calls: {self.tool_call_count}",
            f"Tool errors: {self.tool_error_count}",
            "",
            _HEADER_LIKE.sub(r"\\\1", self.summary.strip()) or "(no output)",
            "",
            LEARNINGS_HEADING,
        ]
        lines.extend(f"- {learning}" for learning in self.learnings)
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict:
        return {
            "iteration": self.iteration,
            "timestamp": self.timestamp,
            "model": self.model,
            "status": self.status.value,
            "tool_call_count": self.tool_call_count,
            "tool_error_count": self.tool_error_count,
            "summary": self.summary,
            "learnings": list(self.learnings),
        }


def extract_learnings(text: str) -> tuple[str, ...]:
    """Pull bullet points that follow a ``Learnings`` heading in assistant output.

    Args:
        text: Finalized assistant text for one iteration.

    Returns:
        Learnings in order of appearance. Empty if no heading is present.
    """
    learnings: list[str] = []
    in_section = False
    for line in text.splitlines():
        if _LEARNINGS_IN_OUTPUT.match(line):
            in_section = True
            continue
        if not in_section:
            continue
        if not line.strip():
            if learnings:
                in_section = False
            continue
        match = _BULLET.match(line)
        if not match:
            in_section = False
            continue
        learnings.append(match.group(1).strip())
    return tuple(learnings)


def parse_entry(block: str) -> Optional[ProgressEntry]:
    """Parse one journal block. Returns None for blank blocks."""
    block = block.strip("\n")
    if not block.strip():
        return None

    lines = block.split("\n")
    header = _HEADER.match(lines[0])
    if not header:
        return ProgressEntry(iteration=0, timestamp="", summary=block.strip())

    meta: dict[str, str] = {}
    index = 1
    while index < len(lines) and not lines[index].strip():
        index += 1
    while index < len(lines):
        match = _META_LINE.match(lines[index])
        if not match:
            break
        meta[match.group(1)] = match.group(2).strip()
        index += 1

    body = "\n".join(lines[index:])
    learnings: tuple[str, ...] = ()
    marker = "\n" + LEARNINGS_HEADING
    position = body.rfind(marker)
    if position != -1:
        tail = body[position + len(marker):]
        learnings = tuple(
            line[2:].strip()
            for line in tail.split("\n")
            if line.startswith("- ")
        )
        body = body[:position]

    def _int(key: str) -> int:
        try:
            return int(meta.get(key, "0"))
        except ValueError:
            return 0

    return ProgressEntry(
        iteration=int(header.group(1)),
        timestamp=header.group(2),
        summary=_ESCAPED_HEADER.sub(r"\1", body.strip()),
        learnings=learnings,
        model=meta.get("Model", ""),
        status=IterationStatus.parse(meta.get("Status", "")),
        tool_call_count=_int("Tool calls"),
        tool_error_count=_int("Tool errors"),
    )


class ProgressQuery:
    """Re-iterable, lazy view over journal entries matching a predicate.

    Each iteration re-reads the journal, so the view is finite and can be
    restarted.
    """

    def __init__(self, store: ProgressStore, predicate: Callable[[ProgressEntry], bool]):
        self._store = store
        self._predicate = predicate

    def __iter__(self) -> Iterator[ProgressEntry]:
        for entry in self._store.iter_entries():
            if self._predicate(entry):
                yield entry


class ProgressStore:
    """Owns the progress journal file. The only writer of the journal."""

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: Journal file path. Created on first append.
        """
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def read_text(self) -> str:
        """Raw journal text, or an empty string if the journal doesn't exist."""
        if not self.path.exists():
            return ""
        try:
            return self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ProgressStoreError(f"Failed to read {self.path}: {e}") from e

    def append(self, entry: ProgressEntry) -> None:
        """Durably append one entry to the journal.

        Raises:
            ProgressStoreError: If the write fails.
        """
        text = ENTRY_SEPARATOR + entry.render()
        try:
            if self.path.parent and not self.path.parent.exists():
                self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise ProgressStoreError(f"Failed to append to {self.path}: {e}") from e
        logger.debug(f"Appended iteration {entry.iteration} to {self.path}")

    def iter_entries(self) -> Iterator[ProgressEntry]:
        """Yield journal entries in append order, parsing one block at a time."""
        for block in _BLOCK_SPLIT.split(self.read_text()):
            entry = parse_entry(block)
            if entry is not None:
                yield entry

    def load(self) -> list[ProgressEntry]:
        """Load every entry in order."""
        return list(self.iter_entries())

    def query(self, predicate: Callable[[ProgressEntry], bool]) -> ProgressQuery:
        """Return a restartable view of entries for which predicate is true."""
        return ProgressQuery(self, predicate)

    def tail(self, count: int) -> list[ProgressEntry]:
        """Return the most recent ``count`` entries (oldest first)."""
        if count <= 0:
            return []
        return self.load()[-count:]

    def next_iteration(self) -> int:
        """Iteration number to use for the next appended entry."""
        numbers = [entry.iteration for entry in self.iter_entries()]
        return max(numbers, default=0) + 1
