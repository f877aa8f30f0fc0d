"""Completion marker detection for assistant output."""

from __future__ import annotations

COMPLETION_MARKER = "COMPLETE"
PROMISE_MARKER = f"<promise>{COMPLETION_MARKER}</promise>"

# Markdown wrappers stripped from a line before comparing it to the marker
_WRAPPER_CHARS = "`*_"


def contains_completion_marker(text: str) -> bool:
    """Check whether assistant output signals that all work is done.

    The match is exact and case-sensitive: either the ``<promise>COMPLETE</promise>``
    tag appears anywhere, or some line consists of nothing but ``COMPLETE``
    (optionally wrapped in Markdown emphasis or backticks). ``INCOMPLETE``,
    ``COMPLETED`` or ``complete`` never match.

    Args:
        text: Finalized assistant text.

    Returns:
        True if the marker is present.
    """
    if not text or not text.strip():
        return False

    if PROMISE_MARKER in text:
        return True

    for raw_line in text.splitlines():
        line = raw_line.strip().strip(_WRAPPER_CHARS).strip()
        if line == COMPLETION_MARKER:
            return True
    return False
