"""Terminal rendering of a streaming session."""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.text import Text


class ConsoleOutput:
    """Writes assistant deltas, reasoning and tool activity to the terminal.

    Assistant text is written as it arrives with no added line breaks. A
    newline is inserted only when switching between assistant text, reasoning
    and tool lines, so streamed fragments concatenate exactly.
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        colorized: bool = True,
        show_reasoning: bool = True,
    ):
        self.console = console or Console(highlight=False)
        self.colorized = colorized
        self.show_reasoning = show_reasoning
        self._mode: Optional[str] = None
        self._at_line_start = True

    def _style(self, style: str) -> str:
        return style if self.colorized else ""

    def _switch(self, mode: str) -> None:
        if self._mode != mode and not self._at_line_start:
            self.console.print()
            self._at_line_start = True
        self._mode = mode

    def _write(self, text: str, style: str = "") -> None:
        if not text:
            return
        self.console.print(Text(text, style=self._style(style)), end="", soft_wrap=True)
        self._at_line_start = text.endswith("\n")

    def write_assistant(self, text: str) -> None:
        self._switch("assistant")
        self._write(text)

    def write_reasoning(self, text: str) -> None:
        if not self.show_reasoning:
            return
        self._switch("reasoning")
        self._write(text, "dim italic")

    def write_tool_start(self, name: str) -> None:
        self._switch("tool")
        self._write(f"[tool] {name} ...\n", "cyan")

    def write_tool_complete(self, name: str, is_error: bool = False) -> None:
        self._switch("tool")
        if is_error:
            self._write(f"[tool] {name} failed\n", "yellow")
        else:
            self._write(f"[tool] {name} done\n", "green")

    def write_iteration_header(self, iteration: int, max_iterations: int) -> None:
        self.finish_line()
        self._write(f"\n=== Iteration {iteration}/{max_iterations} ===\n", "bold")
        self._mode = None

    def write_info(self, message: str) -> None:
        self.finish_line()
        self._write(message + "\n", "dim")

    def write_error(self, message: str) -> None:
        self.finish_line()
        self._write(f"Error: {message}\n", "bold red")

    def finish_line(self) -> None:
        """End the current line if a stream left it open."""
        if not self._at_line_start:
            self.console.print()
            self._at_line_start = True
        self._mode = None
