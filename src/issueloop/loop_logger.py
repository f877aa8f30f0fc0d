"""Structured session log for issueloop runs.

Each run writes one JSON file under the log directory with per-iteration
records, every tool call, errors, and aggregate statistics.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

logger = logging.getLogger(__name__)


@dataclass
class ToolCallLog:
    """Log entry for a single tool call."""

    timestamp: str
    iteration: int
    tool: str
    is_error: bool = False
    error_kind: Optional[str] = None


@dataclass
class LoopStats:
    """Statistics for one issueloop run."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    iterations: int = 0
    iterations_completed: int = 0
    iterations_failed: int = 0
    tool_calls: list[ToolCallLog] = field(default_factory=list)

    @property
    def tool_errors(self) -> int:
        return sum(1 for call in self.tool_calls if call.is_error)

    @property
    def duration_seconds(self) -> float:
        """Get duration in seconds."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        by_tool: dict[str, int] = {}
        for call in self.tool_calls:
            by_tool[call.tool] = by_tool.get(call.tool, 0) + 1
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "iterations": {
                "run": self.iterations,
                "completed": self.iterations_completed,
                "failed": self.iterations_failed,
            },
            "tools": {
                "calls": len(self.tool_calls),
                "errors": self.tool_errors,
                "by_tool": by_tool,
            },
        }


class LoopLogger:
    """Records a run of the session loop to a JSON file."""

    def __init__(self, log_dir: Optional[Path] = None, model: str = ""):
        """Initialize the loop logger.

        Args:
            log_dir: Directory for log files. Defaults to logs/.
            model: Model name recorded in the session header.
        """
        self.log_dir = Path(log_dir) if log_dir else Path("logs")
        self.stats = LoopStats()

        timestamp = self.stats.start_time.strftime("%Y%m%d_%H%M%S")
        self.log_file = self.log_dir / f"issueloop_{timestamp}.json"

        self.log_data: dict = {
            "session": {
                "id": timestamp,
                "model": model,
                "start_time": self.stats.start_time.isoformat(),
            },
            "iterations": [],
            "errors": [],
        }

    def log_iteration_start(self, iteration: int, max_iterations: int) -> None:
        """Log the start of an iteration."""
        self.stats.iterations += 1
        self.log_data["iterations"].append({
            "number": iteration,
            "max": max_iterations,
            "start_time": datetime.now().isoformat(),
            "tool_calls": [],
        })
        logger.info(f"Iteration {iteration}/{max_iterations} started")

    def log_iteration_end(self, iteration: int, status: str, completed: bool = False) -> None:
        """Log the end of an iteration."""
        if completed:
            self.stats.iterations_completed += 1
        if status == "failed":
            self.stats.iterations_failed += 1
        if self.log_data["iterations"]:
            record = self.log_data["iterations"][-1]
            record["end_time"] = datetime.now().isoformat()
            record["status"] = status
            record["completed"] = completed
        logger.info(f"Iteration {iteration} finished ({status})")

    def log_tool_call(
        self,
        iteration: int,
        tool: str,
        is_error: bool = False,
        error_kind: Optional[str] = None,
    ) -> None:
        """Log one tool call and whether it failed."""
        call = ToolCallLog(
            timestamp=datetime.now().isoformat(),
            iteration=iteration,
            tool=tool,
            is_error=is_error,
            error_kind=error_kind,
        )
        self.stats.tool_calls.append(call)
        if self.log_data["iterations"]:
            self.log_data["iterations"][-1]["tool_calls"].append({
                "timestamp": call.timestamp,
                "tool": tool,
                "is_error": is_error,
                "error_kind": error_kind,
            })

    def log_error(self, error: str, context: Optional[dict] = None) -> None:
        """Log an error."""
        self.log_data["errors"].append({
            "timestamp": datetime.now().isoformat(),
            "error": error,
            "context": context or {},
        })
        logger.error(f"Loop error: {error}")

    def finalize(self, exit_code: int, completed: bool) -> None:
        """Finalize the log and write it to disk.

        A failure to write the log is reported but never changes the run's
        outcome.
        """
        self.stats.end_time = datetime.now()

        self.log_data["session"]["end_time"] = self.stats.end_time.isoformat()
        self.log_data["session"]["exit_code"] = exit_code
        self.log_data["session"]["completed"] = completed
        self.log_data["stats"] = self.stats.to_dict()

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "w", encoding="utf-8") as f:
                json.dump(self.log_data, f, indent=2)
            logger.info(f"Loop log written to: {self.log_file}")
        except OSError as e:
            logger.error(f"Failed to write loop log: {e}")

    def print_summary(self, console: Optional[Console] = None) -> None:
        """Print a summary table of the run."""
        console = console or Console()
        table = Table(title="issueloop summary", show_header=False, box=None)
        table.add_column("Metric", style="dim")
        table.add_column("Value")
        table.add_row("Duration", f"{self.stats.duration_seconds:.1f}s")
        table.add_row("Iterations", str(self.stats.iterations))
        table.add_row("Failed iterations", str(self.stats.iterations_failed))
        table.add_row("Tool calls", str(len(self.stats.tool_calls)))
        table.add_row("Tool errors", str(self.stats.tool_errors))
        table.add_row("Log file", str(self.log_file))
        console.print(table)
