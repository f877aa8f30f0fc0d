"""Read-only query tools exposed to the assistant during a session.

The tool set is closed: every tool is a member of ``ToolKind`` and has a
pydantic argument model whose JSON schema is published to the backend as the
tool's ``input_schema``. Dispatch never mutates the registry or the journal.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .progress_store import ProgressEntry, ProgressStore, ProgressStoreError
from .task_registry import TaskRegistry, TaskStatus

logger = logging.getLogger(__name__)

MAX_ISSUES = 50
MAX_TASKS = 100
MAX_TEXT_CHARS = 2000


class ToolKind(str, Enum):
    """The closed set of tools the assistant may call."""

    LIST_OPEN_ISSUES = "list_open_issues"
    LIST_GENERATED_TASKS = "list_generated_tasks"
    GET_PROGRESS_SUMMARY = "get_progress_summary"
    SEARCH_PROGRESS = "search_progress"


class ToolErrorKind(str, Enum):
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    NOT_FOUND = "not_found"


class ToolError(Exception):
    """A recoverable tool failure, reported back into the conversation."""

    def __init__(self, kind: ToolErrorKind, message: str, tool: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.tool = tool

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind.value, "message": self.message}
        if self.tool:
            payload["tool"] = self.tool
        return payload


class ListOpenIssuesArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    include_closed: bool = Field(
        default=False,
        description="Include closed issues in results.",
    )


class ListGeneratedTasksArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Optional[Literal["pending", "in-progress", "done"]] = Field(
        default=None,
        description="Only return tasks with this status.",
    )


class GetProgressSummaryArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    count: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Number of recent entries to return.",
    )


class SearchProgressArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search_term: str = Field(..., description="Search term to find in progress.")
    limit: int = Field(default=20, ge=1, le=50, description="Maximum matching lines to return.")

    @field_validator("search_term")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("search_term cannot be empty")
        return value


TOOL_SPECS: Dict[ToolKind, tuple[type[BaseModel], str]] = {
    ToolKind.LIST_OPEN_ISSUES: (
        ListOpenIssuesArgs,
        "List open issues from the issues snapshot with their number, title, body, state and labels.",
    ),
    ToolKind.LIST_GENERATED_TASKS: (
        ListGeneratedTasksArgs,
        "List tasks in the generated backlog, optionally filtered by status.",
    ),
    ToolKind.GET_PROGRESS_SUMMARY: (
        GetProgressSummaryArgs,
        "Get the most recent progress journal entries.",
    ),
    ToolKind.SEARCH_PROGRESS: (
        SearchProgressArgs,
        "Search the progress journal for lines containing a term (case-insensitive).",
    ),
}


def tool_definitions() -> list[Dict[str, Any]]:
    """Tool declarations in the shape the Messages API expects."""
    definitions = []
    for kind, (model, description) in TOOL_SPECS.items():
        definitions.append({
            "name": kind.value,
            "description": description,
            "input_schema": model.model_json_schema(),
        })
    return definitions


def _truncate(text: str, limit: int = MAX_TEXT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "... (truncated)"


class ToolDispatcher:
    """Resolves tool calls against the registry and the progress journal."""

    def __init__(self, registry: TaskRegistry, progress: ProgressStore):
        self.registry = registry
        self.progress = progress
        self._handlers: Dict[ToolKind, Callable[[Any], Dict[str, Any]]] = {
            ToolKind.LIST_OPEN_ISSUES: self._list_open_issues,
            ToolKind.LIST_GENERATED_TASKS: self._list_generated_tasks,
            ToolKind.GET_PROGRESS_SUMMARY: self._get_progress_summary,
            ToolKind.SEARCH_PROGRESS: self._search_progress,
        }
        missing = set(ToolKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for tools: {sorted(k.value for k in missing)}")

    def dispatch(self, name: str, arguments: Any) -> Dict[str, Any]:
        """Run one tool call.

        Args:
            name: Tool name as sent by the assistant.
            arguments: Decoded JSON arguments (a mapping, or None for no arguments).

        Returns:
            JSON-serializable payload.

        Raises:
            ToolError: For an unknown tool or arguments that don't fit its shape.
        """
        try:
            kind = ToolKind(name)
        except ValueError:
            raise ToolError(ToolErrorKind.UNKNOWN_TOOL, f"Unknown tool: {name}", tool=name)

        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ToolError(
                ToolErrorKind.INVALID_ARGUMENTS,
                "Arguments must be a JSON object",
                tool=name,
            )

        model, _ = TOOL_SPECS[kind]
        try:
            args = model.model_validate(arguments)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise ToolError(ToolErrorKind.INVALID_ARGUMENTS, details, tool=name) from e

        logger.debug(f"Dispatching {kind.value} with {arguments}")
        try:
            return self._handlers[kind](args)
        except ProgressStoreError as e:
            raise ToolError(ToolErrorKind.NOT_FOUND, str(e), tool=name) from e

    def _list_open_issues(self, args: ListOpenIssuesArgs) -> Dict[str, Any]:
        issues = self.registry.issues if args.include_closed else self.registry.open_issues()
        items = [
            {**issue.to_dict(), "body": _truncate(issue.body)}
            for issue in issues[:MAX_ISSUES]
        ]
        payload: Dict[str, Any] = {"count": len(issues), "issues": items}
        if len(issues) > MAX_ISSUES:
            payload["truncated"] = True
        return payload

    def _list_generated_tasks(self, args: ListGeneratedTasksArgs) -> Dict[str, Any]:
        status = TaskStatus(args.status) if args.status else None
        tasks = self.registry.get_tasks(status)
        items = [
            {
                "id": task.id,
                "title": task.title,
                "description": _truncate(task.description),
                "status": task.status.value,
                "originIssueId": task.origin_issue_id,
                "origin": task.origin,
            }
            for task in tasks[:MAX_TASKS]
        ]
        payload: Dict[str, Any] = {"count": len(tasks), "tasks": items}
        if len(tasks) > MAX_TASKS:
            payload["truncated"] = True
        return payload

    def _get_progress_summary(self, args: GetProgressSummaryArgs) -> Dict[str, Any]:
        if not self.progress.exists():
            raise ToolError(
                ToolErrorKind.NOT_FOUND,
                f"{self.progress.path.name} not found",
                tool=ToolKind.GET_PROGRESS_SUMMARY.value,
            )

        entries = self.progress.tail(args.count)
        if not entries:
            return {"message": f"{self.progress.path.name} is empty", "entries": []}

        return {
            "count": len(entries),
            "entries": [self._entry_payload(entry) for entry in entries],
        }

    def _search_progress(self, args: SearchProgressArgs) -> Dict[str, Any]:
        if not self.progress.exists():
            raise ToolError(
                ToolErrorKind.NOT_FOUND,
                f"{self.progress.path.name} not found",
                tool=ToolKind.SEARCH_PROGRESS.value,
            )

        needle = args.search_term.lower()
        matches = []
        total = 0
        for entry in self.progress.iter_entries():
            lines = entry.summary.splitlines() + [f"- {item}" for item in entry.learnings]
            for line in lines:
                if needle in line.lower():
                    total += 1
                    if len(matches) < args.limit:
                        matches.append({"iteration": entry.iteration, "line": _truncate(line.strip(), 500)})

        return {"searchTerm": args.search_term, "matchCount": total, "matches": matches}

    @staticmethod
    def _entry_payload(entry: ProgressEntry) -> Dict[str, Any]:
        return {
            "iteration": entry.iteration,
            "timestamp": entry.timestamp,
            "status": entry.status.value,
            "summary": _truncate(entry.summary),
            "learnings": list(entry.learnings),
        }
