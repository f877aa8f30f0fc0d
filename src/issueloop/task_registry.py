"""Issue snapshot and generated task backlog for the session loop.

This module provides the two JSON-backed collections the loop works over:
- Issues: a read-only snapshot of the external tracker (a JSON array)
- Generated tasks: a backlog derived from open issues, cached on disk

Task files are round-tripped without touching fields the loop doesn't
change, so unknown keys written by other tools survive a load/save cycle.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .task_drafts import build_drafts, slugify

logger = logging.getLogger(__name__)


class TaskRegistryError(Exception):
    """Exception raised for malformed or unwritable issue/task files."""
    pass


class TaskStatus(str, Enum):
    """Lifecycle of a generated task."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"

    @classmethod
    def normalize(cls, value: Any) -> TaskStatus:
        """Map a raw status string (including legacy aliases) to a TaskStatus."""
        if not isinstance(value, str) or not value.strip():
            return cls.PENDING
        normalized = value.strip().lower().replace("_", "-").replace(" ", "-")
        if normalized in ("done", "completed", "complete"):
            return cls.DONE
        if normalized in ("in-progress", "inprogress"):
            return cls.IN_PROGRESS
        return cls.PENDING


@dataclass(frozen=True)
class Issue:
    """A snapshot of one tracker issue. Read-only to the loop."""

    number: int
    title: str
    body: str = ""
    labels: tuple[str, ...] = ()
    state: str = "open"
    url: str = ""
    comments: tuple[str, ...] = ()

    @property
    def is_open(self) -> bool:
        return self.state.strip().lower() != "closed"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback_number: int) -> Issue:
        number = data.get("number", data.get("id"))
        if not isinstance(number, int) or isinstance(number, bool) or number <= 0:
            number = fallback_number

        labels = []
        for label in data.get("labels") or []:
            if isinstance(label, dict):
                name = label.get("name")
            else:
                name = label
            if isinstance(name, str) and name:
                labels.append(name)

        comments = []
        for comment in data.get("comments") or []:
            body = comment.get("body") if isinstance(comment, dict) else comment
            if isinstance(body, str) and body.strip():
                comments.append(body)

        title = data.get("title")
        state = data.get("state")
        return cls(
            number=number,
            title=title.strip() if isinstance(title, str) and title.strip() else f"Issue {number}",
            body=data.get("body") if isinstance(data.get("body"), str) else "",
            labels=tuple(labels),
            state=state if isinstance(state, str) and state else "open",
            url=data.get("url") if isinstance(data.get("url"), str) else "",
            comments=tuple(comments),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "body": self.body,
            "labels": list(self.labels),
            "state": self.state,
        }


# On-disk key for each GeneratedTask attribute; first alias is the one written
# for new tasks.
_TASK_KEYS: Dict[str, tuple[str, ...]] = {
    "id": ("id",),
    "title": ("title",),
    "description": ("description",),
    "status": ("status",),
    "origin_issue_id": ("originIssueId", "issueNumber"),
    "stable_key": ("stableKey",),
    "issue_title": ("issueTitle",),
    "origin": ("origin",),
    "order": ("order",),
}

# Values from_dict assigns when a key is missing; a loaded task that still
# holds one of these doesn't gain the key on save.
_ABSENT_DEFAULTS: Dict[str, Any] = {
    "status": TaskStatus.PENDING,
}


@dataclass
class GeneratedTask:
    """A unit of work in the generated backlog.

    ``origin_issue_id`` is a lookup-only back-reference to an Issue number.
    ``raw`` keeps the mapping the task was loaded from so that saving writes
    untouched fields back exactly as they were.
    """

    id: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    title: str = ""
    origin_issue_id: Optional[int] = None
    stable_key: Optional[str] = None
    issue_title: str = ""
    origin: str = ""
    order: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GeneratedTask:
        def pick(attr: str) -> Any:
            for key in _TASK_KEYS[attr]:
                if key in data:
                    return data[key]
            return None

        task_id = pick("id")
        if task_id is None or (isinstance(task_id, str) and not task_id.strip()):
            raise TaskRegistryError(f"Task is missing an id: {data!r}")

        description = pick("description")
        title = pick("title")
        stable_key = pick("stable_key")
        issue_title = pick("issue_title")
        origin = pick("origin")
        return cls(
            id=str(task_id),
            description=description if isinstance(description, str) else "",
            status=TaskStatus.normalize(pick("status")),
            title=title if isinstance(title, str) else "",
            origin_issue_id=_int_or_none(pick("origin_issue_id")),
            stable_key=stable_key if isinstance(stable_key, str) else None,
            issue_title=issue_title if isinstance(issue_title, str) else "",
            origin=origin if isinstance(origin, str) else "",
            order=_int_or_none(pick("order")),
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, keeping raw values for any field that hasn't changed."""
        data = dict(self.raw)
        for attr, keys in _TASK_KEYS.items():
            value = getattr(self, attr)
            present = next((key for key in keys if key in self.raw), None)

            if present is not None:
                if _same_value(attr, self.raw[present], value):
                    continue
                key = present
            else:
                if value is None or value == "":
                    continue
                if self.raw and _ABSENT_DEFAULTS.get(attr, object()) == value:
                    continue
                key = keys[0]

            data[key] = value.value if isinstance(value, TaskStatus) else value
        return data


def _same_value(attr: str, raw_value: Any, value: Any) -> bool:
    if attr == "status":
        return TaskStatus.normalize(raw_value) == value
    if attr == "id":
        return str(raw_value) == value
    if attr in ("origin_issue_id", "order") and _int_or_none(raw_value) is None:
        return value is None
    if attr in ("title", "description", "stable_key", "issue_title", "origin") and not isinstance(raw_value, str):
        return value in ("", None)
    return raw_value == value


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


class TaskRegistry:
    """In-memory views over the issues snapshot and the task backlog.

    Features:
    - Fail-fast validation of the issues snapshot
    - Loss-free load/save of the task file (array or envelope form)
    - Atomic writes (temp file + rename)
    - Backlog regeneration from open issues, preserving task status
    """

    def __init__(self, issues_file: Path, tasks_file: Path):
        """Initialize the registry.

        Args:
            issues_file: JSON array snapshot of tracker issues.
            tasks_file: JSON task backlog (array, or object with a "tasks" array).
        """
        self.issues_file = Path(issues_file)
        self.tasks_file = Path(tasks_file)
        self.issues: List[Issue] = []
        self.tasks: List[GeneratedTask] = []
        self._envelope: Optional[Dict[str, Any]] = None
        self._envelope_has_tasks = False

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def load_issues(self) -> List[Issue]:
        """Load the issues snapshot.

        A missing file is an empty snapshot. Anything else that isn't a JSON
        array of objects is rejected.

        Raises:
            TaskRegistryError: If the file is malformed.
        """
        if not self.issues_file.exists():
            logger.info(f"No issues snapshot at {self.issues_file}; treating as empty")
            self.issues = []
            return self.issues

        data = self._read_json(self.issues_file)
        if data is None:
            self.issues = []
            return self.issues
        if not isinstance(data, list):
            raise TaskRegistryError(f"{self.issues_file} must be a JSON array")

        issues = []
        for position, item in enumerate(data, start=1):
            if not isinstance(item, dict):
                raise TaskRegistryError(
                    f"{self.issues_file}: element {position} is not an object"
                )
            issues.append(Issue.from_dict(item, fallback_number=position))

        self.issues = issues
        logger.debug(f"Loaded {len(issues)} issues from {self.issues_file}")
        return self.issues

    def open_issues(self) -> List[Issue]:
        return [issue for issue in self.issues if issue.is_open]

    def has_open_issues(self) -> bool:
        return any(issue.is_open for issue in self.issues)

    def get_issue(self, number: int) -> Optional[Issue]:
        for issue in self.issues:
            if issue.number == number:
                return issue
        return None

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def load(self) -> List[GeneratedTask]:
        """Load the task backlog.

        Raises:
            TaskRegistryError: If the file is malformed.
        """
        self._envelope = None
        self._envelope_has_tasks = False
        if not self.tasks_file.exists():
            self.tasks = []
            return self.tasks

        data = self._read_json(self.tasks_file)
        if data is None:
            self.tasks = []
            return self.tasks

        if isinstance(data, dict):
            items = data.get("tasks", [])
            if not isinstance(items, list):
                raise TaskRegistryError(f"{self.tasks_file}: 'tasks' must be an array")
            self._envelope = data
            self._envelope_has_tasks = "tasks" in data
        elif isinstance(data, list):
            items = data
        else:
            raise TaskRegistryError(
                f"{self.tasks_file} must be a JSON array or an object with a 'tasks' array"
            )

        tasks = []
        for position, item in enumerate(items, start=1):
            if not isinstance(item, dict):
                raise TaskRegistryError(f"{self.tasks_file}: task {position} is not an object")
            tasks.append(GeneratedTask.from_dict(item))

        self.tasks = tasks
        logger.debug(f"Loaded {len(tasks)} tasks from {self.tasks_file}")
        return self.tasks

    def to_json_data(self) -> Any:
        """The JSON value save() would write."""
        items = [task.to_dict() for task in self.tasks]
        if self._envelope is None:
            return items
        data = dict(self._envelope)
        if items or self._envelope_has_tasks:
            data["tasks"] = items
        return data

    def save(self) -> None:
        """Persist the backlog atomically.

        Raises:
            TaskRegistryError: If the file can't be written.
        """
        text = json.dumps(self.to_json_data(), indent=2, ensure_ascii=False) + "\n"
        directory = self.tasks_file.parent if str(self.tasks_file.parent) else Path(".")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=directory, prefix=f".{self.tasks_file.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(text)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.tasks_file)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise TaskRegistryError(f"Failed to save {self.tasks_file}: {e}") from e
        logger.debug(f"Saved {len(self.tasks)} tasks to {self.tasks_file}")

    def get_tasks(self, status: Optional[TaskStatus] = None) -> List[GeneratedTask]:
        if status is None:
            return list(self.tasks)
        return [task for task in self.tasks if task.status == status]

    def get_task(self, task_id: str) -> Optional[GeneratedTask]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def has_open_tasks(self) -> bool:
        return any(task.status != TaskStatus.DONE for task in self.tasks)

    def get_progress(self) -> Dict[str, Any]:
        """Counts by status and completion percentage."""
        total = len(self.tasks)
        if total == 0:
            return {"total": 0, "completed": 0, "percentage": 0}

        by_status: Dict[str, int] = {}
        for task in self.tasks:
            by_status[task.status.value] = by_status.get(task.status.value, 0) + 1

        done = by_status.get(TaskStatus.DONE.value, 0)
        return {
            "total": total,
            "completed": done,
            "percentage": round(done / total * 100, 1),
            "by_status": by_status,
        }

    def sync_from_issues(self) -> List[GeneratedTask]:
        """Regenerate the backlog from the open issues in the snapshot.

        Each open issue is broken into draft tasks (see ``task_drafts``).
        Tasks whose stable key already exists keep their current status.
        """
        existing = {task.stable_key: task for task in self.tasks if task.stable_key}

        tasks: List[GeneratedTask] = []
        for issue in self.open_issues():
            seen: Dict[str, int] = {}
            for order, draft in enumerate(build_drafts(issue), start=1):
                base_key = f"{issue.number}:{slugify(draft.title)}"
                seen[base_key] = seen.get(base_key, 0) + 1
                stable_key = base_key if seen[base_key] == 1 else f"{base_key}-{seen[base_key]}"

                previous = existing.get(stable_key)
                status = TaskStatus.DONE if draft.done else TaskStatus.PENDING
                tasks.append(GeneratedTask(
                    id=f"{issue.number}-{order:03d}",
                    title=draft.title,
                    description=draft.description,
                    status=previous.status if previous else status,
                    origin_issue_id=issue.number,
                    stable_key=stable_key,
                    issue_title=issue.title,
                    origin=draft.origin,
                    order=order,
                    raw=dict(previous.raw) if previous else {},
                ))

        self.tasks = tasks
        logger.info(f"Generated {len(tasks)} tasks from {len(self.open_issues())} open issues")
        return self.tasks

    @staticmethod
    def _read_json(path: Path) -> Any:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise TaskRegistryError(f"Failed to read {path}: {e}") from e
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise TaskRegistryError(f"Failed to parse {path}: {e}") from e
