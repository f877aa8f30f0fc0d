"""Tests for the issues snapshot and generated task backlog."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from issueloop.task_registry import (
    GeneratedTask,
    Issue,
    TaskRegistry,
    TaskRegistryError,
    TaskStatus,
)


class TestTaskStatus:
    """Tests for status normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("done", TaskStatus.DONE),
        ("Completed", TaskStatus.DONE),
        ("complete", TaskStatus.DONE),
        ("in_progress", TaskStatus.IN_PROGRESS),
        ("In Progress", TaskStatus.IN_PROGRESS),
        ("inprogress", TaskStatus.IN_PROGRESS),
        ("pending", TaskStatus.PENDING),
        ("open", TaskStatus.PENDING),
        ("", TaskStatus.PENDING),
        (None, TaskStatus.PENDING),
    ])
    def test_normalize(self, raw, expected) -> None:
        assert TaskStatus.normalize(raw) == expected


class TestIssue:
    """Tests for Issue parsing."""

    def test_from_dict_label_forms(self) -> None:
        issue = Issue.from_dict(
            {"number": 5, "title": "T", "labels": [{"name": "bug"}, "ui", {"color": "red"}]},
            fallback_number=1,
        )

        assert issue.labels == ("bug", "ui")
        assert issue.is_open

    def test_from_dict_fallbacks(self) -> None:
        issue = Issue.from_dict({"body": 42}, fallback_number=3)

        assert issue.number == 3
        assert issue.title == "Issue 3"
        assert issue.body == ""

    def test_closed_state_is_case_insensitive(self) -> None:
        assert not Issue.from_dict({"number": 1, "state": "CLOSED"}, 1).is_open

    def test_comments(self) -> None:
        issue = Issue.from_dict(
            {"number": 1, "comments": [{"body": "first"}, "second", {"body": "  "}]},
            fallback_number=1,
        )

        assert issue.comments == ("first", "second")


class TestLoadIssues:
    """Tests for loading the issues snapshot."""

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        registry = TaskRegistry(tmp_path / "issues.json", tmp_path / "tasks.json")

        assert registry.load_issues() == []
        assert not registry.has_open_issues()

    def test_load(self, config, sample_issues) -> None:
        registry = TaskRegistry(config.issues_file, config.tasks_file)

        issues = registry.load_issues()

        assert [issue.number for issue in issues] == [1, 2, 3]
        assert [issue.number for issue in registry.open_issues()] == [1, 2]
        assert registry.get_issue(2).labels == ("docs",)
        assert registry.get_issue(99) is None

    def test_non_array_root(self, tmp_path: Path) -> None:
        path = tmp_path / "issues.json"
        path.write_text('{"issues": []}')
        registry = TaskRegistry(path, tmp_path / "tasks.json")

        with pytest.raises(TaskRegistryError, match="JSON array"):
            registry.load_issues()

    def test_non_object_element(self, tmp_path: Path) -> None:
        path = tmp_path / "issues.json"
        path.write_text('[{"number": 1}, "oops"]')
        registry = TaskRegistry(path, tmp_path / "tasks.json")

        with pytest.raises(TaskRegistryError, match="element 2"):
            registry.load_issues()

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "issues.json"
        path.write_text("[{")
        registry = TaskRegistry(path, tmp_path / "tasks.json")

        with pytest.raises(TaskRegistryError):
            registry.load_issues()


    def test_not_utf8(self, tmp_path: Path) -> None:
        path = tmp_path / "issues.json"
        path.write_bytes(b'[{"number": 1, "title": "caf\xe9"}]')
        registry = TaskRegistry(path, tmp_path / "tasks.json")

        with pytest.raises(TaskRegistryError, match="Failed to read"):
            registry.load_issues()


class TestTaskPersistence:
    """Tests for loading and saving the task backlog."""

    def test_save_load_round_trip_array(self, tmp_path: Path) -> None:
        """Test that unknown keys, aliases and missing fields survive load/save."""
        original = [
            {"id": "a", "description": "First", "status": "completed", "owner": "sam"},
            {"id": 7, "description": "Second", "issueNumber": 2},
            {"id": "c", "description": "Third", "status": "in_progress", "extra": {"nested": [1, 2]}},
        ]
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps(original))
        registry = TaskRegistry(tmp_path / "issues.json", path)

        registry.load()
        registry.save()

        assert json.loads(path.read_text()) == original

    def test_save_load_round_trip_envelope(self, tmp_path: Path) -> None:
        original = {"version": 2, "tasks": [{"id": "1", "description": "Only"}]}
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps(original))
        registry = TaskRegistry(tmp_path / "issues.json", path)

        registry.load()
        registry.save()

        assert json.loads(path.read_text()) == original

    def test_envelope_without_tasks_key(self, tmp_path: Path) -> None:
        """Test that an envelope without tasks is saved back unchanged."""
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps({"version": 1}))
        registry = TaskRegistry(tmp_path / "issues.json", path)

        registry.load()
        registry.save()

        assert json.loads(path.read_text()) == {"version": 1}

    def test_load_normalizes_status(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps([{"id": "1", "description": "x", "status": "Completed"}]))
        registry = TaskRegistry(tmp_path / "issues.json", path)

        tasks = registry.load()

        assert tasks[0].status == TaskStatus.DONE
        assert not registry.has_open_tasks()

    def test_changed_status_is_written(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps([{"id": "1", "description": "x", "status": "pending", "owner": "sam"}]))
        registry = TaskRegistry(tmp_path / "issues.json", path)
        registry.load()

        registry.tasks[0].status = TaskStatus.DONE
        registry.save()

        assert json.loads(path.read_text()) == [
            {"id": "1", "description": "x", "status": "done", "owner": "sam"}
        ]

    def test_missing_id(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps([{"description": "no id"}]))
        registry = TaskRegistry(tmp_path / "issues.json", path)

        with pytest.raises(TaskRegistryError, match="missing an id"):
            registry.load()

    def test_bad_root(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.json"
        path.write_text('"just a string"')
        registry = TaskRegistry(tmp_path / "issues.json", path)

        with pytest.raises(TaskRegistryError):
            registry.load()

    def test_save_leaves_no_temp_files(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.json"
        registry = TaskRegistry(tmp_path / "issues.json", path)
        registry.tasks = [GeneratedTask(id="1", description="New task")]

        registry.save()

        assert json.loads(path.read_text()) == [
            {"id": "1", "description": "New task", "status": "pending"}
        ]
        assert sorted(p.name for p in tmp_path.iterdir()) == ["tasks.json"]


class TestSyncFromIssues:
    """Tests for generating the backlog from open issues."""

    def test_checklists_become_tasks(self, registry: TaskRegistry) -> None:
        tasks = registry.tasks

        assert [task.id for task in tasks] == ["1-001", "1-002", "2-001"]
        assert tasks[0].title == "Reproduce the blank page"
        assert tasks[0].status == TaskStatus.PENDING
        assert tasks[1].status == TaskStatus.DONE
        assert tasks[2].title == "Document the config file"
        assert all(task.origin_issue_id in (1, 2) for task in tasks)

    def test_tasks_record_origin_and_order(self, registry: TaskRegistry) -> None:
        tasks = registry.tasks

        assert [(task.origin, task.order) for task in tasks] == [
            ("checklist", 1),
            ("checklist", 2),
            ("fallback", 1),
        ]
        assert tasks[0].issue_title == "Fix login redirect"
        assert tasks[2].description == "The README doesn't mention issueloop.yaml"

    def test_new_fields_are_saved(self, config, registry: TaskRegistry) -> None:
        registry.save()

        saved = json.loads(config.tasks_file.read_text())
        assert saved[0]["issueTitle"] == "Fix login redirect"
        assert saved[0]["origin"] == "checklist"
        assert saved[0]["order"] == 1
        assert saved[0]["stableKey"] == "1:reproduce-the-blank-page"

    def test_closed_issues_are_skipped(self, registry: TaskRegistry) -> None:
        assert all(task.origin_issue_id != 3 for task in registry.tasks)

    def test_existing_status_is_kept(self, config, registry: TaskRegistry) -> None:
        registry.tasks[2].status = TaskStatus.IN_PROGRESS
        registry.save()

        reloaded = TaskRegistry(config.issues_file, config.tasks_file)
        reloaded.load_issues()
        reloaded.load()
        tasks = reloaded.sync_from_issues()

        assert tasks[2].status == TaskStatus.IN_PROGRESS
        assert tasks[0].status == TaskStatus.PENDING

    def test_get_tasks_by_status(self, registry: TaskRegistry) -> None:
        assert [task.id for task in registry.get_tasks(TaskStatus.DONE)] == ["1-002"]
        assert len(registry.get_tasks()) == 3

    def test_get_progress(self, registry: TaskRegistry) -> None:
        progress = registry.get_progress()

        assert progress["total"] == 3
        assert progress["completed"] == 1
        assert progress["by_status"] == {"pending": 2, "done": 1}
