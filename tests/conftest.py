"""Shared test fixtures for issueloop tests."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest
from rich.console import Console

from issueloop.config import LoopConfig
from issueloop.console import ConsoleOutput
from issueloop.progress_store import ProgressStore
from issueloop.task_registry import TaskRegistry


SAMPLE_ISSUES = [
    {
        "number": 1,
        "title": "Fix login redirect",
        "body": "Login sends users to a blank page.\n\n- [ ] Reproduce the blank page\n- [x] Add logging around auth",
        "url": "https://github.com/example/app/issues/1",
        "labels": [{"name": "bug"}],
        "comments": [],
    },
    {
        "number": 2,
        "title": "Document the config file",
        "body": "The README doesn't mention issueloop.yaml.",
        "labels": ["docs"],
        "state": "OPEN",
    },
    {
        "number": 3,
        "title": "Old crash",
        "body": "Fixed long ago.",
        "state": "closed",
    },
]


@pytest.fixture
def sample_issues() -> list[dict]:
    return json.loads(json.dumps(SAMPLE_ISSUES))


@pytest.fixture
def workdir(tmp_path: Path, sample_issues: list[dict]) -> Path:
    """A directory with a prompt template and an issues snapshot."""
    (tmp_path / "prompt.md").write_text("Fix the open issues, one per iteration.\n", encoding="utf-8")
    (tmp_path / "issues.json").write_text(json.dumps(sample_issues, indent=2), encoding="utf-8")
    return tmp_path


@pytest.fixture
def config(workdir: Path) -> LoopConfig:
    """Mock-mode config pointing at files in workdir."""
    return LoopConfig(
        max_iterations=3,
        prompt_file=workdir / "prompt.md",
        issues_file=workdir / "issues.json",
        tasks_file=workdir / "generated_tasks.json",
        progress_file=workdir / "progress.txt",
        log_dir=workdir / "logs",
        mock_mode=True,
    )


@pytest.fixture
def registry(config: LoopConfig) -> TaskRegistry:
    registry = TaskRegistry(config.issues_file, config.tasks_file)
    registry.load_issues()
    registry.sync_from_issues()
    return registry


@pytest.fixture
def progress(config: LoopConfig) -> ProgressStore:
    return ProgressStore(config.progress_file)


@pytest.fixture
def console() -> Console:
    """Plain in-memory console for capturing rendered output."""
    return Console(file=io.StringIO(), width=200, color_system=None, force_terminal=False)


@pytest.fixture
def output(console: Console) -> ConsoleOutput:
    return ConsoleOutput(console=console, colorized=False, show_reasoning=True)
