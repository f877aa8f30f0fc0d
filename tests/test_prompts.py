"""Tests for prompt assembly."""

from __future__ import annotations

from pathlib import Path

import pytest

from issueloop.progress_store import ProgressEntry
from issueloop.prompts import PROGRESS_TAIL_WINDOW, PromptAssembler, read_template
from issueloop.task_registry import TaskRegistry


def entries(count: int) -> list[ProgressEntry]:
    return [
        ProgressEntry(iteration=i, timestamp=f"t{i}", summary=f"summary-{i}")
        for i in range(1, count + 1)
    ]


class TestPromptAssembler:
    """Tests for PromptAssembler."""

    def test_sections_in_order(self, registry: TaskRegistry) -> None:
        prompt = PromptAssembler().assemble("TEMPLATE BODY", registry.issues, registry.tasks, [])

        positions = [
            prompt.index(heading)
            for heading in ("# INSTRUCTIONS", "# ISSUES_JSON", "# TASKS_JSON", "# PROGRESS_SO_FAR", "# OUTPUT_RULES")
        ]
        assert positions == sorted(positions)
        assert "TEMPLATE BODY" in prompt
        assert "<promise>COMPLETE</promise>" in prompt

    def test_deterministic(self, registry: TaskRegistry) -> None:
        """Test that identical inputs give identical prompts."""
        assembler = PromptAssembler()
        tail = entries(3)

        first = assembler.assemble("Do it", registry.issues, registry.tasks, tail)
        second = PromptAssembler().assemble("Do it", list(registry.issues), list(registry.tasks), list(tail))

        assert first == second

    def test_template_is_not_truncated(self, registry: TaskRegistry) -> None:
        template = "\n".join(f"line {i} " + "x" * 200 for i in range(500))

        prompt = PromptAssembler().assemble(template, registry.issues, registry.tasks, [])

        assert template in prompt

    def test_progress_window(self, registry: TaskRegistry) -> None:
        prompt = PromptAssembler().assemble("t", registry.issues, registry.tasks, entries(8))

        assert PROGRESS_TAIL_WINDOW == 5
        assert "summary-3" not in prompt
        for i in range(4, 9):
            assert f"summary-{i}" in prompt

    def test_empty_progress(self, registry: TaskRegistry) -> None:
        prompt = PromptAssembler().assemble("t", registry.issues, registry.tasks, [])
        assert "(empty)" in prompt

    def test_issues_serialized(self, registry: TaskRegistry) -> None:
        prompt = PromptAssembler().assemble("t", registry.issues, registry.tasks, [])

        assert '"title": "Fix login redirect"' in prompt
        assert '"title": "Old crash"' in prompt
        assert '"id": "1-001"' in prompt

    def test_invalid_window(self) -> None:
        with pytest.raises(ValueError):
            PromptAssembler(window=0)


def test_read_template(tmp_path: Path) -> None:
    path = tmp_path / "prompt.md"
    path.write_text("Héllo\n", encoding="utf-8")

    assert read_template(path) == "Héllo\n"
