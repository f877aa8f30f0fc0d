"""Tests for breaking issues into draft tasks."""

from __future__ import annotations

from issueloop.task_drafts import (
    ISSUE_FALLBACK,
    MAX_TASKS_PER_ISSUE,
    SECTION_FALLBACK,
    TaskDraft,
    build_drafts,
    clean_text,
    dedupe_and_limit,
    extract_headings,
    extract_list_items,
    merge_sources,
    slugify,
)
from issueloop.task_registry import Issue


def make_issue(body: str = "", comments: tuple[str, ...] = (), title: str = "Improve the importer") -> Issue:
    return Issue(number=7, title=title, body=body, comments=comments)


def paragraph(topic: str) -> str:
    return (
        f"The {topic} needs a rework before the next release. "
        + "It currently does too much in one place and is hard to test in isolation. " * 2
    )


class TestHelpers:
    def test_clean_text(self) -> None:
        assert clean_text("**Add** [retry logic](https://x.y) to `fetch`.") == "Add retry logic to fetch"

    def test_slugify(self) -> None:
        assert slugify("Add retry_logic to Fetch!") == "add-retry-logic-to-fetch"
        assert slugify("!!!") == "task"

    def test_dedupe_and_limit(self) -> None:
        drafts = [TaskDraft(f"Task number {i}", "", "list") for i in range(40)]
        drafts.insert(1, TaskDraft("task NUMBER 0", "", "list"))

        result = dedupe_and_limit(drafts)

        assert len(result) == MAX_TASKS_PER_ISSUE
        assert result[1].title == "Task number 1"
        assert result[0].description == "Task number 0"

    def test_merge_sources_stops_at_target(self) -> None:
        first = [TaskDraft("Alpha task", "", "list")]
        second = [TaskDraft("alpha TASK", "", "heading"), TaskDraft("Beta task", "", "heading")]
        third = [TaskDraft("Gamma task", "", "chunk")]

        merged = merge_sources([first, second, third], target=2)

        assert [draft.title for draft in merged] == ["Alpha task", "Beta task"]


class TestExtractors:
    def test_list_items_skip_checklists_and_metadata(self) -> None:
        body = (
            "- [ ] Checklist item that is long\n"
            "- Support gzip compressed input\n"
            "- Note: this is only a remark\n"
            "- short\n"
            "1. Validate the header row first\n"
        )

        titles = [draft.title for draft in extract_list_items(body)]

        assert titles == ["Support gzip compressed input", "Validate the header row first"]

    def test_headings_with_sections(self) -> None:
        body = (
            "## Overview\nWhy we need this.\n"
            "## Parse dates\n- accept ISO dates\n- reject junk\n"
            "### Empty section\n"
        )

        drafts = list(extract_headings(body))

        assert [draft.title for draft in drafts] == ["Parse dates", "Empty section"]
        assert drafts[0].description == "accept ISO dates reject junk"
        assert drafts[1].description == SECTION_FALLBACK
        assert {draft.origin for draft in drafts} == {"heading"}


class TestBuildDrafts:
    """Tests for choosing between draft sources."""

    def test_checklist_wins(self) -> None:
        issue = make_issue(
            "## Parse dates\n- [ ] Accept ISO dates\n- [x] Reject junk input",
            comments=("- [ ] Document the date format",),
        )

        drafts = build_drafts(issue)

        assert [(d.title, d.origin, d.done) for d in drafts] == [
            ("Accept ISO dates", "checklist", False),
            ("Reject junk input", "checklist", True),
            ("Document the date format", "comment", False),
        ]

    def test_comment_list_items(self) -> None:
        issue = make_issue(
            "- Support gzip compressed input",
            comments=("- Also handle bzip2 archives",),
        )

        drafts = build_drafts(issue)

        assert [(d.title, d.origin) for d in drafts] == [
            ("Support gzip compressed input", "list"),
            ("Also handle bzip2 archives", "comment"),
        ]

    def test_two_headings(self) -> None:
        issue = make_issue("## Parse dates\nAccept ISO.\n## Parse numbers\nAccept commas.")

        drafts = build_drafts(issue)

        assert [d.title for d in drafts] == ["Parse dates", "Parse numbers"]

    def test_three_list_items(self) -> None:
        issue = make_issue(
            "- Support gzip compressed input\n- Validate the header row\n- Report skipped lines clearly"
        )

        assert len(build_drafts(issue)) == 3

    def test_paragraph_chunks(self) -> None:
        body = "\n\n".join(paragraph(topic) for topic in ("parser", "writer", "scheduler"))
        issue = make_issue(body)

        drafts = build_drafts(issue)

        assert [d.origin for d in drafts] == ["chunk"] * 3
        assert drafts[0].title == "The parser needs a rework before the next release"

    def test_large_checklist_issue_is_topped_up(self) -> None:
        sections = "\n\n".join(
            f"## Stage {name}\n{paragraph(name)}" for name in ("alpha", "beta", "gamma", "delta")
        )
        body = "- [ ] Write the migration plan\n\n" + "\n\n".join([sections] * 5)
        issue = make_issue(body)

        drafts = build_drafts(issue)

        assert len(body) >= 3000
        assert drafts[0].origin == "checklist"
        assert {d.origin for d in drafts[1:]} >= {"heading"}
        assert len(drafts) >= 5

    def test_fallback(self) -> None:
        drafts = build_drafts(make_issue("Imports fail on **big** files."))

        assert drafts == [TaskDraft("Improve the importer", "Imports fail on big files", "fallback")]

    def test_fallback_without_body(self) -> None:
        assert build_drafts(make_issue(""))[0].description == ISSUE_FALLBACK
