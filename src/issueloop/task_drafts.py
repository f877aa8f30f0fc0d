"""Turn an issue into draft tasks for the generated backlog.

Drafts come from several places in an issue, tried in this order of
preference:
- Checklist items (``- [ ] text``) in the body or comments
- Plain list items in the body or comments
- ``##`` to ``####`` headings in the body, with their section as description
- Long paragraphs of large issues

Every source is cleaned of Markdown, deduplicated by slug and capped at
``MAX_TASKS_PER_ISSUE``. Large issues with only a few checklist or list
items are topped up from the other sources.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Sequence

if TYPE_CHECKING:
    from .task_registry import Issue

MAX_TASKS_PER_ISSUE = 25
LARGE_ISSUE_BODY_THRESHOLD = 3000
MIN_LARGE_ISSUE_TASK_COUNT = 8
LONG_BODY_THRESHOLD = 1500
PARAGRAPH_BODY_THRESHOLD = 500

SECTION_FALLBACK = "Implement this section end-to-end."
ISSUE_FALLBACK = "Implement this issue end-to-end."

_CHECKLIST_LINE = re.compile(r"^\s*[-*+]\s*\[(?P<done>[ xX])\]\s+(?P<text>.+)$")
_HEADING_LINE = re.compile(r"^\s{0,3}#{2,4}\s+(?P<title>.+?)\s*$")
_LIST_LINE = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+(?P<text>.+)$")
_LIST_PREFIX = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+")
_MARKDOWN_LINK = re.compile(r"\[(?P<text>[^\]]+)\]\((?P<url>[^)]+)\)")
_MARKDOWN_FORMATTING = re.compile(r"[`*_~]")
_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[\W_]+")
_PARAGRAPH_BREAK = re.compile(r"\r?\n\r?\n")
_SENTENCE_END = re.compile(r"[.!?\n]")

# Headings that describe the document rather than work to do
GENERIC_HEADINGS = frozenset({
    "overview", "background", "context", "problem", "problem statement",
    "goals", "goal", "non goals", "scope", "in scope", "out of scope",
    "success metrics", "metrics", "dependencies", "open questions", "risks",
    "timeline", "rollout", "testing", "qa", "appendix", "references",
})


@dataclass(frozen=True)
class TaskDraft:
    """A task candidate before it gets an id and stable key."""

    title: str
    description: str
    origin: str
    done: bool = False


def clean_text(value: str) -> str:
    """Strip Markdown links and formatting, collapse whitespace and trim punctuation."""
    if not value or not value.strip():
        return ""
    clean = _MARKDOWN_LINK.sub(r"\g<text>", value)
    clean = _MARKDOWN_FORMATTING.sub("", clean)
    clean = _WHITESPACE.sub(" ", clean).strip()
    return clean.strip("-:;., ")


def slugify(value: str) -> str:
    slug = _NON_ALNUM.sub("-", value.lower()).strip("-")
    return slug[:64].strip("-") or "task"


def truncate(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[:limit].rstrip()


def normalize_phrase(value: str) -> str:
    return _NON_ALNUM.sub(" ", value.lower()).strip()


def _lines(text: str) -> List[str]:
    return text.replace("\r\n", "\n").split("\n")


def extract_checklist(text: str, origin: str = "checklist") -> Iterable[TaskDraft]:
    for line in _lines(text):
        match = _CHECKLIST_LINE.match(line)
        if not match:
            continue
        title = clean_text(match.group("text"))
        if len(title) < 6:
            continue
        yield TaskDraft(title, title, origin, done=match.group("done").strip() != "")


def extract_list_items(text: str, origin: str = "list") -> Iterable[TaskDraft]:
    """Plain (non-checklist) list items between 12 and 200 characters."""
    for line in _lines(text):
        if _CHECKLIST_LINE.match(line):
            continue
        match = _LIST_LINE.match(line)
        if not match:
            continue
        item = clean_text(match.group("text"))
        if len(item) < 12 or len(item) > 200 or _looks_like_metadata(item):
            continue
        yield TaskDraft(item, item, origin)


def extract_headings(body: str) -> Iterable[TaskDraft]:
    """One draft per useful heading; the first lines of its section describe it."""
    lines = _lines(body)
    headings = []
    for index, line in enumerate(lines):
        match = _HEADING_LINE.match(line)
        if not match:
            continue
        title = clean_text(match.group("title"))
        if _is_useful_heading(title):
            headings.append((title, index))

    for position, (title, index) in enumerate(headings):
        end = headings[position + 1][1] if position + 1 < len(headings) else len(lines)
        yield TaskDraft(title, _section_description(lines[index + 1:end]), "heading")


def extract_paragraphs(issue: Issue) -> Iterable[TaskDraft]:
    """Chunk a long body into up to six paragraph tasks."""
    if len(issue.body) < PARAGRAPH_BODY_THRESHOLD:
        return
    paragraphs = [clean_text(part) for part in _PARAGRAPH_BREAK.split(issue.body)]
    paragraphs = [part for part in paragraphs if len(part) >= 100][:6]

    for number, paragraph in enumerate(paragraphs, start=1):
        title = _paragraph_title(paragraph, issue.title, number)
        if len(title) < 6:
            continue
        yield TaskDraft(title, truncate(paragraph, 320), "chunk")


def dedupe_and_limit(drafts: Iterable[TaskDraft]) -> List[TaskDraft]:
    result: List[TaskDraft] = []
    seen = set()
    for draft in drafts:
        title = clean_text(draft.title)
        if not title:
            continue
        key = slugify(title)
        if key in seen:
            continue
        seen.add(key)

        description = clean_text(draft.description) or title
        result.append(TaskDraft(
            title=truncate(title, 140),
            description=truncate(description, 320),
            origin=draft.origin,
            done=draft.done,
        ))
        if len(result) >= MAX_TASKS_PER_ISSUE:
            break
    return result


def merge_sources(sources: Sequence[Sequence[TaskDraft]], target: int) -> List[TaskDraft]:
    """Take drafts from each source in turn until ``target`` is reached."""
    merged: List[TaskDraft] = []
    seen = set()
    for source in sources:
        for draft in source:
            key = slugify(draft.title)
            if key in seen:
                continue
            seen.add(key)
            merged.append(draft)
            if len(merged) >= MAX_TASKS_PER_ISSUE:
                return merged
        if len(merged) >= target:
            break
    return merged


def build_drafts(issue: Issue) -> List[TaskDraft]:
    """Pick the draft tasks for one open issue. Never returns an empty list."""
    body = issue.body
    comment_checklist = dedupe_and_limit(
        draft for comment in issue.comments for draft in extract_checklist(comment, "comment")
    )
    comment_items = dedupe_and_limit(
        draft for comment in issue.comments for draft in extract_list_items(comment, "comment")
    )
    has_comment_tasks = bool(comment_checklist or comment_items)

    checklist = dedupe_and_limit([*extract_checklist(body), *comment_checklist])
    headings = dedupe_and_limit(extract_headings(body))
    items = dedupe_and_limit([*extract_list_items(body), *comment_items])
    chunks = dedupe_and_limit(extract_paragraphs(issue))

    if checklist:
        if len(body) >= LARGE_ISSUE_BODY_THRESHOLD and len(checklist) < MIN_LARGE_ISSUE_TASK_COUNT:
            return merge_sources([checklist, headings, items, chunks], MIN_LARGE_ISSUE_TASK_COUNT)
        return checklist

    if items and (has_comment_tasks or headings or len(body) >= LONG_BODY_THRESHOLD):
        if len(items) < MIN_LARGE_ISSUE_TASK_COUNT and (headings or chunks):
            return merge_sources([items, headings, chunks], MIN_LARGE_ISSUE_TASK_COUNT)
        return items

    if len(headings) >= 2 or (headings and len(body) >= LONG_BODY_THRESHOLD):
        return headings

    if len(items) >= 3 or (items and len(body) >= LONG_BODY_THRESHOLD):
        return items

    if chunks:
        return chunks

    return [TaskDraft(issue.title, truncate(clean_text(body), 320) or ISSUE_FALLBACK, "fallback")]


def _is_useful_heading(title: str) -> bool:
    if len(title) < 4:
        return False
    normalized = normalize_phrase(title)
    return bool(normalized) and normalized not in GENERIC_HEADINGS


def _looks_like_metadata(value: str) -> bool:
    normalized = normalize_phrase(value)
    return normalized.startswith(("http ", "https ", "note ", "example "))


def _section_description(lines: Sequence[str]) -> str:
    parts = [clean_text(_LIST_PREFIX.sub("", line)) for line in lines]
    description = " ".join([part for part in parts if part][:3])
    return truncate(description, 320) if description else SECTION_FALLBACK


def _paragraph_title(paragraph: str, issue_title: str, number: int) -> str:
    sentences = [part.strip() for part in _SENTENCE_END.split(paragraph) if part.strip()]
    if sentences:
        sentence = clean_text(sentences[0])
        if len(sentence) >= 8:
            return truncate(sentence, 120)
    if issue_title:
        return f"{issue_title} - part {number}"
    return f"Task {number}"
