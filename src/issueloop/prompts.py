"""Prompt assembly for each loop iteration."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Sequence

from jinja2 import StrictUndefined, Template

from .completion import PROMISE_MARKER
from .progress_store import ENTRY_SEPARATOR, ProgressEntry
from .task_registry import GeneratedTask, Issue

logger = logging.getLogger(__name__)

# Number of most recent progress entries included in each prompt. The
# instruction template itself is never truncated.
PROGRESS_TAIL_WINDOW = 5

PROMPT_FRAME = """\
You are running inside a loop. Use the files and repository as your source of truth.
Ignore any pre-existing uncommitted changes in the working tree - focus only on the issues listed below.

# INSTRUCTIONS
{{ template }}

# ISSUES_JSON
```json
{{ issues_json }}
```

# TASKS_JSON
```json
{{ tasks_json }}
```

# PROGRESS_SO_FAR
```text
{{ progress }}
```

# OUTPUT_RULES
- Work on ONE issue per iteration. Make real changes to files.
- After making changes, summarize what you did and what remains.
- List anything worth remembering for later iterations under a "Learnings:" heading as bullet points.
- Only output {{ marker }} when ALL of these are true:
  1. You made changes in THIS iteration (not just reviewed code)
  2. Every issue in ISSUES_JSON has been addressed
  3. There is genuinely no remaining work
- If unsure whether to output the marker, do NOT output it - continue working.
"""


def _to_json(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False)


def read_template(path: Path) -> str:
    """Read the instruction template as UTF-8 text."""
    return Path(path).read_text(encoding="utf-8")


class PromptAssembler:
    """Builds the outbound prompt from the template and loop state.

    Assembly is a pure function of its inputs: the same template, issues,
    tasks and progress tail always produce the same string.
    """

    def __init__(self, window: int = PROGRESS_TAIL_WINDOW):
        """Initialize the assembler.

        Args:
            window: How many of the most recent progress entries to include.
        """
        if window < 1:
            raise ValueError("window must be at least 1")
        self.window = window
        self._frame = Template(PROMPT_FRAME, undefined=StrictUndefined, keep_trailing_newline=True)

    def assemble(
        self,
        template: str,
        issues: Sequence[Issue],
        tasks: Sequence[GeneratedTask],
        progress_tail: Sequence[ProgressEntry],
    ) -> str:
        """Assemble one prompt.

        Args:
            template: Instruction template, included verbatim.
            issues: Issues snapshot.
            tasks: Generated task backlog.
            progress_tail: Recent progress entries, oldest first. Only the last
                ``window`` entries are used.

        Returns:
            The prompt text.
        """
        recent = list(progress_tail)[-self.window:]
        progress = ENTRY_SEPARATOR.join(entry.render().strip() for entry in recent)

        return self._frame.render(
            template=template.rstrip("\n"),
            issues_json=_to_json([issue.to_dict() for issue in issues]),
            tasks_json=_to_json([task.to_dict() for task in tasks]),
            progress=progress or "(empty)",
            marker=PROMISE_MARKER,
        )
