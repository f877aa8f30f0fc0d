"""Refresh the issues snapshot from GitHub using the ``gh`` CLI."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

ISSUE_FIELDS = "number,title,body,url,labels,comments"
ISSUE_LIMIT = 200


class GhIssuesError(Exception):
    """Exception raised when ``gh`` is missing, fails, or returns bad JSON."""
    pass


def build_command(repo: Optional[str] = None) -> list[str]:
    """Build the ``gh issue list`` command line."""
    command = [
        "gh", "issue", "list",
        "--state", "open",
        "--limit", str(ISSUE_LIMIT),
        "--json", ISSUE_FIELDS,
    ]
    if repo:
        command.extend(["--repo", repo])
    return command


def fetch_open_issues_json(repo: Optional[str] = None, timeout: int = 120) -> str:
    """Run ``gh issue list`` and return its JSON output.

    Args:
        repo: Optional ``owner/name`` override; defaults to the current repo.
        timeout: Seconds to wait for gh.

    Returns:
        The raw JSON text printed by gh.

    Raises:
        GhIssuesError: If gh isn't installed, exits non-zero, or times out.
    """
    command = build_command(repo)
    logger.debug(f"Running: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            encoding="utf-8",
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise GhIssuesError("`gh` not found. Install the GitHub CLI to use --refresh-issues") from e
    except subprocess.TimeoutExpired as e:
        raise GhIssuesError(f"`gh` timed out after {timeout} seconds") from e

    if result.returncode != 0:
        raise GhIssuesError(f"`gh` failed (exit {result.returncode}): {result.stderr.strip()}")
    return result.stdout


def refresh_issues_file(path: Path, repo: Optional[str] = None) -> int:
    """Overwrite the issues snapshot with the current open issues.

    Returns:
        Number of issues written.

    Raises:
        GhIssuesError: If gh fails or its output isn't a JSON array.
    """
    text = fetch_open_issues_json(repo)
    try:
        data = json.loads(text or "[]")
    except json.JSONDecodeError as e:
        raise GhIssuesError(f"`gh` returned invalid JSON: {e}") from e
    if not isinstance(data, list):
        raise GhIssuesError("`gh` output is not a JSON array")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    logger.info(f"Refreshed {path} with {len(data)} open issues")
    return len(data)
