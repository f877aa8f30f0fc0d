"""Tests for refreshing issues through the gh CLI."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from issueloop.gh_issues import (
    GhIssuesError,
    build_command,
    fetch_open_issues_json,
    refresh_issues_file,
)


def completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> MagicMock:
    return MagicMock(stdout=stdout, returncode=returncode, stderr=stderr)


class TestBuildCommand:
    def test_default(self) -> None:
        assert build_command() == [
            "gh", "issue", "list", "--state", "open", "--limit", "200",
            "--json", "number,title,body,url,labels,comments",
        ]

    def test_repo_override(self) -> None:
        assert build_command("octo/app")[-2:] == ["--repo", "octo/app"]


class TestFetch:
    """Tests for running gh."""

    def test_success(self) -> None:
        with patch("issueloop.gh_issues.subprocess.run", return_value=completed("[]")) as run:
            assert fetch_open_issues_json("octo/app") == "[]"

        assert run.call_args.args[0] == build_command("octo/app")

    def test_non_zero_exit(self) -> None:
        with patch("issueloop.gh_issues.subprocess.run", return_value=completed(returncode=1, stderr="auth required")):
            with pytest.raises(GhIssuesError, match="auth required"):
                fetch_open_issues_json()

    def test_gh_missing(self) -> None:
        with patch("issueloop.gh_issues.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(GhIssuesError, match="not found"):
                fetch_open_issues_json()

    def test_timeout(self) -> None:
        with patch("issueloop.gh_issues.subprocess.run", side_effect=subprocess.TimeoutExpired("gh", 5)):
            with pytest.raises(GhIssuesError, match="timed out"):
                fetch_open_issues_json(timeout=5)


class TestRefresh:
    """Tests for writing the snapshot."""

    def test_writes_snapshot(self, tmp_path: Path) -> None:
        issues = [{"number": 4, "title": "Crash", "body": "", "labels": [], "comments": []}]
        path = tmp_path / "issues.json"

        with patch("issueloop.gh_issues.subprocess.run", return_value=completed(json.dumps(issues))):
            count = refresh_issues_file(path)

        assert count == 1
        assert json.loads(path.read_text()) == issues

    def test_rejects_non_array(self, tmp_path: Path) -> None:
        path = tmp_path / "issues.json"
        path.write_text("[]")

        with patch("issueloop.gh_issues.subprocess.run", return_value=completed('{"oops": 1}')):
            with pytest.raises(GhIssuesError):
                refresh_issues_file(path)

        assert path.read_text() == "[]"
