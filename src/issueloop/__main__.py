"""Main entry point for running issueloop as a module.

Usage:
    python -m issueloop --help
    python -m issueloop run --max-iterations 5
    python -m issueloop init
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
