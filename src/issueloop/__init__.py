"""issueloop - drive an AI assistant session loop over a local issue backlog."""

__version__ = "0.1.0"
