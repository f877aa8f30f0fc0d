"""Configuration management for issueloop."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_FILE = "issueloop.yaml"
DEFAULT_MODEL = "claude-sonnet-4-20250514"

_TRUE_VALUES = ("true", "1", "yes")


class ConfigError(Exception):
    """Exception raised for invalid configuration files."""
    pass


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.lower() in _TRUE_VALUES


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


@dataclass(frozen=True)
class LoopConfig:
    """Immutable settings for one issueloop run.

    A single instance is built by the CLI and handed to every component's
    constructor; nothing reads configuration from module state.
    """

    # Backend
    model: str = DEFAULT_MODEL
    max_tokens: int = 8192
    timeout: int = 600
    anthropic_api_key: Optional[str] = None

    # Loop
    max_iterations: int = 10
    progress_window: int = 5

    # Files
    prompt_file: Path = field(default_factory=lambda: Path("prompt.md"))
    issues_file: Path = field(default_factory=lambda: Path("issues.json"))
    tasks_file: Path = field(default_factory=lambda: Path("generated_tasks.json"))
    progress_file: Path = field(default_factory=lambda: Path("progress.txt"))

    # Issue refresh (external gh CLI)
    refresh_issues: bool = False
    repo: Optional[str] = None
    stop_without_open_issues: bool = False

    # Output
    show_reasoning: bool = True
    colorized_output: bool = True
    stream_events: Optional[Path] = None

    # Runtime
    log_level: str = "INFO"
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    mock_mode: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> LoopConfig:
        """Create LoopConfig from the ``loop`` section of a config mapping."""
        loop_data = data.get("loop", {}) or {}
        if not isinstance(loop_data, dict):
            raise ConfigError("'loop' section must be a mapping")

        defaults = cls()
        try:
            return cls(
                model=str(loop_data.get("model", defaults.model)),
                max_tokens=int(loop_data.get("max_tokens", defaults.max_tokens)),
                timeout=int(loop_data.get("timeout", defaults.timeout)),
                anthropic_api_key=loop_data.get("anthropic_api_key"),
                max_iterations=int(loop_data.get("max_iterations", defaults.max_iterations)),
                progress_window=int(loop_data.get("progress_window", defaults.progress_window)),
                prompt_file=Path(loop_data.get("prompt_file", defaults.prompt_file)),
                issues_file=Path(loop_data.get("issues_file", defaults.issues_file)),
                tasks_file=Path(loop_data.get("tasks_file", defaults.tasks_file)),
                progress_file=Path(loop_data.get("progress_file", defaults.progress_file)),
                refresh_issues=bool(loop_data.get("refresh_issues", defaults.refresh_issues)),
                repo=loop_data.get("repo"),
                stop_without_open_issues=bool(
                    loop_data.get("stop_without_open_issues", defaults.stop_without_open_issues)
                ),
                show_reasoning=bool(loop_data.get("show_reasoning", defaults.show_reasoning)),
                colorized_output=bool(loop_data.get("colorized_output", defaults.colorized_output)),
                stream_events=Path(loop_data["stream_events"]) if loop_data.get("stream_events") else None,
                log_level=str(loop_data.get("log_level", defaults.log_level)),
                log_dir=Path(loop_data.get("log_dir", defaults.log_dir)),
                mock_mode=bool(loop_data.get("mock_mode", defaults.mock_mode)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value in config: {e}") from e

    @classmethod
    def load_from_file(cls, config_path: Path) -> LoopConfig:
        """Load config from a YAML file, or defaults if it doesn't exist."""
        if not config_path.exists():
            return cls()
        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, config_path: Optional[Path] = None) -> LoopConfig:
        """Load configuration from the config file, then environment variables.

        Args:
            config_path: Optional YAML file. Defaults to issueloop.yaml in CWD.

        Returns:
            LoopConfig with environment values layered over file values.
        """
        load_dotenv()

        base = cls.load_from_file(Path(config_path or DEFAULT_CONFIG_FILE))
        return base.with_overrides(
            model=os.getenv("ISSUELOOP_MODEL") or None,
            max_tokens=_env_int("ISSUELOOP_MAX_TOKENS"),
            max_iterations=_env_int("ISSUELOOP_MAX_ITERATIONS"),
            timeout=_env_int("ISSUELOOP_TIMEOUT"),
            log_level=os.getenv("ISSUELOOP_LOG_LEVEL") or None,
            mock_mode=_env_flag("ISSUELOOP_MOCK_MODE"),
            anthropic_api_key=base.anthropic_api_key or os.getenv("ANTHROPIC_API_KEY"),
        )

    def with_overrides(self, **overrides: Any) -> LoopConfig:
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        for key in ("prompt_file", "issues_file", "tasks_file", "progress_file", "log_dir", "stream_events"):
            if key in changes:
                changes[key] = Path(changes[key])
        return dataclasses.replace(self, **changes)

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if self.max_iterations < 1:
            errors.append("max_iterations must be at least 1")

        if self.max_tokens < 1:
            errors.append("max_tokens must be at least 1")

        if self.progress_window < 1:
            errors.append("progress_window must be at least 1")

        if not self.prompt_file.exists():
            errors.append(f"Prompt file does not exist: {self.prompt_file}")

        # API key not required in mock mode
        if not self.mock_mode and not self.anthropic_api_key:
            errors.append("ANTHROPIC_API_KEY is required when not in mock mode")

        return errors

    def to_dict(self) -> dict:
        """Serialize to the YAML layout read by from_dict (secrets omitted)."""
        loop = {}
        for f in dataclasses.fields(self):
            if f.name == "anthropic_api_key":
                continue
            value = getattr(self, f.name)
            loop[f.name] = str(value) if isinstance(value, Path) else value
        return {"loop": loop}
