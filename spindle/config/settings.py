"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the controller manager, the
local executor, the GitHub source adapter and persistence. Every field has a
default, so an empty configuration file is valid.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from spindle.exceptions import ConfigurationError

DEFAULT_IMAGES: dict[str, str] = {
    "claude-code": "ghcr.io/spindle-dev/claude-code:latest",
    "codex": "ghcr.io/spindle-dev/codex:latest",
    "gemini": "ghcr.io/spindle-dev/gemini:latest",
    "opencode": "ghcr.io/spindle-dev/opencode:latest",
}

DEFAULT_COMMANDS: dict[str, list[str]] = {
    "claude-code": ["claude", "--dangerously-skip-permissions", "--output-format", "stream-json", "--verbose", "-p"],
    "codex": ["codex", "exec", "--full-auto", "--json"],
    "gemini": ["gemini", "--yolo", "--output-format", "stream-json", "-p"],
    "opencode": ["opencode", "run", "--format", "json"],
}


class ControllerSettings(BaseModel):
    """Controller manager configuration."""

    namespace: str | None = Field(default=None, description="Only reconcile this namespace (all if unset)")
    workers: int = Field(default=4, ge=1, description="Concurrent reconcile workers")
    resync_seconds: float = Field(default=60.0, gt=0, description="Periodic full resync interval")
    requeue_seconds: float = Field(default=10.0, gt=0, description="Re-check interval for Running and queued Tasks")
    capture_retry_window: float = Field(
        default=30.0, ge=0, description="How long to retry an empty output capture after completion"
    )
    capture_retry_interval: float = Field(default=5.0, gt=0, description="Delay between output capture retries")
    status_retry_attempts: int = Field(default=5, ge=1, description="Attempts for conflicting status writes")
    metrics_port: int | None = Field(default=None, ge=1, le=65535, description="Serve Prometheus metrics on this port")


class ExecutorSettings(BaseModel):
    """Local executor configuration."""

    work_directory: str = Field(default=".spindle/work", description="Per-job checkouts and logs")
    git_command: str = Field(default="git", description="git executable")
    shutdown_timeout: float = Field(default=10.0, gt=0, description="Seconds between SIGTERM and SIGKILL")
    images: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_IMAGES), description="Image per agent type")
    commands: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_COMMANDS.items()},
        description="Command per agent type; the prompt is appended",
    )


class GitHubSettings(BaseModel):
    """GitHub issue source configuration."""

    owner: str | None = Field(default=None, description="Repository owner/organization")
    repo: str | None = Field(default=None, description="Repository name")
    api_base_url: str = Field(default="https://api.github.com", description="REST API base URL")
    token: SecretStr | None = Field(default=None, description="API token sent as a bearer token")
    per_page: int = Field(default=100, ge=1, le=100, description="Page size for list calls")
    max_pages: int = Field(default=10, ge=1, description="Upper bound on pages fetched per poll")
    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")


class SpindleSettings(BaseSettings):
    """Main spindle settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="SPINDLE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    controller: ControllerSettings = Field(default_factory=ControllerSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    github: GitHubSettings = Field(default_factory=GitHubSettings)
    state_directory: str | None = Field(default=".spindle/state", description="Resource persistence directory")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json", description="Log renderer")

    @property
    def state_dir(self) -> Path | None:
        """Get state directory as Path object."""
        return Path(self.state_directory) if self.state_directory else None

    @property
    def work_dir(self) -> Path:
        """Get executor work directory as Path object."""
        return Path(self.executor.work_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> SpindleSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            SpindleSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines (starting with #) are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            stripped = line.lstrip()
            if stripped.startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        lines = content.split("\n")
        return "\n".join(process_line(line) for line in lines)
