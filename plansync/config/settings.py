"""
Configuration system using Pydantic for type-safe settings management.

This module provides the configuration consumed by one synchronization run:
tracker connection, target organization/repository, optional sprint
metadata and the engine's concurrency, retry and pacing knobs.

Settings are always passed explicitly into the engine; nothing in the engine
reads configuration files on its own.
"""

from __future__ import annotations

import os
import re
from datetime import date
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from plansync.exceptions import ConfigurationError

# Sprint labels are derived as sprint-<n>; category labels must never take that shape
_SPRINT_LABEL = re.compile(r"^sprint-\d+$", re.IGNORECASE)


class TrackerConfig(BaseModel):
    """Remote tracker connection.

    Supports environment references in YAML:
    - api_token: "${GITHUB_TOKEN}"
    """

    provider_type: Literal["github", "memory"] = Field(default="github", description="Tracker implementation")
    base_url: str = Field(default="https://api.github.com", description="API base URL")
    api_token: SecretStr | None = Field(default=None, description="API token for authentication")
    project_number: int | None = Field(
        default=None,
        ge=1,
        description="Organization project (board) number; board status is skipped when unset",
    )

    @model_validator(mode="after")
    def validate_token(self) -> TrackerConfig:
        """Require a token for remote trackers."""
        if self.provider_type == "github" and (self.api_token is None or not self.api_token.get_secret_value()):
            raise ValueError("api_token is required when provider_type='github'")
        return self


class SprintDefinition(BaseModel):
    """Optional per-sprint metadata used to enrich milestones."""

    number: int = Field(..., ge=0, description="Sprint number")
    description: str | None = Field(default=None, description="Milestone description override")
    due_on: date | None = Field(default=None, description="Milestone due date")


class SyncOptions(BaseModel):
    """Reconciler behavior."""

    concurrency: int = Field(default=3, ge=1, le=32, description="Maximum concurrent create calls")
    partitions: int = Field(default=1, ge=1, le=16, description="Number of sprint-range worker pools")
    max_attempts: int = Field(default=3, ge=1, le=10, description="Attempts for rate-limited calls")
    unknown_error_attempts: int = Field(
        default=2, ge=1, le=10, description="Attempts for unclassified tracker errors"
    )
    backoff_factor: float = Field(default=2.0, ge=1.0, description="Exponential backoff base")
    base_delay: float = Field(default=1.0, ge=0.0, description="Delay before the first retry, in seconds")
    max_delay: float = Field(default=30.0, ge=0.0, description="Upper bound for a single retry delay")
    pacing_interval: float = Field(
        default=0.5, ge=0.0, description="Minimum seconds between two remote calls of one worker"
    )
    category_labels: list[str] = Field(
        default_factory=lambda: ["task", "gate"],
        description="Fixed labels distinguishing task issues from gate issues",
    )
    set_board_status: bool = Field(default=True, description="Put newly created issues on the board as Todo")

    @field_validator("category_labels")
    @classmethod
    def validate_category_labels(cls, value: list[str]) -> list[str]:
        cleaned = [label.strip() for label in value if label.strip()]
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("category_labels must not contain duplicates")
        if len(cleaned) not in (0, 2):
            raise ValueError("category_labels must name exactly two labels (task, gate) or none")
        clashing = [label for label in cleaned if _SPRINT_LABEL.match(label)]
        if clashing:
            raise ValueError(f"category_labels must not look like sprint labels: {', '.join(clashing)}")
        return cleaned

    @property
    def task_label(self) -> str | None:
        return self.category_labels[0] if self.category_labels else None

    @property
    def gate_label(self) -> str | None:
        return self.category_labels[1] if self.category_labels else None


class SyncSettings(BaseSettings):
    """Main plan-sync settings.

    Combines all configuration sections and provides loading from YAML
    files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="PLANSYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    organization: str = Field(..., min_length=1, description="Organization or repository owner")
    repository: str = Field(..., min_length=1, description="Repository name")
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    sprint_definitions: list[SprintDefinition] = Field(default_factory=list)
    sync: SyncOptions = Field(default_factory=SyncOptions)

    @field_validator("sprint_definitions")
    @classmethod
    def validate_unique_sprints(cls, value: list[SprintDefinition]) -> list[SprintDefinition]:
        numbers = [definition.number for definition in value]
        if len(set(numbers)) != len(numbers):
            raise ValueError("sprint_definitions must not repeat a sprint number")
        return value

    @property
    def full_repository(self) -> str:
        return f"{self.organization}/{self.repository}"

    def sprint_definition(self, number: int) -> SprintDefinition | None:
        """Get the definition for a sprint, if one was configured."""
        for definition in self.sprint_definitions:
            if definition.number == number:
                return definition
        return None

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> SyncSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            SyncSettings instance

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
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left untouched.

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
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
