"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the orchestration engine:
the Notion knowledge base, the worker supervisor, the retry policy, the
stage pipeline and the webhook server.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from code_diffusion.enums import WorkflowStage
from code_diffusion.exceptions import ConfigurationError


class NotionConfig(BaseModel):
    """Notion knowledge-base configuration.

    Supports environment references:
    - api_key: "${NOTION_API_KEY}"
    """

    api_key: SecretStr = Field(default=SecretStr(""), description="Notion integration token")
    workflows_database_id: str = Field(default="", description="Database holding one page per workflow")
    stages_database_id: str = Field(default="", description="Database receiving stage output pages")
    tasks_database_id: str = Field(default="", description="Database holding subagent tasks")
    base_url: str = Field(default="https://api.notion.com/v1", description="Notion REST API root")
    api_version: str = Field(default="2022-06-28", description="Value sent as the Notion-Version header")
    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    @property
    def enabled(self) -> bool:
        """Whether an API key has been configured."""
        return bool(self.api_key.get_secret_value())


class SupervisorConfig(BaseModel):
    """Worker process supervision configuration."""

    worker_command: list[str] = Field(
        default_factory=lambda: ["code-diffusion-worker"],
        description="Command prefix used to launch a worker; launch arguments are appended",
    )
    max_concurrent_workers: int = Field(default=10, ge=1, description="Concurrency ceiling")
    worker_timeout: float = Field(default=1800.0, gt=0, description="Seconds before a worker is terminated")
    kill_grace_period: float = Field(default=5.0, ge=0, description="Seconds between SIGTERM and SIGKILL")
    stderr_tail_lines: int = Field(default=20, ge=0, description="Recent stderr lines kept per worker")
    working_directory: str | None = Field(default=None, description="Working directory for workers")


class RetryConfig(BaseModel):
    """Transient failure retry policy."""

    max_attempts: int = Field(default=3, ge=0, description="Retries allowed per workflow stage")
    base_delay: float = Field(default=1.0, ge=0, description="Backoff base in seconds")
    max_delay: float = Field(default=30.0, ge=0, description="Backoff cap in seconds")
    max_jitter: float = Field(default=1.0, ge=0, description="Upper bound of the random jitter")


class StageCapabilities(BaseModel):
    """Skills and tool-access tags forwarded to a stage worker."""

    skills: list[str] = Field(default_factory=list)
    mcps: list[str] = Field(default_factory=list)


def _default_capabilities() -> dict[WorkflowStage, StageCapabilities]:
    return {
        WorkflowStage.EXPLORING: StageCapabilities(
            skills=["codebase_analysis", "architecture_detection"],
            mcps=["codebase_search", "file_operations"],
        ),
        WorkflowStage.PLANNING: StageCapabilities(
            skills=["planning", "architecture"],
            mcps=["pattern_analysis"],
        ),
        WorkflowStage.IMPLEMENTING: StageCapabilities(
            skills=["coding", "testing", "debugging"],
            mcps=["file_operations", "git_operations"],
        ),
    }


class WorkflowConfig(BaseModel):
    """Stage pipeline behavior."""

    planning_enabled: bool = Field(
        default=False,
        description="Spawn a planner worker; when false planning passes straight through",
    )
    worktree_root: str | None = Field(default=None, description="Directory holding per-workflow worktrees")
    capabilities: dict[WorkflowStage, StageCapabilities] = Field(default_factory=_default_capabilities)

    def capabilities_for(self, stage: WorkflowStage) -> StageCapabilities:
        """Return the capability set for ``stage`` (empty when unconfigured)."""
        return self.capabilities.get(stage, StageCapabilities())

    def worktree_for(self, workflow_id: str) -> str | None:
        """Return the worktree path for ``workflow_id``, if worktrees are configured."""
        if not self.worktree_root:
            return None
        return str(Path(self.worktree_root) / workflow_id)


class ServerConfig(BaseModel):
    """Webhook server configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3000, ge=1, le=65535)
    webhook_secret: SecretStr | None = Field(
        default=None, description="Shared secret for X-Notion-Signature verification"
    )


class DiffusionSettings(BaseSettings):
    """Main code-diffusion settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    Every section has defaults, so an empty YAML file is valid.
    """

    model_config = SettingsConfigDict(
        env_prefix="CODE_DIFFUSION_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    notion: NotionConfig = Field(default_factory=NotionConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> DiffusionSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            DiffusionSettings instance

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

        YAML comment lines are left unchanged.

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
