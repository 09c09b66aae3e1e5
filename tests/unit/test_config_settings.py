"""Tests for code_diffusion/config/settings.py.

Tests cover:
- Section defaults
- Field validation
- Loading from YAML with environment variable interpolation
- Environment variable overrides
- Error handling for missing or malformed files
"""

import os

import pytest
from pydantic import ValidationError

from code_diffusion.config.settings import (
    DiffusionSettings,
    NotionConfig,
    ServerConfig,
    SupervisorConfig,
    WorkflowConfig,
)
from code_diffusion.enums import WorkflowStage
from code_diffusion.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host CODE_DIFFUSION_* variables out of the tests."""
    for name in list(os.environ):
        if name.startswith("CODE_DIFFUSION_"):
            monkeypatch.delenv(name)


class TestDefaults:
    """Test section defaults."""

    def test_supervisor_defaults(self):
        """Supervisor limits default to the documented values."""
        config = SupervisorConfig()

        assert config.max_concurrent_workers == 10
        assert config.worker_timeout == 1800.0
        assert config.kill_grace_period == 5.0

    def test_retry_defaults(self):
        """Retry policy defaults: 3 attempts, 1s base, 30s cap."""
        retry = DiffusionSettings().retry

        assert retry.max_attempts == 3
        assert retry.base_delay == 1.0
        assert retry.max_delay == 30.0

    def test_notion_disabled_without_key(self):
        """Notion is disabled until an API key is set."""
        assert not NotionConfig().enabled
        assert NotionConfig(api_key="secret_x").enabled

    def test_api_key_is_secret(self):
        """The API key does not leak through repr."""
        config = NotionConfig(api_key="secret_x")
        assert "secret_x" not in repr(config)

    def test_workflow_capabilities(self):
        """Every worker stage has capabilities; others are empty."""
        config = WorkflowConfig()

        assert "coding" in config.capabilities_for(WorkflowStage.IMPLEMENTING).skills
        assert "pattern_analysis" in config.capabilities_for(WorkflowStage.PLANNING).mcps
        assert config.capabilities_for(WorkflowStage.COMPLETE).skills == []
        assert config.planning_enabled is False

    def test_worktree_for(self):
        """Worktrees are only derived when a root is configured."""
        assert WorkflowConfig().worktree_for("wf-1") is None
        assert WorkflowConfig(worktree_root="/srv/wt").worktree_for("wf-1") == "/srv/wt/wf-1"


class TestValidation:
    """Test field validation."""

    def test_max_workers_must_be_positive(self):
        """A zero ceiling is rejected."""
        with pytest.raises(ValidationError):
            SupervisorConfig(max_concurrent_workers=0)

    def test_port_range(self):
        """Ports outside 1-65535 are rejected."""
        with pytest.raises(ValidationError):
            ServerConfig(port=70000)


class TestFromYaml:
    """Test loading settings from YAML."""

    def test_load_full_config(self, tmp_path):
        """All sections load from YAML."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            """
notion:
  api_key: secret_abc
  stages_database_id: db-stages
supervisor:
  worker_command: ["python", "-m", "agent"]
  max_concurrent_workers: 4
retry:
  max_attempts: 5
workflow:
  planning_enabled: true
server:
  port: 8080
"""
        )

        settings = DiffusionSettings.from_yaml(str(config_file))

        assert settings.notion.api_key.get_secret_value() == "secret_abc"
        assert settings.supervisor.worker_command == ["python", "-m", "agent"]
        assert settings.supervisor.max_concurrent_workers == 4
        assert settings.retry.max_attempts == 5
        assert settings.workflow.planning_enabled is True
        assert settings.server.port == 8080

    def test_empty_file_uses_defaults(self, tmp_path):
        """An empty file is valid."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")

        settings = DiffusionSettings.from_yaml(str(config_file))

        assert settings.supervisor.max_concurrent_workers == 10

    def test_env_interpolation(self, tmp_path, monkeypatch):
        """${VAR} and ${VAR:-default} are substituted."""
        monkeypatch.setenv("NOTION_TOKEN", "secret_env")
        monkeypatch.delenv("WORKER_LIMIT", raising=False)
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            """
notion:
  api_key: ${NOTION_TOKEN}
supervisor:
  max_concurrent_workers: ${WORKER_LIMIT:-7}
"""
        )

        settings = DiffusionSettings.from_yaml(str(config_file))

        assert settings.notion.api_key.get_secret_value() == "secret_env"
        assert settings.supervisor.max_concurrent_workers == 7

    def test_comment_lines_not_interpolated(self, tmp_path, monkeypatch):
        """Unset variables in comments are ignored."""
        monkeypatch.delenv("UNSET_IN_COMMENT", raising=False)
        config_file = tmp_path / "config.yaml"
        config_file.write_text("# api_key: ${UNSET_IN_COMMENT}\nserver:\n  port: 3001\n")

        assert DiffusionSettings.from_yaml(str(config_file)).server.port == 3001

    def test_missing_env_var(self, tmp_path, monkeypatch):
        """A required variable that is unset is a configuration error."""
        monkeypatch.delenv("MISSING_TOKEN", raising=False)
        config_file = tmp_path / "config.yaml"
        config_file.write_text("notion:\n  api_key: ${MISSING_TOKEN}\n")

        with pytest.raises(ConfigurationError, match="MISSING_TOKEN"):
            DiffusionSettings.from_yaml(str(config_file))

    def test_missing_file(self, tmp_path):
        """A missing file is a configuration error."""
        with pytest.raises(ConfigurationError, match="not found"):
            DiffusionSettings.from_yaml(str(tmp_path / "absent.yaml"))

    def test_invalid_yaml(self, tmp_path):
        """Malformed YAML is a configuration error."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("notion: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            DiffusionSettings.from_yaml(str(config_file))

    def test_non_mapping(self, tmp_path):
        """A top-level list is rejected."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- one\n- two\n")

        with pytest.raises(ConfigurationError, match="YAML object"):
            DiffusionSettings.from_yaml(str(config_file))

    def test_validation_failure(self, tmp_path):
        """Schema violations are wrapped as configuration errors."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("supervisor:\n  max_concurrent_workers: 0\n")

        with pytest.raises(ConfigurationError, match="Failed to validate"):
            DiffusionSettings.from_yaml(str(config_file))


class TestEnvironmentOverrides:
    """Test CODE_DIFFUSION_* environment variables."""

    def test_nested_override(self, monkeypatch):
        """Nested fields are set with a double underscore."""
        monkeypatch.setenv("CODE_DIFFUSION_SUPERVISOR__MAX_CONCURRENT_WORKERS", "2")
        monkeypatch.setenv("CODE_DIFFUSION_SERVER__PORT", "4000")

        settings = DiffusionSettings()

        assert settings.supervisor.max_concurrent_workers == 2
        assert settings.server.port == 4000
