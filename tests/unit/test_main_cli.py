"""Unit tests for the code_diffusion.main CLI module.

This module tests the CLI entry point including:
- transitions, validate-output and serve commands
- Error handling for missing or invalid config
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from code_diffusion.main import cli

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def output_file(tmp_path):
    """Write a JSON payload to a file and return its path."""

    def _write(payload) -> str:
        path = tmp_path / "output.json"
        path.write_text(json.dumps(payload))
        return str(path)

    return _write


# =============================================================================
# Global options
# =============================================================================


class TestConfigOption:
    """Tests for --config handling."""

    def test_missing_config_file(self, cli_runner, tmp_path):
        """A missing config file exits with an error."""
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "absent.yaml"), "transitions"])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_invalid_config_file(self, cli_runner, tmp_path):
        """An invalid config file exits with the configuration error."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("supervisor:\n  max_concurrent_workers: 0\n")

        result = cli_runner.invoke(cli, ["--config", str(config_file), "transitions"])

        assert result.exit_code == 1
        assert "Failed to validate configuration" in result.output

    def test_valid_config_file(self, cli_runner, tmp_path):
        """A valid config file is accepted."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("server:\n  port: 3100\n")

        result = cli_runner.invoke(cli, ["--config", str(config_file), "transitions"])

        assert result.exit_code == 0


# =============================================================================
# Commands
# =============================================================================


class TestTransitionsCommand:
    """Tests for the transitions command."""

    def test_prints_table(self, cli_runner):
        """Every stage is listed with its targets."""
        result = cli_runner.invoke(cli, ["transitions"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert len(lines) == 6
        assert lines[0].split() == ["pending", "->", "blocked,", "exploring"]
        assert "complete      -> (terminal)" in result.output


class TestValidateOutputCommand:
    """Tests for the validate-output command."""

    def test_valid_output(self, cli_runner, output_file, implementation_payload):
        """A valid payload exits 0."""
        result = cli_runner.invoke(cli, ["validate-output", "implementing", output_file(implementation_payload)])

        assert result.exit_code == 0
        assert "Valid implementing output" in result.output

    def test_invalid_output(self, cli_runner, output_file):
        """An invalid payload lists its errors and exits 1."""
        result = cli_runner.invoke(cli, ["validate-output", "exploring", output_file({"suggestedApproach": "x"})])

        assert result.exit_code == 1
        assert "Invalid exploring output:" in result.output
        assert "  - codebaseAnalysis: Field required" in result.output

    def test_unreadable_json(self, cli_runner, tmp_path):
        """Non-JSON files exit 1."""
        path = tmp_path / "output.json"
        path.write_text("{oops")

        result = cli_runner.invoke(cli, ["validate-output", "planning", str(path)])

        assert result.exit_code == 1
        assert "Cannot read" in result.output

    def test_unknown_stage(self, cli_runner, output_file):
        """Only worker stages are accepted."""
        result = cli_runner.invoke(cli, ["validate-output", "complete", output_file({})])
        assert result.exit_code == 2


class TestServeCommand:
    """Tests for the serve command."""

    def test_requires_notion_without_dry_run(self, cli_runner):
        """Without an API key serve refuses to start unless --dry-run is given."""
        with patch("uvicorn.run") as mock_run:
            result = cli_runner.invoke(cli, ["serve"])

        assert result.exit_code == 1
        assert "notion.api_key" in result.output
        mock_run.assert_not_called()

    def test_dry_run_starts_server(self, cli_runner):
        """--dry-run serves with an in-memory knowledge base."""
        with (
            patch("uvicorn.run") as mock_run,
            patch("code_diffusion.webhook_server.create_app", return_value=MagicMock()) as mock_create_app,
        ):
            result = cli_runner.invoke(cli, ["serve", "--dry-run", "--port", "3999"])

        assert result.exit_code == 0
        mock_run.assert_called_once()
        assert mock_run.call_args.kwargs["port"] == 3999
        assert mock_run.call_args.kwargs["host"] == "127.0.0.1"
        coordinator = mock_create_app.call_args.args[1]
        assert type(coordinator.knowledge_base).__name__ == "InMemoryKnowledgeBase"

    def test_keyboard_interrupt(self, cli_runner):
        """Ctrl-C exits with 130."""
        with patch("uvicorn.run", side_effect=KeyboardInterrupt):
            result = cli_runner.invoke(cli, ["serve", "--dry-run"])

        assert result.exit_code == 130
