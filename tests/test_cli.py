"""Tests for the snapreport CLI."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from snapreport.api.client import ApiRequestError
from snapreport.cli import cli
from snapreport.models.config import SnapConfig, StaticIntegration

ENV = {"SNAPREPORT_CURRENT_SHA": "bbb222", "SNAPREPORT_PREVIOUS_SHA": "aaa111"}


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    """Write a minimal config file."""
    path = tmp_path / "snapreport.config.json"
    SnapConfig(api_key="k", api_secret="s", integration=StaticIntegration(directory="dist")).save(path)
    return path


class TestRun:
    """Tests for the run command."""

    def test_missing_config(self, runner, tmp_path):
        """Test a missing config file exits 1."""
        result = runner.invoke(cli, ["run", "-c", str(tmp_path / "missing.json")], env=ENV)
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_invalid_config(self, runner, tmp_path):
        """Test a config file that fails validation exits 1."""
        path = tmp_path / "bad.json"
        path.write_text('{"api_key": "k"}')
        result = runner.invoke(cli, ["run", "-c", str(path)], env=ENV)
        assert result.exit_code == 1
        assert "Invalid config file" in result.output

    def test_missing_sha(self, runner, config_file):
        """Test a run without a current commit exits 1."""
        result = runner.invoke(cli, ["run", "-c", str(config_file)], env={"SNAPREPORT_CURRENT_SHA": ""})
        assert result.exit_code == 1
        assert "SNAPREPORT_CURRENT_SHA" in result.output

    @patch("snapreport.cli.Orchestrator")
    def test_exit_code_propagates(self, mock_orchestrator, runner, config_file):
        """Test the orchestrator's exit code becomes the process exit code."""
        mock_orchestrator.return_value.run.return_value = 0
        result = runner.invoke(cli, ["run", "-c", str(config_file), "--link", "https://x.test/pr/1"], env=ENV)

        assert result.exit_code == 0
        assert "Run complete" in result.output
        config, environment = mock_orchestrator.call_args.args
        assert environment.after_sha == "bbb222"
        assert environment.link == "https://x.test/pr/1"
        assert mock_orchestrator.call_args.kwargs["config_path"] == config_file.resolve()

    @patch("snapreport.cli.Orchestrator")
    def test_api_error_exits_1(self, mock_orchestrator, runner, config_file):
        """Test an API failure is reported without a traceback."""
        mock_orchestrator.return_value.run.side_effect = ApiRequestError("boom", status_code=500)
        result = runner.invoke(cli, ["run", "-c", str(config_file)], env=ENV)
        assert result.exit_code == 1
        assert "Run failed" in result.output


class TestE2E:
    """Tests for the e2e command."""

    def test_missing_command(self, runner, config_file):
        """Test e2e without a command exits 1."""
        result = runner.invoke(cli, ["e2e", "-c", str(config_file)], env=ENV)
        assert result.exit_code == 1
        assert "Missing command" in result.output

    @patch("snapreport.cli.Orchestrator")
    def test_command_passed_through(self, mock_orchestrator, runner, config_file):
        """Test everything after -- is the wrapped command and its exit code is returned."""
        mock_orchestrator.return_value.run_e2e.return_value = 2
        result = runner.invoke(
            cli, ["e2e", "-c", str(config_file), "--", "npx", "playwright", "test", "--headed"], env=ENV
        )

        assert result.exit_code == 2
        mock_orchestrator.return_value.run_e2e.assert_called_once_with(["npx", "playwright", "test", "--headed"])


class TestFinalize:
    """Tests for the finalize command."""

    @patch("snapreport.cli.Orchestrator")
    def test_finalize(self, mock_orchestrator, runner, config_file):
        """Test finalize passes skipped examples and the nonce through."""
        skipped = '[{"component":"A","variant":"b","target":"chrome"}]'
        result = runner.invoke(
            cli,
            ["finalize", "-c", str(config_file), "--nonce", "run-42", "--skipped-examples", skipped],
            env=ENV,
        )

        assert result.exit_code == 0
        assert "Report finalized" in result.output
        mock_orchestrator.return_value.finalize.assert_called_once_with(skipped)
        assert mock_orchestrator.call_args.args[1].nonce == "run-42"

    @patch("snapreport.cli.Orchestrator")
    def test_finalize_failure(self, mock_orchestrator, runner, config_file):
        """Test a missing nonce is reported and exits 1."""
        mock_orchestrator.return_value.finalize.side_effect = ValueError("Missing nonce.")
        result = runner.invoke(cli, ["finalize", "-c", str(config_file)], env=ENV)
        assert result.exit_code == 1
        assert "Failed to finalize report" in result.output
