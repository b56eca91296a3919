"""Unit tests for the service-deploy command line.

Managers are mocked; these tests cover argument wiring, output and exit codes.
"""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from service_deployer.cli import cli
from service_deployer.deploy.errors import BuildError
from service_deployer.deploy.pipeline import PipelineReport, StepResult, StepStatus


@pytest.fixture(autouse=True)
def config_dir(tmp_path, monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("SERVICE_DEPLOY_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("SERVICE_DEPLOY_CONFIG_DIR", str(tmp_path))
    return tmp_path


def _success_report(name="checkout"):
    return PipelineReport(
        name=name,
        steps=[
            StepResult(name="fetch-origin", status=StepStatus.APPLIED),
            StepResult(name="build-release", status=StepStatus.APPLIED),
        ],
    )


def _failed_report(name="checkout"):
    return PipelineReport(
        name=name,
        steps=[
            StepResult(name="fetch-origin", status=StepStatus.SATISFIED),
            StepResult(
                name="build-release",
                status=StepStatus.FAILED,
                exit_code=101,
                error=BuildError(
                    "cargo failed",
                    command=["cargo", "build", "--release"],
                    exit_code=101,
                    output="error[E0425]: cannot find value `x` in this scope",
                ),
            ),
            StepResult(name="install-binary", status=StepStatus.SKIPPED),
        ],
    )


class TestCommandRegistration:
    def test_commands_listed_in_help(self):
        """Test that all commands are registered."""
        result = CliRunner().invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("init", "deploy", "checkout", "install", "status"):
            assert command in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "service-deploy" in result.output


class TestInitCommand:
    """Writing the default config file."""

    def test_writes_default_config(self, config_dir):
        """Test init writes a config file that loads back as the defaults."""
        result = CliRunner().invoke(cli, ["init"])

        assert result.exit_code == 0
        written = json.loads((config_dir / "config.json").read_text())
        assert written["service_name"] == "cratebot"
        assert written["build_command"] == ["cargo", "build", "--release"]

    def test_refuses_to_overwrite(self, config_dir):
        (config_dir / "config.json").write_text(json.dumps({"service_name": "mybot"}))

        result = CliRunner().invoke(cli, ["init"])

        assert result.exit_code == 1
        assert "config file already exists" in result.output
        assert json.loads((config_dir / "config.json").read_text()) == {"service_name": "mybot"}

    def test_force_overwrites(self, config_dir):
        (config_dir / "config.json").write_text(json.dumps({"service_name": "mybot"}))

        result = CliRunner().invoke(cli, ["init", "--force"])

        assert result.exit_code == 0
        assert json.loads((config_dir / "config.json").read_text())["service_name"] == "cratebot"


class TestDeployCommand:
    """Operator-side deploy."""

    def test_success_exits_zero(self):
        """Test a successful deploy streams the remote output and exits 0."""
        with patch("service_deployer.cli.RemoteDeployer") as mock_deployer_class:

            def execute():
                on_output = mock_deployer_class.call_args.kwargs["on_output"]
                on_output("   Compiling cratebot v0.1.0 [release]")
                on_output("install completed")
                return _success_report("deploy")

            mock_deployer_class.return_value.execute.side_effect = execute

            result = CliRunner().invoke(cli, ["deploy", "main", "example.com"])

        assert result.exit_code == 0
        assert "Compiling cratebot v0.1.0 [release]" in result.output
        assert "install completed" in result.output
        assert "deploy completed" in result.output
        args = mock_deployer_class.call_args.args
        assert args[1:] == ("main", "example.com")

    def test_failure_exit_code_propagates(self):
        """Test the failing step's exit code becomes the process exit code."""
        with patch("service_deployer.cli.RemoteDeployer") as mock_deployer_class:
            deployer = mock_deployer_class.return_value
            deployer.execute.return_value = _failed_report("deploy")
            deployer.remote_output = None

            result = CliRunner().invoke(cli, ["deploy", "main", "example.com"])

        assert result.exit_code == 101
        assert "Error: cargo failed" in result.output
        assert "cannot find value" in result.output
        assert "build-release, install-binary" in result.output

    def test_invalid_config_is_reported(self, monkeypatch):
        monkeypatch.setenv("SERVICE_DEPLOY_SERVICE_NAME", "Not Valid")

        result = CliRunner().invoke(cli, ["deploy", "main", "example.com"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestCheckoutAndInstallCommands:
    """Host-side commands."""

    def test_checkout_records_status(self, config_dir):
        """Test checkout writes the status file with branch and domain."""
        with patch("service_deployer.cli.CheckoutManager") as mock_manager_class:
            mock_manager_class.return_value.execute.return_value = _success_report()

            result = CliRunner().invoke(cli, ["checkout", "main", "example.com"])

        assert result.exit_code == 0
        status = json.loads((config_dir / "status.json").read_text())
        assert status["status"] == "success"
        assert status["branch"] == "main"
        assert status["domain"] == "example.com"

    def test_checkout_failure_exit_code(self, config_dir):
        with patch("service_deployer.cli.CheckoutManager") as mock_manager_class:
            mock_manager_class.return_value.execute.return_value = _failed_report()

            result = CliRunner().invoke(cli, ["checkout", "main", "example.com"])

        assert result.exit_code == 101
        status = json.loads((config_dir / "status.json").read_text())
        assert status["status"] == "failed"
        assert status["exit_code"] == 101

    def test_install_passes_domain(self, config_dir):
        with patch("service_deployer.cli.BuildInstallManager") as mock_manager_class:
            mock_manager_class.return_value.execute.return_value = _success_report("install")

            result = CliRunner().invoke(cli, ["install", "example.com"])

        assert result.exit_code == 0
        assert mock_manager_class.call_args.args[1] == "example.com"


class TestStatusCommand:
    """Reading the last recorded run."""

    def test_no_status_exits_one(self):
        result = CliRunner().invoke(cli, ["status"])

        assert result.exit_code == 1
        assert "No deployment recorded" in result.output

    def test_no_status_json(self):
        result = CliRunner().invoke(cli, ["status", "--json"])

        assert result.exit_code == 1
        assert json.loads(result.output)["error_type"] == "NotFound"

    def test_status_after_failed_run(self):
        """Test status shows the failure recorded by a previous checkout."""
        with patch("service_deployer.cli.CheckoutManager") as mock_manager_class:
            mock_manager_class.return_value.execute.return_value = _failed_report()
            CliRunner().invoke(cli, ["checkout", "main", "example.com"])

        result = CliRunner().invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "failed" in result.output
        assert "build-release" in result.output

    def test_status_json(self):
        with patch("service_deployer.cli.CheckoutManager") as mock_manager_class:
            mock_manager_class.return_value.execute.return_value = _success_report()
            CliRunner().invoke(cli, ["checkout", "main", "example.com"])

        result = CliRunner().invoke(cli, ["status", "--json"])

        assert result.exit_code == 0
        parsed = json.loads(result.output)
        assert parsed["success"] is True
        assert parsed["data"]["branch"] == "main"
