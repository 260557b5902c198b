"""
Unit tests for the click CLI (run with the coordinator mocked)
"""

import json
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from circulator_stream.cli import main


@pytest.fixture
def runner():
    return CliRunner()


def show_config(runner, *args):
    result = runner.invoke(main, ["show-config", *args])
    return result, (json.loads(result.output) if result.exit_code == 0 else None)


class TestShowConfig:
    def test_defaults(self, runner):
        result, config = show_config(runner, "--agent-uuid", "agent-0001")

        assert result.exit_code == 0
        assert config["agent_uuid"] == "agent-0001"
        assert config["broker_url"] == "mqtt://localhost:1883"
        assert config["subscription_type"] == "shared"
        assert config["config_cache_ttl"] == 0.0
        assert config["fail_closed"] is False

    def test_flags_override(self, runner):
        result, config = show_config(
            runner,
            "--agent-uuid", "agent-0001",
            "--broker-url", "mqtt://broker.local:1884",
            "--subscription-type", "failover",
            "--cache-ttl", "15",
            "--fail-closed",
            "--enable-control",
        )

        assert result.exit_code == 0
        assert config["broker_url"] == "mqtt://broker.local:1884"
        assert config["subscription_type"] == "failover"
        assert config["config_cache_ttl"] == 15.0
        assert config["fail_closed"] is True
        assert config["enable_control_plane"] is True

    def test_config_file_with_flag_precedence(self, runner, tmp_path):
        path = tmp_path / "agent.yaml"
        path.write_text(
            "agent:\n"
            "  uuid: agent-from-file\n"
            "  metrics_reporting_interval: 10\n"
            "broker:\n"
            "  url: mqtt://file-broker:1883\n"
            "consumer:\n"
            "  type: Exclusive\n"
        )

        result, config = show_config(
            runner, "--config", str(path), "--broker-url", "mqtt://flag-broker:1883"
        )

        assert result.exit_code == 0
        assert config["agent_uuid"] == "agent-from-file"
        assert config["metrics_reporting_interval"] == 10
        assert config["subscription_type"] == "exclusive"
        assert config["broker_url"] == "mqtt://flag-broker:1883"

    def test_invalid_broker_url(self, runner):
        result, _ = show_config(runner, "--broker-url", "http://not-a-broker")

        assert result.exit_code != 0
        assert "Invalid broker URL" in result.output

    def test_unknown_setting_in_file(self, runner, tmp_path):
        path = tmp_path / "agent.yaml"
        path.write_text("broker:\n  hostname: nowhere\n")

        result, _ = show_config(runner, "--config", str(path))

        assert result.exit_code != 0
        assert "Unknown broker settings" in result.output

    def test_unknown_subscription_type_rejected(self, runner):
        result, _ = show_config(runner, "--subscription-type", "broadcast")
        assert result.exit_code == 2


class TestRun:
    @pytest.fixture
    def coordinator(self, monkeypatch):
        import circulator_stream.processor as processor

        coordinator_cls = MagicMock()
        coordinator_cls.return_value.close.return_value = []
        monkeypatch.setattr(processor, "PipelineCoordinator", coordinator_cls)
        return coordinator_cls

    @pytest.fixture
    def logging_setup(self, monkeypatch):
        setup = MagicMock()
        monkeypatch.setattr("circulator_stream.cli.setup_structured_logging", setup)
        return setup

    def test_json_logs_keeps_log_file(self, runner, coordinator, logging_setup, monkeypatch, tmp_path):
        log_file = str(tmp_path / "agent.log")
        monkeypatch.setenv("LOG_FILE", log_file)

        result = runner.invoke(main, ["run", "--agent-uuid", "agent-0001", "--json-logs"])

        assert result.exit_code == 0
        logging_setup.assert_called_once()
        kwargs = logging_setup.call_args.kwargs
        assert kwargs["json_format"] is True
        assert kwargs["output_file"] == log_file
        coordinator.return_value.start.assert_called_once()
        coordinator.return_value.close.assert_called_once()

    def test_without_json_logs_logging_untouched(self, runner, coordinator, logging_setup):
        result = runner.invoke(main, ["run", "--agent-uuid", "agent-0001"])

        assert result.exit_code == 0
        logging_setup.assert_not_called()
