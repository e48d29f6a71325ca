"""
Tests for ConfigManager.
"""

import json
import logging

import pytest
import yaml
from pydantic import ValidationError

from sbtoolkit.core.config_manager import ConfigManager, LogLevel, ToolkitConfig
from sbtoolkit.servicebus.constants import DEFAULT_BATCH_SIZE, DEFAULT_RECEIVE_WINDOW
from sbtoolkit.servicebus.drain import DrainOptions
from sbtoolkit.servicebus.models import SettlementAction

CONNECTION_STRING = (
    "Endpoint=sb://demo.servicebus.windows.net/;"
    "SharedAccessKeyName=RootManageSharedAccessKey;SharedAccessKey=topsecretvalue"
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "SBTOOLKIT_CONNECTION_STRING",
        "SBTOOLKIT_LOG_LEVEL",
        "SBTOOLKIT_LOG_FILE",
        "SBTOOLKIT_BATCH_SIZE",
        "SBTOOLKIT_RECEIVE_WINDOW",
    ):
        monkeypatch.delenv(name, raising=False)


class TestConfigManager:
    """Test suite for ConfigManager."""

    def test_load_defaults(self):
        """Test loading default configuration."""
        config = ConfigManager().load()

        assert isinstance(config, ToolkitConfig)
        assert config.connection.connection_string is None
        assert config.receive.batch_size == DEFAULT_BATCH_SIZE
        assert config.receive.default_window_seconds == DEFAULT_RECEIVE_WINDOW
        assert config.send.per_session_workers == 0
        assert config.logging.level == LogLevel.WARNING
        assert config.emulator.queues == []

    def test_load_from_yaml_file(self, tmp_path):
        """Test loading configuration from YAML file."""
        config_file = tmp_path / "sbtoolkit.yaml"
        config_file.write_text(yaml.dump({
            "receive": {"batch_size": 25},
            "logging": {"level": "DEBUG"},
            "emulator": {
                "queues": [{"name": "orders"}, {"name": "sessions", "requires_session": True}],
                "topics": [{"name": "events", "subscriptions": [{"name": "audit"}]}],
            },
        }))

        config = ConfigManager().load(config_file=str(config_file))

        assert config.receive.batch_size == 25
        assert config.logging.level == LogLevel.DEBUG
        assert [q.name for q in config.emulator.queues] == ["orders", "sessions"]
        assert config.emulator.queues[1].requires_session is True
        assert config.emulator.topics[0].subscriptions[0].name == "audit"

    def test_load_from_json_file(self, tmp_path):
        """Test loading configuration from JSON file."""
        config_file = tmp_path / "sbtoolkit.json"
        config_file.write_text(json.dumps({"send": {"per_session_workers": 4, "max_batch_size": 2048}}))

        config = ConfigManager().load(config_file=str(config_file))

        assert config.send.per_session_workers == 4
        assert config.send.max_batch_size == 2048

    def test_empty_yaml_file(self, tmp_path):
        config_file = tmp_path / "empty.yml"
        config_file.write_text("")
        config = ConfigManager().load(config_file=str(config_file))
        assert config.receive.batch_size == DEFAULT_BATCH_SIZE

    def test_load_from_env_variables(self, monkeypatch):
        """Test loading configuration from environment variables."""
        monkeypatch.setenv("SBTOOLKIT_CONNECTION_STRING", CONNECTION_STRING)
        monkeypatch.setenv("SBTOOLKIT_LOG_LEVEL", "info")
        monkeypatch.setenv("SBTOOLKIT_BATCH_SIZE", "7")
        monkeypatch.setenv("SBTOOLKIT_RECEIVE_WINDOW", "2.5")

        config = ConfigManager().load()

        assert config.connection.connection_string == CONNECTION_STRING
        assert config.logging.level == LogLevel.INFO
        assert config.receive.batch_size == 7
        assert config.receive.default_window_seconds == 2.5

    def test_configuration_precedence(self, tmp_path, monkeypatch):
        """Test configuration precedence: CLI > ENV > FILE > DEFAULTS."""
        config_file = tmp_path / "sbtoolkit.yaml"
        config_file.write_text(yaml.dump({
            "receive": {"batch_size": 11, "default_window_seconds": 9.0},
            "logging": {"level": "ERROR"},
        }))
        monkeypatch.setenv("SBTOOLKIT_BATCH_SIZE", "22")
        monkeypatch.setenv("SBTOOLKIT_LOG_LEVEL", "INFO")

        config = ConfigManager().load(
            config_file=str(config_file),
            cli_overrides={"logging": {"level": "DEBUG"}},
        )

        assert config.receive.batch_size == 22
        assert config.receive.default_window_seconds == 9.0
        assert config.logging.level == LogLevel.DEBUG

    def test_invalid_batch_size(self):
        with pytest.raises(ValidationError):
            ConfigManager().load(cli_overrides={"receive": {"batch_size": 0}})

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            ConfigManager().load(cli_overrides={"logging": {"level": "LOUD"}})

    def test_file_not_found(self):
        """Test that missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            ConfigManager().load(config_file="/nonexistent/sbtoolkit.yaml")

    def test_unsupported_file_format(self, tmp_path):
        """Test that unsupported file format raises ValueError."""
        config_file = tmp_path / "sbtoolkit.txt"
        config_file.write_text("batch_size=3")

        with pytest.raises(ValueError) as exc_info:
            ConfigManager().load(config_file=str(config_file))

        assert "Unsupported config file format" in str(exc_info.value)

    def test_get_config_before_load(self):
        with pytest.raises(RuntimeError):
            ConfigManager().get_config()

    def test_reload_rereads_file(self, tmp_path):
        config_file = tmp_path / "sbtoolkit.yaml"
        config_file.write_text(yaml.dump({"receive": {"batch_size": 3}}))
        manager = ConfigManager()
        manager.load(config_file=str(config_file))

        config_file.write_text(yaml.dump({"receive": {"batch_size": 4}}))
        config = manager.reload()

        assert config.receive.batch_size == 4
        assert manager.get_config() is config

    def test_connection_string_redacted_in_log(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="sbtoolkit.core.config_manager"):
            ConfigManager().load(cli_overrides={"connection": {"connection_string": CONNECTION_STRING}})

        assert "Active configuration" in caplog.text
        assert "topsecretvalue" not in caplog.text
        assert "SharedAccessKey=***REDACTED***" in caplog.text


class TestReceiveConfig:
    """Tests for building drain options from configuration."""

    def test_to_options(self):
        config = ConfigManager().load(cli_overrides={
            "receive": {"batch_size": 5, "idle_delay_seconds": 0.5, "renew_ahead_seconds": 3.0}
        })

        options = config.receive.to_options()

        assert isinstance(options, DrainOptions)
        assert options.batch_size == 5
        assert options.idle_delay == 0.5
        assert options.renew_ahead == 3.0
        assert options.default_window == DEFAULT_RECEIVE_WINDOW

    def test_to_options_overrides(self):
        config = ConfigManager().load()
        options = config.receive.to_options(batch_size=2, settle_action=SettlementAction.ABANDON)
        assert options.batch_size == 2
        assert options.settle_action == SettlementAction.ABANDON
