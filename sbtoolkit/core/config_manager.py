"""
Configuration management for sbtoolkit.

Handles loading, validation, and access to configuration settings.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from enum import Enum

import yaml
from pydantic import BaseModel, Field, ValidationError, ConfigDict

from ..servicebus.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_IDLE_DELAY,
    DEFAULT_LOCK_DURATION,
    DEFAULT_RECEIVE_WINDOW,
    DEFAULT_RENEW_AHEAD,
    DEFAULT_SESSION_ACCEPT_WINDOW,
    MAX_BATCH_SIZE,
    MIN_RENEW_DELAY,
)
from ..servicebus.drain import DrainOptions
from .logging_config import SensitiveDataFilter

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ConnectionConfig(BaseModel):
    """Broker connection settings."""
    connection_string: Optional[str] = Field(
        default=None,
        description="Service Bus connection string (Endpoint=sb://...;SharedAccessKey=...)"
    )


class ReceiveConfig(BaseModel):
    """Receive loop tunables."""
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1, le=MAX_BATCH_SIZE)
    default_window_seconds: float = Field(default=DEFAULT_RECEIVE_WINDOW, gt=0.0)
    idle_delay_seconds: float = Field(default=DEFAULT_IDLE_DELAY, ge=0.0)
    session_accept_window_seconds: float = Field(default=DEFAULT_SESSION_ACCEPT_WINDOW, gt=0.0)
    renew_ahead_seconds: float = Field(default=DEFAULT_RENEW_AHEAD, ge=0.0)
    renew_min_delay_seconds: float = Field(default=MIN_RENEW_DELAY, gt=0.0)

    def to_options(self, **overrides: Any) -> DrainOptions:
        """Build the drain loop options, with per-call overrides."""
        values: Dict[str, Any] = {
            "batch_size": self.batch_size,
            "default_window": self.default_window_seconds,
            "idle_delay": self.idle_delay_seconds,
            "session_accept_window": self.session_accept_window_seconds,
            "renew_ahead": self.renew_ahead_seconds,
            "min_renew_delay": self.renew_min_delay_seconds,
        }
        values.update(overrides)
        return DrainOptions(**values)


class SendConfig(BaseModel):
    """Dispatch defaults."""
    max_batch_size: Optional[int] = Field(default=None, ge=1)
    per_session_workers: int = Field(default=0, ge=0)


class EmulatorEntity(BaseModel):
    """Queue or subscription created in the in-memory broker."""
    name: str
    requires_session: bool = False
    lock_duration_seconds: float = Field(default=DEFAULT_LOCK_DURATION, gt=0.0)


class EmulatorTopic(BaseModel):
    """Topic created in the in-memory broker, with its subscriptions."""
    name: str
    subscriptions: List[EmulatorEntity] = Field(default_factory=list)


class EmulatorConfig(BaseModel):
    """Topology for --emulator runs."""
    queues: List[EmulatorEntity] = Field(default_factory=list)
    topics: List[EmulatorTopic] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.WARNING
    format: str = "json"
    file: Optional[str] = None
    rotation_size: str = "10MB"
    rotation_count: int = 5
    module_levels: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-module log levels, e.g., {'sbtoolkit.servicebus.renewer': 'DEBUG'}"
    )


class ToolkitConfig(BaseModel):
    """Main sbtoolkit configuration schema."""

    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)

    receive: ReceiveConfig = Field(default_factory=ReceiveConfig)

    send: SendConfig = Field(default_factory=SendConfig)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    emulator: EmulatorConfig = Field(default_factory=EmulatorConfig)

    model_config = ConfigDict(use_enum_values=True)


class ConfigManager:
    """
    Manages sbtoolkit configuration loading and validation.

    Configuration precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables (SBTOOLKIT_*)
    3. Configuration file (YAML/JSON)
    4. Defaults
    """

    def __init__(self):
        self._config: Optional[ToolkitConfig] = None
        self._config_file: Optional[Path] = None

    def load(
        self,
        config_file: Optional[str] = None,
        cli_overrides: Optional[Dict[str, Any]] = None
    ) -> ToolkitConfig:
        """
        Load and validate configuration from multiple sources.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            cli_overrides: Dictionary of CLI argument overrides

        Returns:
            Validated ToolkitConfig instance

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        logger.debug("Loading sbtoolkit configuration")

        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = self._load_from_file(config_file)
            self._config_file = Path(config_file)
            logger.debug(f"Loaded configuration from file: {config_file}")

        env_config = self._load_from_env()
        config_dict = self._merge_configs(config_dict, env_config)
        if env_config:
            logger.debug(f"Applied {len(env_config)} environment variable overrides")

        if cli_overrides:
            config_dict = self._merge_configs(config_dict, cli_overrides)
            logger.debug(f"Applied {len(cli_overrides)} CLI argument overrides")

        try:
            self._config = ToolkitConfig(**config_dict)
            self._log_configuration()
            return self._config
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r') as f:
            if path.suffix in ['.yaml', '.yml']:
                return yaml.safe_load(f) or {}
            elif path.suffix == '.json':
                return json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        if connection_string := os.getenv("SBTOOLKIT_CONNECTION_STRING"):
            config.setdefault("connection", {})["connection_string"] = connection_string

        if log_level := os.getenv("SBTOOLKIT_LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_file := os.getenv("SBTOOLKIT_LOG_FILE"):
            config.setdefault("logging", {})["file"] = log_file

        if batch_size := os.getenv("SBTOOLKIT_BATCH_SIZE"):
            config.setdefault("receive", {})["batch_size"] = int(batch_size)
        if window := os.getenv("SBTOOLKIT_RECEIVE_WINDOW"):
            config.setdefault("receive", {})["default_window_seconds"] = float(window)

        return config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _log_configuration(self) -> None:
        """Log the loaded configuration (with the connection string redacted)."""
        if not self._config:
            return

        config_dict = self._config.model_dump()

        connection_string = config_dict["connection"].get("connection_string")
        if connection_string:
            config_dict["connection"]["connection_string"] = SensitiveDataFilter.redact(connection_string)

        logger.debug(f"Active configuration: {json.dumps(config_dict)}")

    def get_config(self) -> ToolkitConfig:
        """
        Get the loaded configuration.

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def reload(self) -> ToolkitConfig:
        """Reload configuration from the same sources."""
        config_file = str(self._config_file) if self._config_file else None
        return self.load(config_file=config_file)
