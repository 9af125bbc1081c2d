#!/usr/bin/env python3
"""Configuration loader for the relay server.

This module provides the configuration management used by the relay server.
It handles loading and merging configuration from multiple sources, with support
for default values and runtime updates.

Sources, lowest to highest precedence:
- Built-in defaults
- ``config/server_config.json`` (optional)
- Environment variables, including a ``.env`` file read with python-dotenv
"""
import os
import json
import copy
import logging
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .path_config import get_server_config_file

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a configuration value is missing or invalid."""


DEFAULT_CONFIG: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "file": None
    },
    "server": {
        "host": "0.0.0.0",
        "port": 3030,
        "allowed_origins": ["http://localhost:5173", "https://gpt-viewer.example.com"],
        "enforce_origins": False,
        "send_timeout": 5.0
    },
    "heartbeat": {
        "interval": 30
    }
}


def parse_origins(value: str) -> List[str]:
    """Split a comma separated origin list, dropping blanks."""
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# env var -> (section, key, parser)
ENV_OVERRIDES = {
    "HOST": ("server", "host", str),
    "PORT": ("server", "port", int),
    "ALLOWED_ORIGINS": ("server", "allowed_origins", parse_origins),
    "ENFORCE_ORIGINS": ("server", "enforce_origins", parse_bool),
    "SEND_TIMEOUT": ("server", "send_timeout", float),
    "HEARTBEAT_INTERVAL": ("heartbeat", "interval", float),
    "LOG_LEVEL": ("logging", "level", lambda v: v.upper()),
    "LOG_FILE": ("logging", "file", str),
}


class ConfigManager:
    def __init__(self, config_file: Optional[str] = None, load_env: bool = True):
        """Initialize the configuration manager.

        Args:
            config_file: JSON file to merge over the defaults. Defaults to
                ``config/server_config.json`` under the application root.
            load_env: Apply environment variable overrides (and ``.env``).
        """
        self._config: Dict[str, Any] = {}
        self._config_file = config_file or get_server_config_file()
        self._load_defaults()
        self._load_config_file()
        if load_env:
            self._load_env_overrides()
        self._validate()

    def _load_defaults(self) -> None:
        """Load default configuration values."""
        self._config = copy.deepcopy(DEFAULT_CONFIG)

    def _load_config_file(self) -> None:
        """Merge configuration from the JSON config file, if present."""
        if not os.path.exists(self._config_file):
            logger.debug(f"No config file at {self._config_file}, using defaults")
            return
        try:
            with open(self._config_file, 'r') as f:
                file_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config file {self._config_file}: {e}")
            return

        if not isinstance(file_config, dict):
            raise ConfigError(f"Config file {self._config_file} must contain a JSON object")
        self._validate_server_section(file_config.get("server"))
        self._merge_config(self._config, file_config)
        logger.debug(f"Loaded config from {self._config_file}")

    def _load_env_overrides(self) -> None:
        """Apply environment variable overrides."""
        load_dotenv()
        for env_var, (section, key, parse) in ENV_OVERRIDES.items():
            raw = os.getenv(env_var)
            if raw is None or raw == "":
                continue
            try:
                value = parse(raw)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {env_var}: {raw!r} ({e})") from e
            self.set(section, key, value)

    def _merge_config(self, base: Dict, update: Dict) -> None:
        """
        Recursively merge two configuration dictionaries.
        Args:
            base: Base configuration dictionary
            update: Dictionary with updates to merge
        """
        for key, value in update.items():
            if (
                key in base and
                isinstance(base[key], dict) and
                isinstance(value, dict)
            ):
                self._merge_config(base[key], value)
            else:
                base[key] = value

    def _validate_server_section(self, server: Any) -> None:
        """Validate a server section read from the config file."""
        if server is None:
            return
        required = {"host", "port"}
        if not isinstance(server, dict) or not all(k in server for k in required):
            raise ConfigError(f"Missing required server config keys: {required}")
        if not isinstance(server["port"], int):
            raise ConfigError("Server port must be an integer")

    def _validate(self) -> None:
        """Validate the merged configuration."""
        port = self.get("server", "port")
        if not isinstance(port, int) or not (0 <= port <= 65535):
            raise ConfigError(f"Server port must be an integer between 0 and 65535, got {port!r}")

        interval = self.get("heartbeat", "interval")
        if not isinstance(interval, (int, float)) or interval <= 0:
            raise ConfigError(f"Heartbeat interval must be a positive number, got {interval!r}")

        send_timeout = self.get("server", "send_timeout")
        if not isinstance(send_timeout, (int, float)) or send_timeout <= 0:
            raise ConfigError(f"Send timeout must be a positive number, got {send_timeout!r}")

        origins = self.get("server", "allowed_origins")
        if not isinstance(origins, list):
            raise ConfigError("server.allowed_origins must be a list")

        level = self.get("logging", "level")
        if logging.getLevelName(str(level).upper()) == f"Level {str(level).upper()}":
            raise ConfigError(f"Unknown log level: {level!r}")

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.
        Args:
            section: Configuration section
            key: Configuration key
            default: Default value if not found
        Returns:
            Configuration value or default
        """
        try:
            return self._config[section][key]
        except KeyError:
            return default

    def set(self, section: str, key: str, value: Any) -> None:
        """
        Set a configuration value.
        Args:
            section: Configuration section
            key: Configuration key
            value: Value to set
        """
        if section not in self._config:
            self._config[section] = {}
        self._config[section][key] = value

    @property
    def config(self) -> Dict[str, Any]:
        """Get a copy of the complete configuration dictionary."""
        return copy.deepcopy(self._config)
