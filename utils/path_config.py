"""Path configuration utilities for the relay server.

This module provides centralized path management for the application directories
used at runtime. Directories are created on first access.
"""
import os
from pathlib import Path


def get_app_root():
    """Get the root directory of the application."""
    return str(Path(__file__).parent.parent.absolute())


def get_config_dir():
    """Get the configuration directory path."""
    config_dir = os.path.join(get_app_root(), "config")
    os.makedirs(config_dir, exist_ok=True)
    return config_dir


def get_logs_dir():
    """Get the logs directory path."""
    logs_dir = os.path.join(get_app_root(), "logs")
    os.makedirs(logs_dir, exist_ok=True)
    return logs_dir


def get_server_config_file():
    """Get the server configuration file path."""
    return os.path.join(get_config_dir(), "server_config.json")
