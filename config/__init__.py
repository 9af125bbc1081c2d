"""Configuration package for the relay server.

Components:
- server_config.json: listen address, allowed origins and heartbeat settings

Values here are overridden by environment variables (see utils/config_loader.py).
"""
