#!/usr/bin/env python3
"""GPT Relay WebSocket Server

This module implements the aiohttp server that relays messages between the desktop
app (which captures screenshots and produces GPT responses) and browser viewers.
It owns the listen socket and wires each accepted connection to a handler that
shares one registry, router and heartbeat monitor per application.

Key Features:
- Role selection via the ``clientType`` query parameter (desktop or browser)
- GPT responses fanned out to browsers, screenshot requests to desktops
- Desktop connect/disconnect notifications for browsers
- Ping sweep that evicts half-open connections
- Plain-text banner and JSON status endpoint for HTTP requests
"""
import os
import sys
from pathlib import Path
import logging
import argparse
import asyncio
from typing import List, Optional

from aiohttp import web, WSCloseCode

# Ensure the project root is in the Python path when run as a script
project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.append(str(project_root))

from utils.config_loader import ConfigManager, ConfigError
from utils.path_config import get_logs_dir
from relay_server.handler import ConnectionHandler
from relay_server.heartbeat import HeartbeatMonitor
from relay_server.registry import ClientRegistry, Connection
from relay_server.router import MessageRouter

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", ConfigManager)
REGISTRY_KEY = web.AppKey("registry", ClientRegistry)
ROUTER_KEY = web.AppKey("router", MessageRouter)
HEARTBEAT_KEY = web.AppKey("heartbeat", HeartbeatMonitor)


# --- Logging ---

def setup_logging(level: str = "INFO", fmt: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Configure the root logger with a stream handler and an optional file handler."""
    formatter = logging.Formatter(fmt or "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers = []

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        if not os.path.isabs(log_file):
            log_file = os.path.join(get_logs_dir(), log_file)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


# --- Request Handlers ---

def send_timeout_for(app: web.Application) -> float:
    """Per-write timeout for new connections.

    At most half the heartbeat interval, so a handler blocked on a slow
    recipient still reads its own pong before the next sweep.
    """
    configured = app[CONFIG_KEY].get('server', 'send_timeout', default=5.0)
    return min(configured, app[HEARTBEAT_KEY].interval / 2)


async def relay_endpoint(request: web.Request) -> web.StreamResponse:
    """Hand the request to a fresh ConnectionHandler."""
    app = request.app
    config = app[CONFIG_KEY]
    handler = ConnectionHandler(
        request,
        app[REGISTRY_KEY],
        app[ROUTER_KEY],
        allowed_origins=config.get('server', 'allowed_origins', default=["*"]),
        enforce_origins=config.get('server', 'enforce_origins', default=False),
        send_timeout=send_timeout_for(app)
    )
    return await handler.run()


async def status_endpoint(request: web.Request) -> web.Response:
    """Report connected client counts."""
    app = request.app
    registry = app[REGISTRY_KEY]
    return web.json_response({
        "clients": registry.counts(),
        "desktopConnected": registry.has_desktop(),
        "heartbeatInterval": app[HEARTBEAT_KEY].interval
    })


# --- Application Lifecycle ---

async def _start_heartbeat(app: web.Application) -> None:
    app[HEARTBEAT_KEY].start()


async def _close_connection(connection: Connection) -> None:
    try:
        await asyncio.wait_for(
            connection.websocket.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown"),
            timeout=connection.send_timeout
        )
    except asyncio.TimeoutError:
        logger.warning(f"Closing client {connection.id} timed out, terminating")
        connection.terminate()


async def _close_connections(app: web.Application) -> None:
    """Close every open WebSocket concurrently so handlers can finish."""
    connections = [c for c in app[REGISTRY_KEY].snapshot() if c.is_open]
    results = await asyncio.gather(*(_close_connection(c) for c in connections), return_exceptions=True)
    for connection, result in zip(connections, results):
        if isinstance(result, Exception):
            logger.warning(f"Error closing client {connection.id}: {result}")


async def _stop_heartbeat(app: web.Application) -> None:
    await app[HEARTBEAT_KEY].stop()


def create_app(config: Optional[ConfigManager] = None) -> web.Application:
    """Build the relay application with its own registry, router and heartbeat monitor."""
    config = config or ConfigManager()
    registry = ClientRegistry()

    app = web.Application()
    app[CONFIG_KEY] = config
    app[REGISTRY_KEY] = registry
    app[ROUTER_KEY] = MessageRouter(registry)
    app[HEARTBEAT_KEY] = HeartbeatMonitor(registry, interval=config.get('heartbeat', 'interval', default=30))

    app.router.add_get('/', relay_endpoint)
    app.router.add_get('/status', status_endpoint)

    app.on_startup.append(_start_heartbeat)
    app.on_shutdown.append(_close_connections)
    app.on_cleanup.append(_stop_heartbeat)
    return app


async def start_server(host: str, port: int, config: ConfigManager):
    """Starts the relay server and blocks until cancelled."""
    app = create_app(config)
    runner = web.AppRunner(app)
    await runner.setup()
    try:
        site = web.TCPSite(runner, host, port)
        logger.info(f"WebSocket relay server starting on {host}:{port}")
        await site.start()
        logger.info(f"WebSocket relay server running on ws://{host}:{port}")
        # Keep server running
        await asyncio.Event().wait()
    finally:
        logger.info("Stopping WebSocket relay server...")
        await runner.cleanup()


# --- Argument Parsing ---

def parse_args(argv: Optional[List[str]] = None):
    """Parse command-line arguments. Unset options fall back to configuration."""
    parser = argparse.ArgumentParser(description="GPT Relay WebSocket Server")
    parser.add_argument('--host', type=str, default=None,
                        help='Host IP address to bind the server to.')
    parser.add_argument('--port', type=int, default=None,
                        help='Port number to bind the server to.')
    parser.add_argument('--heartbeat-interval', type=float, default=None,
                        help='Seconds between liveness sweeps.')
    parser.add_argument('--log-level', type=str, default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level.')
    return parser.parse_args(argv)


# --- Main Execution ---

def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = ConfigManager()
    except ConfigError as e:
        setup_logging()
        logger.critical(f"Invalid configuration: {e}")
        return 1

    if args.host is not None:
        config.set('server', 'host', args.host)
    if args.port is not None:
        config.set('server', 'port', args.port)
    if args.heartbeat_interval is not None:
        config.set('heartbeat', 'interval', args.heartbeat_interval)
    if args.log_level is not None:
        config.set('logging', 'level', args.log_level)

    setup_logging(
        config.get('logging', 'level', default='INFO'),
        config.get('logging', 'format'),
        config.get('logging', 'file')
    )

    host = config.get('server', 'host')
    port = config.get('server', 'port')
    try:
        asyncio.run(start_server(host, port, config))
    except KeyboardInterrupt:
        logger.info("Server stopped by user (KeyboardInterrupt).")
    except Exception as e:
        logger.critical(f"Server encountered critical error: {e}", exc_info=True)
        return 1
    logger.info("Server shutdown complete.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
