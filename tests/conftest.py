"""Test configuration and fixtures for the relay server tests."""
import os
import sys
import json
import asyncio
import pytest
import pytest_asyncio
import aiohttp
from aiohttp import web
from typing import Any, Dict, List, Optional, Tuple

# Add application root to Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from utils.config_loader import ConfigManager
from relay_server.registry import ClientRegistry, ClientRole, Connection
from relay_server.router import MessageRouter
from relay_server.server import create_app

# Timeout for socket operations
SOCKET_TIMEOUT = 1.0


class FakeWebSocket:
    """Stands in for an aiohttp WebSocketResponse in unit tests.

    ``stall`` makes every write hang like a peer that stopped reading.
    ``yield_on_send`` suspends mid-write so concurrent writers can interleave,
    recording ("begin", data) and ("end", data) around the suspension.
    """

    def __init__(self, fail_with: Optional[Exception] = None, stall: bool = False, yield_on_send: bool = False):
        self.closed = False
        self.sent: List[str] = []
        self.events: List[Tuple[str, str]] = []
        self.pings = 0
        self.fail_with = fail_with
        self.stall = stall
        self.yield_on_send = yield_on_send
        self.close_started = False
        self.close_gate: Optional[asyncio.Event] = None

    async def _write(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        if self.stall:
            await asyncio.Event().wait()

    async def send_str(self, data: str) -> None:
        await self._write()
        if self.yield_on_send:
            self.events.append(("begin", data))
            await asyncio.sleep(0)
            self.events.append(("end", data))
        self.sent.append(data)

    async def ping(self, message: bytes = b"") -> None:
        await self._write()
        self.pings += 1

    async def close(self, code: int = 1000, message: bytes = b"") -> bool:
        self.close_started = True
        if self.close_gate is not None:
            await self.close_gate.wait()
        await self._write()
        self.closed = True
        return True

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [json.loads(data) for data in self.sent]


class FakeTransport:
    def __init__(self):
        self.aborted = False

    def is_closing(self) -> bool:
        return self.aborted

    def abort(self) -> None:
        self.aborted = True


@pytest.fixture
def registry():
    return ClientRegistry()


@pytest.fixture
def router(registry):
    return MessageRouter(registry)


@pytest.fixture
def make_connection(registry):
    """Factory for registered connections backed by fake sockets."""
    def _make(
        role: ClientRole = ClientRole.BROWSER,
        register: bool = True,
        send_timeout: Optional[float] = None,
        **ws_kwargs
    ) -> Connection:
        connection = Connection(
            role=role,
            websocket=FakeWebSocket(**ws_kwargs),
            transport=FakeTransport(),
            send_timeout=send_timeout
        )
        if register:
            registry.add(connection)
        return connection
    return _make


@pytest.fixture
def test_config(tmp_path):
    """Provide test configuration isolated from the environment and config dir."""
    config = ConfigManager(config_file=str(tmp_path / "server_config.json"), load_env=False)
    config.set('server', 'host', '127.0.0.1')
    config.set('server', 'allowed_origins', ['http://localhost:5173'])
    config.set('heartbeat', 'interval', 30)
    config.set('logging', 'level', 'DEBUG')
    return config


@pytest_asyncio.fixture
async def server_app(test_config):
    """Provide a running relay application and its base URL."""
    app = create_app(test_config)
    host = test_config.get('server', 'host')
    runner = web.AppRunner(app)
    try:
        await runner.setup()
        site = web.TCPSite(runner, host, 0)
        await site.start()
        port = runner.addresses[0][1]
        yield app, f"http://{host}:{port}"
    finally:
        await runner.cleanup()


@pytest_asyncio.fixture
async def client_session():
    """Provide an aiohttp client session."""
    session = aiohttp.ClientSession()
    yield session
    await session.close()


@pytest.fixture
def connect(server_app, client_session):
    """Open a WebSocket to the relay and wait for its greeting.

    Returns the socket and the greeting message.
    """
    app, server_url = server_app

    async def _connect(client_type: Optional[str] = "browser", **kwargs):
        url = server_url if client_type is None else f"{server_url}/?clientType={client_type}"
        ws = await asyncio.wait_for(client_session.ws_connect(url, **kwargs), timeout=SOCKET_TIMEOUT)
        greeting = await receive_json(ws)
        return ws, greeting

    return _connect


async def receive_json(ws, timeout: float = SOCKET_TIMEOUT) -> Dict[str, Any]:
    """Next text frame from ``ws`` decoded as JSON."""
    return await ws.receive_json(timeout=timeout)


async def assert_no_message(ws, timeout: float = 0.2) -> None:
    with pytest.raises(asyncio.TimeoutError):
        await ws.receive(timeout=timeout)
