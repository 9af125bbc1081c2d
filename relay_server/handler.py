"""Per-connection handling for the relay server.

A ConnectionHandler is created for every request on the relay endpoint. It
upgrades the request to a WebSocket, registers the connection, feeds inbound
frames to the router until the socket closes, and then unregisters it.
"""
import logging
from typing import Iterable, Optional

from aiohttp import WSMsgType, web

from utils.message_utils import MalformedMessageError, parse_message
from .registry import ClientRegistry, ClientRole, Connection
from .router import MessageRouter

logger = logging.getLogger(__name__)

BANNER = "WebSocket Relay Server\n"
ROLE_PARAM = "clientType"


class ConnectionHandler:
    def __init__(
        self,
        request: web.Request,
        registry: ClientRegistry,
        router: MessageRouter,
        allowed_origins: Iterable[str] = ("*",),
        enforce_origins: bool = False,
        send_timeout: Optional[float] = None
    ):
        self.request = request
        self.registry = registry
        self.router = router
        self.allowed_origins = set(allowed_origins)
        self.enforce_origins = enforce_origins
        self.send_timeout = send_timeout
        self.connection: Optional[Connection] = None

    def origin_allowed(self) -> bool:
        """True if the request has no Origin header or the origin is allow-listed."""
        origin = self.request.headers.get("Origin")
        if origin is None or "*" in self.allowed_origins:
            return True
        return origin in self.allowed_origins

    async def run(self) -> web.StreamResponse:
        """Serve the request for its whole lifetime."""
        ws = web.WebSocketResponse(autoping=False)
        if not ws.can_prepare(self.request).ok:
            return web.Response(text=BANNER, content_type="text/plain")

        if not self.origin_allowed():
            origin = self.request.headers.get("Origin")
            if self.enforce_origins:
                logger.warning(f"Refused upgrade from disallowed origin {origin}")
                raise web.HTTPForbidden(text=f"Origin not allowed: {origin}\n")
            logger.warning(f"Upgrade from origin {origin} not in allowed origins")

        role = ClientRole.from_param(self.request.query.get(ROLE_PARAM))
        transport = self.request.transport
        await ws.prepare(self.request)

        connection = Connection(
            role=role,
            websocket=ws,
            transport=transport,
            remote=self.request.remote,
            send_timeout=self.send_timeout
        )
        self.connection = connection
        self.registry.add(connection)
        logger.info(f"{role.value.capitalize()} client connected: {connection.id} ({connection.remote})")

        try:
            await self.router.announce_connected(connection)
            await self._receive_loop(connection)
        finally:
            await self._close(connection)
        return ws

    async def _receive_loop(self, connection: Connection) -> None:
        ws = connection.websocket
        async for msg in ws:
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                await self._handle_frame(connection, msg.data)
            elif msg.type == WSMsgType.PING:
                await ws.pong(msg.data)
            elif msg.type == WSMsgType.PONG:
                connection.mark_alive()
            elif msg.type == WSMsgType.ERROR:
                logger.warning(f"WebSocket error for client {connection.id}: {ws.exception()}")
                break

    async def _handle_frame(self, connection: Connection, data) -> None:
        try:
            message = parse_message(data)
        except MalformedMessageError as e:
            logger.warning(f"Error parsing message from {connection.id}: {e}")
            await self.router.send_error(connection, "Invalid message format")
            return

        try:
            await self.router.dispatch(connection, message)
        except Exception as e:
            logger.error(f"Error handling message from {connection.id}: {e}", exc_info=True)
            await self.router.send_error(connection, "Error processing message")

    async def _close(self, connection: Connection) -> None:
        """Unregister and release the connection. Runs once per connection."""
        self.registry.remove(connection)
        logger.info(f"{connection.role.value.capitalize()} client disconnected: {connection.id}")
        await self.router.announce_disconnected(connection)
        if not connection.websocket.closed:
            await connection.websocket.close()
