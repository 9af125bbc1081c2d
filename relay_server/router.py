"""Message routing for the relay server.

Dispatches parsed envelopes by their ``type``: pings are answered directly,
GPT responses fan out to browsers, screenshot requests fan out to desktops,
everything else is answered with an error. The router also emits the
connection_status notifications that accompany registration changes.
"""
import asyncio
import logging
from typing import Any, Dict

from utils.event_utils import ConnectionStatus
from utils.message_utils import (
    MessageType, create_error_message, create_pong_message,
    create_status_message, encode_message, with_timestamp
)
from .registry import ClientRegistry, ClientRole, Connection

logger = logging.getLogger(__name__)

# Where each broadcast type is delivered
BROADCAST_TARGETS = {
    MessageType.GPT_RESPONSE: ClientRole.BROWSER,
    MessageType.SCREENSHOT_REQUEST: ClientRole.DESKTOP,
}


class MessageRouter:
    def __init__(self, registry: ClientRegistry):
        self.registry = registry

    async def dispatch(self, sender: Connection, message: Dict[str, Any]) -> None:
        """Route one envelope received from ``sender``."""
        raw_type = message.get("type")
        message_type = MessageType.lookup(raw_type)
        logger.debug(f"Received {raw_type} from {sender.role.value} client {sender.id}")

        if message_type is MessageType.PING:
            await sender.send_json(create_pong_message())
        elif message_type in BROADCAST_TARGETS:
            target = BROADCAST_TARGETS[message_type]
            delivered = await self.broadcast(target, message)
            logger.info(f"Relayed {raw_type} from {sender.id} to {delivered} {target.value} client(s)")
        elif message_type is MessageType.CONNECTION_STATUS:
            # Status notifications are only ever generated by the relay itself
            logger.warning(f"Rejected client-originated connection_status from {sender.id}")
            await self.send_error(sender, "connection_status messages are server-generated")
        else:
            logger.info(f"Unhandled message type: {raw_type}")
            await self.send_error(sender, f"Unhandled message type: {raw_type}")

    async def broadcast(self, role: ClientRole, message: Dict[str, Any]) -> int:
        """Send ``message`` to every open connection of ``role``.

        Delivery is best effort: closed recipients are skipped and a failed
        send never affects the other recipients.

        Returns:
            Number of connections the frame was written to.
        """
        data = encode_message(with_timestamp(message))
        recipients = [conn for conn in self.registry.snapshot(role) if conn.is_open]
        if not recipients:
            return 0

        results = await asyncio.gather(
            *(conn.send_str(data) for conn in recipients),
            return_exceptions=True
        )
        delivered = 0
        for conn, result in zip(recipients, results):
            if isinstance(result, Exception):
                logger.error(f"Broadcast to {conn.role.value} client {conn.id} raised: {result!r}")
            elif result:
                delivered += 1
        return delivered

    async def send_error(self, connection: Connection, error: str) -> bool:
        return await connection.send_json(create_error_message(error))

    async def announce_connected(self, connection: Connection) -> None:
        """Greet a newly registered connection and tell browsers about new desktops."""
        if connection.role is ClientRole.BROWSER:
            greeting = create_status_message(
                ConnectionStatus.CONNECTED,
                desktop_connected=self.registry.has_desktop()
            )
            await connection.send_json(greeting)
        else:
            await connection.send_json(create_status_message(ConnectionStatus.CONNECTED))
            await self.broadcast(ClientRole.BROWSER, create_status_message(ConnectionStatus.DESKTOP_CONNECTED))

    async def announce_disconnected(self, connection: Connection) -> None:
        """Tell browsers that a desktop went away."""
        if connection.role is ClientRole.DESKTOP:
            await self.broadcast(ClientRole.BROWSER, create_status_message(ConnectionStatus.DESKTOP_DISCONNECTED))
