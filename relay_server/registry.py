"""Client registry for the relay server.

Tracks every live connection by id and partitions them into the two fixed
client roles. All mutations happen under one lock so the id map and the role
sets never disagree. The registry only holds references: it never sends,
closes or otherwise touches a connection's transport.
"""
import asyncio
import enum
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Set, Tuple, Union

from utils.message_utils import encode_message, utc_timestamp
from .exceptions import DuplicateConnectionError

logger = logging.getLogger(__name__)


class ClientRole(enum.Enum):
    """The two classes of client the relay couples."""
    DESKTOP = "desktop"
    BROWSER = "browser"

    @classmethod
    def from_param(cls, value: Optional[str]) -> "ClientRole":
        """Role for a ``clientType`` parameter. Absent or unknown values are browsers."""
        if value:
            for role in cls:
                if role.value == value.strip().lower():
                    return role
        return cls.BROWSER


@dataclass(eq=False)
class Connection:
    """One WebSocket session tracked by the relay."""
    role: ClientRole
    websocket: Any  # aiohttp web.WebSocketResponse
    transport: Optional[asyncio.Transport] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    remote: Optional[str] = None
    connected_at: str = field(default_factory=utc_timestamp)
    alive: bool = True
    # Seconds a single write may wait on a peer that stopped reading
    send_timeout: Optional[float] = None
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_open(self) -> bool:
        return not self.websocket.closed

    async def _write(self, frame: Callable[[], Awaitable[None]], action: str) -> bool:
        """Run one frame write under the send lock, bounded by send_timeout.

        A peer that does not drain its socket within the timeout is terminated.
        """
        async def locked_write() -> bool:
            # Frames to one connection go out whole and in order
            async with self._send_lock:
                if not self.is_open:
                    return False
                await frame()
                return True

        try:
            return await asyncio.wait_for(locked_write(), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{action} to {self.role.value} client {self.id} timed out, terminating")
            self.terminate()
            return False
        except (ConnectionResetError, RuntimeError) as e:
            logger.warning(f"{action} to {self.role.value} client {self.id} failed: {e}")
            return False

    async def send_str(self, data: str) -> bool:
        """Write one text frame. Returns False if the frame was not written."""
        if not self.is_open:
            return False
        return await self._write(lambda: self.websocket.send_str(data), "Send")

    async def send_json(self, message: Dict[str, Any]) -> bool:
        return await self.send_str(encode_message(message))

    def mark_alive(self) -> None:
        self.alive = True

    async def probe(self) -> bool:
        """Clear the liveness flag and send a transport-level ping."""
        self.alive = False
        if not self.is_open:
            return False
        return await self._write(self.websocket.ping, "Liveness probe")

    def terminate(self) -> None:
        """Abort the underlying socket without a closing handshake."""
        if self.transport is not None and not self.transport.is_closing():
            self.transport.abort()


class ClientRegistry:
    """Live connections keyed by id, partitioned by role."""

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: Dict[str, Connection] = {}
        self._roles: Dict[ClientRole, Set[Connection]] = {role: set() for role in ClientRole}

    def add(self, connection: Connection) -> None:
        """Register a connection under its id and role.

        Raises:
            DuplicateConnectionError: if the id is already registered.
        """
        with self._lock:
            if connection.id in self._connections:
                raise DuplicateConnectionError(f"Connection {connection.id} is already registered")
            self._connections[connection.id] = connection
            self._roles[connection.role].add(connection)
        logger.debug(f"Registered {connection.role.value} client {connection.id}")

    def remove(self, connection_or_id: Union[Connection, str]) -> Optional[Connection]:
        """Unregister a connection. Removing an absent connection is a no-op.

        Returns:
            The removed connection, or None if it was not registered.
        """
        conn_id = connection_or_id.id if isinstance(connection_or_id, Connection) else connection_or_id
        with self._lock:
            connection = self._connections.pop(conn_id, None)
            if connection is not None:
                self._roles[connection.role].discard(connection)
        if connection is not None:
            logger.debug(f"Unregistered {connection.role.value} client {connection.id}")
        return connection

    def get(self, conn_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(conn_id)

    def count_of(self, role: ClientRole) -> int:
        with self._lock:
            return len(self._roles[role])

    def has_desktop(self) -> bool:
        """True if any desktop client is connected."""
        return self.count_of(ClientRole.DESKTOP) > 0

    def snapshot(self, role: Optional[ClientRole] = None) -> Tuple[Connection, ...]:
        """Stable copy of one role set, or of every connection when role is None."""
        with self._lock:
            if role is None:
                return tuple(self._connections.values())
            return tuple(self._roles[role])

    def counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {role.value: len(members) for role, members in self._roles.items()}
            counts["total"] = len(self._connections)
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, connection_or_id: Union[Connection, str]) -> bool:
        conn_id = connection_or_id.id if isinstance(connection_or_id, Connection) else connection_or_id
        with self._lock:
            return conn_id in self._connections

    def __iter__(self) -> Iterator[Connection]:
        return iter(self.snapshot())
