"""Heartbeat monitor for the relay server.

Runs a ping sweep over every registered connection. A connection that has not
answered the previous probe by the next tick is evicted: it is removed from
the registry and its socket is aborted.
"""
import asyncio
import logging
from typing import List, Optional

from .registry import ClientRegistry, Connection

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 30


class HeartbeatMonitor:
    def __init__(self, registry: ClientRegistry, interval: float = DEFAULT_HEARTBEAT_INTERVAL):
        self.registry = registry
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> List[Connection]:
        """Run one tick. Returns the connections evicted by it."""
        evicted = []
        probed = []
        for connection in self.registry.snapshot():
            if connection.alive:
                probed.append(connection)
                continue
            if self.registry.remove(connection) is not None:
                logger.warning(f"Evicting unresponsive {connection.role.value} client {connection.id}")
                evicted.append(connection)
            connection.terminate()

        if probed:
            await asyncio.gather(*(conn.probe() for conn in probed))

        logger.debug(f"Heartbeat sweep done: {self.registry.counts()}")
        return evicted

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error during heartbeat sweep: {e}", exc_info=True)

    def start(self) -> None:
        """Start the periodic sweep on the running loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Heartbeat monitor started with interval: {self.interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.info("Heartbeat monitor stopped.")
