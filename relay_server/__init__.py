"""WebSocket relay server package.

This package provides the relay that couples the desktop app with browser viewers
over persistent WebSocket connections.

Components:
- registry: live connections keyed by id and partitioned by client role
- heartbeat: ping sweep that evicts unresponsive connections
- router: dispatch of inbound messages to direct replies or role broadcasts
- handler: per-connection lifecycle from upgrade to close
- server: aiohttp application, logging setup and command-line entry point
"""

from . import registry
from . import router
from . import heartbeat
from . import handler
from . import server

__all__ = [
    'registry',
    'router',
    'heartbeat',
    'handler',
    'server'
]
