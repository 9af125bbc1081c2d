"""Exceptions raised by the relay server."""


class RelayError(Exception):
    """Base class for relay server errors."""


class DuplicateConnectionError(RelayError):
    """Raised when a connection id is registered twice."""
