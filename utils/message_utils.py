"""Utilities for creating and parsing relay wire messages."""

import enum
import json
from typing import Dict, Any, Optional, Union
from datetime import datetime, timezone

from .event_utils import ConnectionStatus


class MalformedMessageError(ValueError):
    """Raised when an inbound frame cannot be read as a message envelope."""


# Define standard message types used across desktop/browser clients and the relay
class MessageType(enum.Enum):
    """
    Enumerates the ``type`` values carried by relay messages.
    Every frame on the wire is a JSON object with one of these types.
    """
    # Application-level keepalive (distinct from transport ping frames)
    PING = "ping"
    PONG = "pong"

    # Server -> Client
    ERROR = "error"
    CONNECTION_STATUS = "connection_status"

    # Desktop -> Browsers
    GPT_RESPONSE = "gpt_response"

    # Browser -> Desktops
    SCREENSHOT_REQUEST = "screenshot_request"

    @classmethod
    def lookup(cls, value: Any) -> Optional["MessageType"]:
        """Return the member for ``value`` or None when it is not a known type."""
        try:
            return cls(value)
        except ValueError:
            return None


def utc_timestamp() -> str:
    """ISO 8601 timestamp in UTC, as used in every envelope."""
    return datetime.now(timezone.utc).isoformat()


def create_socket_message(message_type: Union[MessageType, str], **fields: Any) -> Dict[str, Any]:
    """
    Creates a message envelope.

    Args:
        message_type: The type of the message (MessageType or raw string).
        **fields: Type-specific payload fields (``data``, ``status``, ``error``...).

    Returns:
        A dictionary with ``type``, the payload fields and a ``timestamp``.
    """
    type_value = message_type.value if isinstance(message_type, MessageType) else message_type
    message = {"type": type_value}
    message.update(fields)
    message.setdefault("timestamp", utc_timestamp())
    return message


def with_timestamp(message: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``message`` with a server timestamp added when it carries none."""
    stamped = dict(message)
    if not stamped.get("timestamp"):
        stamped["timestamp"] = utc_timestamp()
    return stamped


def encode_message(message: Dict[str, Any]) -> str:
    return json.dumps(message)


def parse_message(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    Parse one inbound frame into a message envelope.

    Raises:
        MalformedMessageError: if the frame is not UTF-8 JSON or not a JSON object.
    """
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        message = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedMessageError(f"Unparseable frame: {e}") from e

    if not isinstance(message, dict):
        raise MalformedMessageError(f"Expected a JSON object, got {type(message).__name__}")
    return message


### Message Utility functions

def create_pong_message() -> Dict[str, Any]:
    """Creates the reply to an application-level ping."""
    return create_socket_message(MessageType.PONG)


def create_error_message(error: str) -> Dict[str, Any]:
    """Creates an error message addressed to a single client."""
    return create_socket_message(MessageType.ERROR, error=error)


def create_status_message(status: ConnectionStatus, desktop_connected: Optional[bool] = None) -> Dict[str, Any]:
    """Creates a connection_status message.

    ``desktopConnected`` is only included for browser-facing greetings.
    """
    fields: Dict[str, Any] = {"status": status.value}
    if desktop_connected is not None:
        fields["desktopConnected"] = desktop_connected
    return create_socket_message(MessageType.CONNECTION_STATUS, **fields)
