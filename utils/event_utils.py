import enum


class ConnectionStatus(enum.Enum):
    """
    Enumerates the ``status`` values of connection_status messages.
    Statuses signify that something *has happened* to a connection.
    """
    # Sent to a client right after it connects
    CONNECTED = "connected"  # Browser payload also carries "desktopConnected": bool

    # Broadcast to browsers when a desktop joins or leaves
    DESKTOP_CONNECTED = "desktop_connected"
    DESKTOP_DISCONNECTED = "desktop_disconnected"
