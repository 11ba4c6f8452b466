"""Transport layer for signaling client connections.

Provides an abstraction over how frames reach a client, so the signaling
layer never touches the WebSocket library directly.
"""

from teamcall.transport.base import ConnectionHandle, Transport
from teamcall.transport.websocket_transport import (
    WebSocketConnection,
    WebSocketTransport,
)

__all__ = [
    "ConnectionHandle",
    "Transport",
    "WebSocketConnection",
    "WebSocketTransport",
]
