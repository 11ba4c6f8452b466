"""Base transport abstraction for client connections.

Defines the interface every transport implementation must provide so the
signaling layer can stay independent of how frames reach a client.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from teamcall.transport.websocket_protocol import ClientEvent


class ConnectionHandle(ABC):
    """One live client connection.

    The signaling layer only ever talks to clients through this interface:
    it pushes serialized events out and consumes validated events in.
    """

    @abstractmethod
    async def send_text(self, data: str) -> None:
        """Send one serialized event to the client.

        Args:
            data: JSON text of a single server event

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        pass

    @abstractmethod
    async def receive_events(self) -> AsyncIterator[ClientEvent]:
        """Receive validated events from the client.

        Yields events until the connection closes. Frames that fail
        validation are reported to the client and skipped.

        Yields:
            ClientEvent: Next inbound event

        Raises:
            ConnectionError: If the connection breaks abnormally
        """
        # Using yield to make this an async generator
        if False:
            yield

    @abstractmethod
    async def close(self, reason: str = "closed") -> None:
        """Close the connection.

        Safe to call more than once.
        """
        pass

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique connection identifier for routing and logging."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        pass


class Transport(ABC):
    """Base transport implementation.

    Manages the lifecycle of a transport server and hands out a
    ``ConnectionHandle`` for each accepted client.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        Raises:
            RuntimeError: If the transport is already running or fails to start
            OSError: If port binding fails (for network transports)
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and close all connections."""
        pass

    @abstractmethod
    async def accept_connection(self) -> ConnectionHandle:
        """Block until a new client connects.

        Raises:
            RuntimeError: If the transport is not running
        """
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        pass
