"""WebSocket transport implementation.

Serves the signaling protocol over plain WebSockets. Liveness of idle
clients is detected by the websockets library's ping/pong keepalive; a
missed pong closes the connection, which the server turns into a
disconnect cleanup.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import websockets
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from teamcall.errors import InvalidEventError
from teamcall.transport.base import ConnectionHandle, Transport
from teamcall.transport.websocket_protocol import (
    CallErrorEvent,
    ClientEvent,
    encode_server_event,
    parse_client_event,
)

logger = logging.getLogger(__name__)

# Close code for "try again later" (RFC 6455 registry)
CLOSE_TRY_AGAIN_LATER = 1013


class WebSocketConnection(ConnectionHandle):
    """WebSocket-based client connection.

    Validates inbound JSON frames into typed events and writes serialized
    server events back out.
    """

    def __init__(self, websocket: ServerConnection, connection_id: str) -> None:
        """Initialize WebSocket connection.

        Args:
            websocket: WebSocket connection
            connection_id: Unique connection identifier
        """
        self._websocket = websocket
        self._connection_id = connection_id
        self._connected = True

        logger.info(
            "WebSocket connection initialized",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        return self._connected and self._websocket.state == State.OPEN

    async def send_text(self, data: str) -> None:
        """Send one serialized event.

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        if not self.is_connected:
            raise ConnectionError("WebSocket connection is closed")

        try:
            await self._websocket.send(data)
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise ConnectionError(f"WebSocket connection closed: {e}") from e

    async def receive_events(self) -> AsyncIterator[ClientEvent]:
        """Receive validated events until the client goes away.

        Yields:
            ClientEvent: Next inbound event

        Raises:
            ConnectionError: If the connection breaks for a reason other than
                a normal or abnormal close
        """
        try:
            async for raw_message in self._websocket:
                if not isinstance(raw_message, str):
                    logger.warning(
                        "Received non-text WebSocket message, skipping",
                        extra={"connection_id": self._connection_id},
                    )
                    await self._send_error(
                        InvalidEventError("message: binary frames are not supported")
                    )
                    continue

                try:
                    event = parse_client_event(raw_message)
                except InvalidEventError as e:
                    logger.warning(
                        "Rejected invalid event",
                        extra={"connection_id": self._connection_id, "error": e.message},
                    )
                    await self._send_error(e)
                    continue

                logger.debug(
                    "Event received",
                    extra={"connection_id": self._connection_id, "type": event.type},
                )
                yield event

        except websockets.exceptions.ConnectionClosed:
            logger.info(
                "WebSocket connection closed by client",
                extra={"connection_id": self._connection_id},
            )
        except Exception as e:
            logger.error(
                "Error in receive_events",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
            raise ConnectionError(f"WebSocket receive error: {e}") from e
        finally:
            self._connected = False

    async def _send_error(self, error: InvalidEventError) -> None:
        """Report a rejected frame to the client."""
        message = CallErrorEvent(code=error.code, message=error.message)
        try:
            await self.send_text(encode_server_event(message))
        except ConnectionError as e:
            logger.debug(
                "Could not report invalid event",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )

    async def close(self, reason: str = "closed") -> None:
        """Close the WebSocket. Safe to call more than once."""
        if not self._connected:
            return

        logger.info(
            "Closing WebSocket connection",
            extra={"connection_id": self._connection_id, "reason": reason},
        )

        try:
            await self._websocket.close(reason=reason)
        except Exception as e:
            logger.warning(
                "Error during connection close",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
        finally:
            self._connected = False


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages the WebSocket server lifecycle and queues a WebSocketConnection
    for every accepted client.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        max_connections: int = 1000,
        max_message_bytes: int = 64 * 1024,
        ping_interval_s: float | None = 20.0,
        ping_timeout_s: float | None = 20.0,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port (0 picks a free port)
            max_connections: Maximum concurrent connections
            max_message_bytes: Largest accepted inbound frame
            ping_interval_s: Keepalive ping interval (None disables)
            ping_timeout_s: Time to wait for a pong before closing
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._ping_interval_s = ping_interval_s
        self._ping_timeout_s = ping_timeout_s
        self._server: Any = None  # websockets Server type
        self._running = False
        self._connection_queue: asyncio.Queue[WebSocketConnection] = asyncio.Queue()
        self._open_connections: dict[str, WebSocketConnection] = {}

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        return "websocket"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def connection_count(self) -> int:
        return len(self._open_connections)

    @property
    def bound_port(self) -> int:
        """Actual listening port (differs from the configured one when it was 0)."""
        if self._server is None:
            return self._port
        for sock in self._server.sockets:
            return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If already running or the server fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info(
            "Starting WebSocket server", extra={"host": self._host, "port": self._port}
        )

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
                ping_interval=self._ping_interval_s,
                ping_timeout=self._ping_timeout_s,
            )
            self._running = True

            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self.bound_port},
            )

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server and close open connections."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")

        self._running = False

        for connection in list(self._open_connections.values()):
            await connection.close(reason="server shutdown")

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_connection(self) -> ConnectionHandle:
        """Wait for the next client connection.

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._connection_queue.get()

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle an incoming WebSocket connection.

        Args:
            websocket: WebSocket connection
        """
        if len(self._open_connections) >= self._max_connections:
            logger.warning(
                "Rejecting connection, server at capacity",
                extra={"remote": websocket.remote_address, "limit": self._max_connections},
            )
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason="server at capacity")
            return

        connection_id = f"ws-{uuid.uuid4().hex[:12]}"
        connection = WebSocketConnection(websocket, connection_id)
        self._open_connections[connection_id] = connection

        await self._connection_queue.put(connection)

        # Keep the handler alive until the connection closes; the server's
        # consumer task reads frames from it meanwhile.
        try:
            await websocket.wait_closed()
        except Exception as e:
            logger.error(
                "Error in connection handler",
                extra={"connection_id": connection_id, "error": str(e)},
            )
        finally:
            self._open_connections.pop(connection_id, None)
            logger.info(
                "WebSocket connection closed",
                extra={"connection_id": connection_id},
            )
