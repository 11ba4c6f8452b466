"""Unit tests for the WebSocket transport implementation.

Tests the connection handle against a mocked websocket, and the transport
server lifecycle on a real local port.
"""

import json
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import websockets
from websockets.protocol import State

from teamcall.transport.websocket_protocol import GetPresenceEvent, LeaveCallEvent
from teamcall.transport.websocket_transport import (
    CLOSE_TRY_AGAIN_LATER,
    WebSocketConnection,
    WebSocketTransport,
)


class TestWebSocketConnection:
    """Test the WebSocket connection handle."""

    @pytest.fixture
    def mock_websocket(self) -> MagicMock:
        """Create mock WebSocket connection."""
        ws = MagicMock()
        ws.state = State.OPEN
        ws.remote_address = ("127.0.0.1", 12345)
        ws.send = AsyncMock()
        ws.close = AsyncMock()
        return ws

    def _feed(self, mock_websocket: MagicMock, messages: list[str | bytes]) -> None:
        async def mock_iter() -> AsyncGenerator[str | bytes]:
            for msg in messages:
                yield msg

        mock_websocket.__aiter__ = lambda self: mock_iter()

    def test_initialization(self, mock_websocket: MagicMock) -> None:
        connection = WebSocketConnection(mock_websocket, "ws-test")

        assert connection.connection_id == "ws-test"
        assert connection.is_connected is True

    @pytest.mark.asyncio
    async def test_send_text(self, mock_websocket: MagicMock) -> None:
        connection = WebSocketConnection(mock_websocket, "ws-test")

        await connection.send_text('{"type": "connected"}')

        mock_websocket.send.assert_called_once_with('{"type": "connected"}')

    @pytest.mark.asyncio
    async def test_send_when_closed(self, mock_websocket: MagicMock) -> None:
        mock_websocket.state = State.CLOSED
        connection = WebSocketConnection(mock_websocket, "ws-test")

        with pytest.raises(ConnectionError, match="connection is closed"):
            await connection.send_text("{}")

    @pytest.mark.asyncio
    async def test_send_after_peer_closed(self, mock_websocket: MagicMock) -> None:
        mock_websocket.send.side_effect = websockets.exceptions.ConnectionClosedOK(None, None)
        connection = WebSocketConnection(mock_websocket, "ws-test")

        with pytest.raises(ConnectionError):
            await connection.send_text("{}")
        assert connection.is_connected is False

    @pytest.mark.asyncio
    async def test_receive_events(self, mock_websocket: MagicMock) -> None:
        self._feed(
            mock_websocket,
            [
                json.dumps({"type": "get_presence", "workspaceSlug": "acme"}),
                json.dumps({"type": "leave_call", "callId": "abc"}),
            ],
        )
        connection = WebSocketConnection(mock_websocket, "ws-test")

        events = [event async for event in connection.receive_events()]

        assert isinstance(events[0], GetPresenceEvent)
        assert isinstance(events[1], LeaveCallEvent)
        assert connection.is_connected is False

    @pytest.mark.asyncio
    async def test_invalid_frames_are_reported_and_skipped(
        self, mock_websocket: MagicMock
    ) -> None:
        self._feed(
            mock_websocket,
            [
                "{broken",
                b"\x00\x01",
                json.dumps({"type": "leave_call", "callId": "abc"}),
            ],
        )
        connection = WebSocketConnection(mock_websocket, "ws-test")

        events = [event async for event in connection.receive_events()]

        assert len(events) == 1
        assert mock_websocket.send.call_count == 2
        for call in mock_websocket.send.call_args_list:
            error = json.loads(call.args[0])
            assert error["type"] == "call_error"
            assert error["code"] == "INVALID_EVENT"

    @pytest.mark.asyncio
    async def test_binary_frame_is_reported(self, mock_websocket: MagicMock) -> None:
        self._feed(mock_websocket, [b"\x00\x01"])
        connection = WebSocketConnection(mock_websocket, "ws-test")

        events = [event async for event in connection.receive_events()]

        assert events == []
        error = json.loads(mock_websocket.send.call_args[0][0])
        assert error["code"] == "INVALID_EVENT"
        assert "binary" in error["message"]

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, mock_websocket: MagicMock) -> None:
        connection = WebSocketConnection(mock_websocket, "ws-test")

        await connection.close(reason="bye")
        await connection.close(reason="bye")

        mock_websocket.close.assert_called_once_with(reason="bye")
        assert connection.is_connected is False


class TestWebSocketTransport:
    """Test the transport server lifecycle."""

    def test_initial_state(self) -> None:
        transport = WebSocketTransport(host="127.0.0.1", port=0)

        assert transport.transport_type == "websocket"
        assert transport.is_running is False
        assert transport.connection_count == 0

    @pytest.mark.asyncio
    async def test_accept_requires_running(self) -> None:
        transport = WebSocketTransport(host="127.0.0.1", port=0)

        with pytest.raises(RuntimeError, match="not running"):
            await transport.accept_connection()

    @pytest.mark.asyncio
    async def test_start_accept_stop(self) -> None:
        transport = WebSocketTransport(host="127.0.0.1", port=0, ping_interval_s=None)
        await transport.start()
        try:
            assert transport.is_running is True
            assert transport.bound_port > 0

            async with websockets.connect(f"ws://127.0.0.1:{transport.bound_port}"):
                connection = await transport.accept_connection()
                assert connection.connection_id.startswith("ws-")
                assert connection.is_connected is True
                assert transport.connection_count == 1

                with pytest.raises(RuntimeError, match="already running"):
                    await transport.start()
        finally:
            await transport.stop()

        assert transport.is_running is False

    @pytest.mark.asyncio
    async def test_connections_beyond_capacity_are_refused(self) -> None:
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=1)
        await transport.start()
        try:
            url = f"ws://127.0.0.1:{transport.bound_port}"
            async with websockets.connect(url):
                await transport.accept_connection()

                async with websockets.connect(url) as rejected:
                    with pytest.raises(websockets.exceptions.ConnectionClosed):
                        await rejected.recv()
                    assert rejected.close_code == CLOSE_TRY_AGAIN_LATER
        finally:
            await transport.stop()
