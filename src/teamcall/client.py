"""WebSocket signaling client and interactive CLI.

``SignalingClient`` is a small async library over the event protocol,
used by the integration tests and by the CLI below. The CLI joins one
workspace as one user and lets you create, join and leave calls from the
terminal while printing every event the server pushes.
"""

import argparse
import asyncio
import logging
import signal
import sys
import uuid
from collections import deque
from collections.abc import Callable
from typing import Any, TypeVar

import websockets
from websockets.asyncio.client import ClientConnection

from teamcall.errors import InvalidEventError, ServerRejectedError, SignalingTimeoutError
from teamcall.transport.websocket_protocol import (
    ActiveCallsListEvent,
    CallCreatedEvent,
    CallErrorEvent,
    CallStatusEvent,
    ConnectedEvent,
    CreateCallEvent,
    ExistingParticipantsEvent,
    GetActiveCallsEvent,
    GetCallStatusEvent,
    GetPresenceEvent,
    JoinCallEvent,
    JoinWorkspaceEvent,
    LeaveCallEvent,
    LeaveWorkspaceEvent,
    PresenceListEvent,
    ServerEvent,
    SharePeerIdEvent,
    UserOfflineEvent,
    UserOnlineEvent,
    WireModel,
    parse_server_event,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=WireModel)


class SignalingClient:
    """Async client for the signaling server.

    Received events are kept in a bounded inbox until a ``wait_for`` call
    consumes them, so a test can send several requests and then assert on
    the replies in any order.
    """

    def __init__(
        self,
        url: str,
        on_event: Callable[[ServerEvent], None] | None = None,
        inbox_size: int = 1000,
    ) -> None:
        """Initialize the client.

        Args:
            url: WebSocket server URL (e.g., ws://localhost:3001)
            on_event: Optional callback invoked for every received event
            inbox_size: Maximum number of unconsumed events kept
        """
        self.url = url
        self.connection_id: str | None = None
        self._on_event = on_event
        self._websocket: ClientConnection | None = None
        self._reader: asyncio.Task[None] | None = None
        self._inbox: deque[ServerEvent] = deque(maxlen=inbox_size)
        self._arrived = asyncio.Condition()
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None and not self._closed

    async def __aenter__(self) -> "SignalingClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self, timeout: float = 10.0) -> str:
        """Open the connection and wait for the server greeting.

        Returns:
            The connection id assigned by the server
        """
        self._websocket = await websockets.connect(self.url, open_timeout=timeout)
        self._closed = False
        self._reader = asyncio.create_task(self._read_loop())
        greeting = await self.wait_for(ConnectedEvent, timeout=timeout)
        self.connection_id = greeting.connection_id
        logger.info("Connected", extra={"url": self.url, "connection_id": self.connection_id})
        return greeting.connection_id

    async def close(self) -> None:
        """Close the connection (safe to call more than once)."""
        if self._websocket is not None:
            await self._websocket.close()
        if self._reader is not None:
            await self._reader
            self._reader = None

    async def send(self, event: WireModel) -> None:
        """Send one client event.

        Raises:
            ConnectionError: If the client is not connected
        """
        if self._websocket is None or self._closed:
            raise ConnectionError("Client is not connected")
        await self._websocket.send(event.model_dump_json(by_alias=True, exclude_none=True))

    async def wait_for(
        self,
        event_type: type[E] | tuple[type[WireModel], ...],
        predicate: Callable[[Any], bool] | None = None,
        timeout: float = 5.0,
    ) -> E:
        """Consume the first received event of ``event_type`` matching ``predicate``.

        Raises:
            SignalingTimeoutError: If no matching event arrives in time
            ConnectionError: If the connection closes first
        """
        found: list[Any] = []

        def match() -> bool:
            for index, event in enumerate(self._inbox):
                if isinstance(event, event_type) and (predicate is None or predicate(event)):
                    found.append(event)
                    del self._inbox[index]
                    return True
            return self._closed

        async with self._arrived:
            try:
                await asyncio.wait_for(self._arrived.wait_for(match), timeout)
            except asyncio.TimeoutError as e:
                raise SignalingTimeoutError(
                    f"No {_type_name(event_type)} event within {timeout}s"
                ) from e

        if not found:
            raise ConnectionError("Connection closed while waiting for an event")
        return found[0]

    def drain(self) -> list[ServerEvent]:
        """Return and forget every unconsumed event."""
        events = list(self._inbox)
        self._inbox.clear()
        return events

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def join_workspace(self, workspace_slug: str) -> None:
        await self.send(JoinWorkspaceEvent(workspace_slug=workspace_slug))

    async def leave_workspace(self, workspace_slug: str) -> None:
        await self.send(LeaveWorkspaceEvent(workspace_slug=workspace_slug))

    async def get_active_calls(
        self, workspace_slug: str, timeout: float = 5.0
    ) -> ActiveCallsListEvent:
        await self.send(GetActiveCallsEvent(workspace_slug=workspace_slug))
        return await self.wait_for(
            ActiveCallsListEvent, lambda e: e.workspace_slug == workspace_slug, timeout
        )

    async def create_call(
        self, workspace_slug: str, user_id: str, user_name: str, timeout: float = 5.0
    ) -> CallCreatedEvent:
        """Create a call and wait for the server acknowledgement.

        The acknowledgement is matched on a generated request id, so other
        calls created in the same workspace at the same time are not
        mistaken for this one.

        Raises:
            ServerRejectedError: If the server answered with call_error
            SignalingTimeoutError: If no answer arrives within ``timeout``
        """
        request_id = uuid.uuid4().hex[:12]
        await self.send(
            CreateCallEvent(
                workspace_slug=workspace_slug,
                user_id=user_id,
                user_name=user_name,
                request_id=request_id,
            )
        )
        reply = await self.wait_for(
            (CallCreatedEvent, CallErrorEvent),
            lambda e: e.request_id == request_id,
            timeout,
        )
        if isinstance(reply, CallErrorEvent):
            raise ServerRejectedError(reply.code, reply.message, reply.call_id)
        return reply

    async def join_call(
        self,
        call_id: str,
        workspace_slug: str,
        user_id: str,
        user_name: str,
        peer_id: str | None = None,
        timeout: float = 5.0,
    ) -> ExistingParticipantsEvent:
        """Join a call and wait for the roster replay.

        Raises:
            ServerRejectedError: If the server answered with call_error
            SignalingTimeoutError: If no answer arrives within ``timeout``
        """
        request_id = uuid.uuid4().hex[:12]
        await self.send(
            JoinCallEvent(
                call_id=call_id,
                workspace_slug=workspace_slug,
                user_id=user_id,
                user_name=user_name,
                peer_id=peer_id,
                request_id=request_id,
            )
        )
        reply = await self.wait_for(
            (ExistingParticipantsEvent, CallErrorEvent),
            lambda e: e.request_id == request_id,
            timeout,
        )
        if isinstance(reply, CallErrorEvent):
            raise ServerRejectedError(reply.code, reply.message, reply.call_id)
        return reply

    async def share_peer_id(self, call_id: str, peer_id: str) -> None:
        await self.send(SharePeerIdEvent(call_id=call_id, peer_id=peer_id))

    async def leave_call(self, call_id: str) -> None:
        await self.send(LeaveCallEvent(call_id=call_id))

    async def get_call_status(self, workspace_slug: str, timeout: float = 5.0) -> CallStatusEvent:
        await self.send(GetCallStatusEvent(workspace_slug=workspace_slug))
        return await self.wait_for(
            CallStatusEvent, lambda e: e.workspace_slug == workspace_slug, timeout
        )

    async def user_online(
        self, workspace_slug: str, user_id: str, user_name: str | None = None
    ) -> None:
        await self.send(
            UserOnlineEvent(workspace_slug=workspace_slug, user_id=user_id, user_name=user_name)
        )

    async def user_offline(self, workspace_slug: str, user_id: str) -> None:
        await self.send(UserOfflineEvent(workspace_slug=workspace_slug, user_id=user_id))

    async def get_presence(self, workspace_slug: str, timeout: float = 5.0) -> PresenceListEvent:
        await self.send(GetPresenceEvent(workspace_slug=workspace_slug))
        return await self.wait_for(
            PresenceListEvent, lambda e: e.workspace_slug == workspace_slug, timeout
        )

    async def _read_loop(self) -> None:
        assert self._websocket is not None
        try:
            async for message in self._websocket:
                try:
                    event = parse_server_event(message)
                except InvalidEventError as e:
                    logger.warning("Dropping unrecognized server event", extra={"error": str(e)})
                    continue

                if self._on_event is not None:
                    self._on_event(event)
                async with self._arrived:
                    self._inbox.append(event)
                    self._arrived.notify_all()
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by server")
        finally:
            async with self._arrived:
                self._closed = True
                self._arrived.notify_all()


def _type_name(event_type: type | tuple[type, ...]) -> str:
    if isinstance(event_type, tuple):
        return "/".join(t.__name__ for t in event_type)
    return event_type.__name__


HELP_TEXT = """
Commands:
  /calls          - List active calls in the workspace
  /create         - Create a call and join it
  /join CALL_ID   - Join an existing call
  /leave          - Leave the current call
  /peer TOKEN     - Share your media peer token with the call
  /status         - Show who is in which call
  /presence       - Show online users
  /quit           - Exit client
  /help           - Show this help
"""


class CLIClient:
    """Interactive terminal client for one user in one workspace."""

    def __init__(
        self,
        server_url: str,
        workspace_slug: str,
        user_id: str,
        user_name: str,
        verbose: bool = False,
    ) -> None:
        self.server_url = server_url
        self.workspace_slug = workspace_slug
        self.user_id = user_id
        self.user_name = user_name
        self.call_id: str | None = None
        self.running = True
        self.client = SignalingClient(server_url, on_event=self.handle_event)

        level = logging.DEBUG if verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    def handle_event(self, event: ServerEvent) -> None:
        """Print a pushed event in a readable form."""
        match event.type:
            case "connected":
                print(f"\nConnected as {event.connection_id}")
            case "active_calls_list":
                if not event.calls:
                    print("\nNo active calls")
                for call in event.calls:
                    print(
                        f"\n  {call.call_id}  by {call.creator_name}"
                        f"  ({call.participant_count} in call)"
                    )
            case "call_created":
                print(f"\nCall created: {event.call_id} by {event.creator_name}")
            case "call_ended":
                print(f"\nCall ended: {event.call_id}")
                if event.call_id == self.call_id:
                    self.call_id = None
            case "existing_participants":
                names = ", ".join(p.user_name for p in event.participants) or "nobody yet"
                print(f"\nIn call {event.call_id} with: {names}")
            case "user_joined_call":
                print(f"\n{event.user_name} joined the call")
            case "peer_id_shared":
                print(f"\n{event.user_name} shared peer token {event.peer_id}")
            case "user_left_call":
                print(f"\n{event.user_id} left the call ({event.reason})")
            case "call_error":
                print(f"\nError [{event.code}]: {event.message}")
            case "presence_list" | "presence_update":
                print(f"\nOnline: {', '.join(event.online_users) or 'nobody'}")
            case "call_status":
                for p in event.participants:
                    print(f"\n  {p.user_name} in {p.call_id}")
            case _:
                logger.debug("Event received", extra={"type": event.type})

    async def run_command(self, text: str) -> None:
        """Execute one slash command."""
        command, _, argument = text[1:].partition(" ")
        command = command.lower()
        argument = argument.strip()

        if command == "quit":
            self.running = False
        elif command == "help":
            print(HELP_TEXT)
        elif command == "calls":
            await self.client.send(GetActiveCallsEvent(workspace_slug=self.workspace_slug))
        elif command == "create":
            created = await self.client.create_call(
                self.workspace_slug, self.user_id, self.user_name
            )
            await self._join(created.call_id)
        elif command == "join":
            if not argument:
                print("Usage: /join CALL_ID")
                return
            await self._join(argument)
        elif command == "leave":
            if self.call_id is None:
                print("Not in a call")
                return
            await self.client.leave_call(self.call_id)
            self.call_id = None
        elif command == "peer":
            if self.call_id is None or not argument:
                print("Usage: /peer TOKEN (while in a call)")
                return
            await self.client.share_peer_id(self.call_id, argument)
        elif command == "status":
            await self.client.send(GetCallStatusEvent(workspace_slug=self.workspace_slug))
        elif command == "presence":
            await self.client.send(GetPresenceEvent(workspace_slug=self.workspace_slug))
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        print("\n" + "=" * 60)
        print(f"Signaling CLI Client ({self.user_name} @ {self.workspace_slug})")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_running_loop()

        while self.running and self.client.is_connected:
            try:
                text = await loop.run_in_executor(None, input, "> ")
                text = text.strip()
                if not text:
                    continue
                if not text.startswith("/"):
                    print("Commands start with /, type /help")
                    continue
                await self.run_command(text)
            except EOFError:
                self.running = False
            except (ServerRejectedError, SignalingTimeoutError) as e:
                print(f"\nRequest failed: {e}")

    async def run(self) -> None:
        """Run the CLI client."""
        try:
            async with self.client:
                await self.client.join_workspace(self.workspace_slug)
                await self.client.user_online(self.workspace_slug, self.user_id, self.user_name)
                await self.client.send(GetActiveCallsEvent(workspace_slug=self.workspace_slug))

                def signal_handler() -> None:
                    self.running = False

                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, signal_handler)
                try:
                    await self.input_loop()
                finally:
                    for sig in (signal.SIGINT, signal.SIGTERM):
                        loop.remove_signal_handler(sig)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error(f"Client error: {e}")
            sys.exit(1)

    async def _join(self, call_id: str) -> None:
        await self.client.join_call(call_id, self.workspace_slug, self.user_id, self.user_name)
        self.call_id = call_id


def main() -> None:
    """Main entry point for the CLI client."""
    parser = argparse.ArgumentParser(description="Interactive call signaling client")
    parser.add_argument(
        "--url",
        type=str,
        default="ws://localhost:3001",
        help="WebSocket server URL (default: ws://localhost:3001)",
    )
    parser.add_argument("--workspace", type=str, required=True, help="Workspace slug")
    parser.add_argument("--user-id", type=str, required=True, help="Your user id")
    parser.add_argument("--user-name", type=str, default=None, help="Display name")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    cli = CLIClient(
        server_url=args.url,
        workspace_slug=args.workspace,
        user_id=args.user_id,
        user_name=args.user_name or args.user_id,
        verbose=args.verbose,
    )
    try:
        asyncio.run(cli.run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
