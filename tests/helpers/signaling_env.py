"""Wiring of an isolated signaling stack for unit tests."""

from teamcall.calls import CallStore
from teamcall.lifecycle import LifecycleReaper
from teamcall.metrics import MetricsCollector
from teamcall.presence import PresenceTracker
from teamcall.rooms import ConnectionRegistry
from teamcall.signaling import SignalingCoordinator
from teamcall.transport.websocket_protocol import (
    ClientEvent,
    CreateCallEvent,
    JoinCallEvent,
    JoinWorkspaceEvent,
)
from tests.helpers.fake_connections import FakeConnection


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SignalingEnv:
    """One server's worth of state with fake connections."""

    def __init__(self, pin_identity: bool = True, pending_call_ttl_s: float = 120.0) -> None:
        self.clock = FakeClock()
        self.registry = ConnectionRegistry()
        self.calls = CallStore(clock=self.clock)
        self.presence = PresenceTracker()
        self.metrics = MetricsCollector()
        self.coordinator = SignalingCoordinator(
            self.registry,
            self.calls,
            self.presence,
            metrics=self.metrics,
            pin_identity=pin_identity,
        )
        self.reaper = LifecycleReaper(
            self.registry,
            self.coordinator,
            pending_call_ttl_s=pending_call_ttl_s,
            metrics=self.metrics,
        )

    async def connect(self, connection_id: str, workspace: str | None = "acme") -> FakeConnection:
        """Open a connection and optionally join a workspace room."""
        connection = FakeConnection(connection_id)
        await self.coordinator.connection_opened(connection)
        if workspace is not None:
            await self.send(connection, JoinWorkspaceEvent(workspace_slug=workspace))
        connection.clear()
        return connection

    async def send(self, connection: FakeConnection, event: ClientEvent) -> None:
        await self.coordinator.handle_event(connection.connection_id, event)

    async def create_call(
        self, connection: FakeConnection, user_id: str, workspace: str = "acme"
    ) -> str:
        await self.send(
            connection,
            CreateCallEvent(
                workspace_slug=workspace,
                user_id=user_id,
                user_name=user_id.title(),
                request_id="req",
            ),
        )
        created = [f for f in connection.of_type("call_created") if f.get("requestId") == "req"]
        return created[-1]["callId"]

    async def join_call(
        self,
        connection: FakeConnection,
        call_id: str,
        user_id: str,
        workspace: str = "acme",
        peer_id: str | None = None,
        request_id: str | None = None,
    ) -> None:
        await self.send(
            connection,
            JoinCallEvent(
                call_id=call_id,
                workspace_slug=workspace,
                user_id=user_id,
                user_name=user_id.title(),
                peer_id=peer_id,
                request_id=request_id,
            ),
        )

    async def disconnect(self, connection: FakeConnection) -> None:
        """Simulate the transport dropping a connection."""
        await connection.close()
        await self.reaper.on_disconnect(connection.connection_id)
