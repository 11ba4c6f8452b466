"""Signaling coordinator.

Receives validated client events, applies them to the call store and
presence tracker, and fans the resulting events out through the connection
registry.

Concurrency model: everything runs on one asyncio event loop. Each handler
finishes its state mutation synchronously before its first ``await`` (the
outbound sends), so no other handler can observe a half-applied change and
no locks are needed. Events from one connection are processed in order by
that connection's receive loop.

Fan-out rules:
- Workspace-wide events (``call_created``, ``call_ended``,
  ``call_participant_count_updated``, ``active_calls_list``,
  ``presence_update``) go to the workspace room.
- Call events (``user_joined_call``, ``peer_id_shared``, ``user_left_call``)
  go to the call roster, excluding the connection whose action caused them.
- Listings (``existing_participants``, ``active_calls_list`` on request,
  ``call_status``, ``presence_list``) go to the requester only.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from teamcall.calls import CallSession, CallStore, Participant
from teamcall.errors import (
    CallNotFoundError,
    IdentityMismatchError,
    NotInWorkspaceError,
    SignalingError,
)
from teamcall.metrics import MetricsCollector
from teamcall.presence import PresenceTracker
from teamcall.rooms import ConnectionRegistry
from teamcall.transport.base import ConnectionHandle
from teamcall.transport.websocket_protocol import (
    ActiveCallsListEvent,
    CallCreatedEvent,
    CallEndedEvent,
    CallErrorEvent,
    CallParticipantCountUpdatedEvent,
    CallStatusEvent,
    CallStatusParticipant,
    CallSummaryInfo,
    ClientEvent,
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
    ParticipantInfo,
    PeerIdSharedEvent,
    PresenceListEvent,
    PresenceUpdateEvent,
    PresenceUser,
    SharePeerIdEvent,
    UserJoinedCallEvent,
    UserLeftCallEvent,
    UserOfflineEvent,
    UserOnlineEvent,
)

logger = logging.getLogger(__name__)


class CallState(Enum):
    """Per-connection call state.

    State Transitions:
    - NOT_IN_CALL → JOINING (join_call accepted for processing)
    - JOINING → IN_CALL (participant added)
    - JOINING → NOT_IN_CALL (call vanished before the join applied)
    - IN_CALL → LEFT (leave_call, or switching to another call)
    - LEFT → JOINING (joining again later)
    - * → DISCONNECTED (transport closed)
    """

    NOT_IN_CALL = "not_in_call"
    JOINING = "joining"
    IN_CALL = "in_call"
    LEFT = "left"
    DISCONNECTED = "disconnected"


VALID_TRANSITIONS: dict[CallState, set[CallState]] = {
    CallState.NOT_IN_CALL: {CallState.JOINING, CallState.DISCONNECTED},
    CallState.JOINING: {CallState.IN_CALL, CallState.NOT_IN_CALL, CallState.DISCONNECTED},
    CallState.IN_CALL: {CallState.LEFT, CallState.DISCONNECTED},
    CallState.LEFT: {CallState.JOINING, CallState.DISCONNECTED},
    CallState.DISCONNECTED: set(),  # Terminal state
}


@dataclass
class ConnectionContext:
    """Signaling-side view of one connection."""

    connection_id: str
    state: CallState = CallState.NOT_IN_CALL
    call_id: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    opened_at: float = field(default_factory=time.monotonic)

    def transition(self, new_state: CallState) -> None:
        """Move to a new state.

        Raises:
            ValueError: If the transition is not allowed
        """
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state
        logger.debug(
            "Call state transition",
            extra={
                "connection_id": self.connection_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )


@dataclass(frozen=True)
class ReleaseResult:
    """What disconnect cleanup removed for one connection."""

    left_call_id: str | None = None
    discarded_call_ids: tuple[str, ...] = ()
    presence_changed: tuple[str, ...] = ()


def _participant_info(participant: Participant) -> ParticipantInfo:
    return ParticipantInfo(
        connection_id=participant.connection_id,
        user_id=participant.user_id,
        user_name=participant.user_name,
        peer_id=participant.peer_id,
        joined_at=participant.joined_at,
    )


class SignalingCoordinator:
    """Protocol engine for call signaling and presence.

    The only writer of call store and presence state; the lifecycle reaper
    reaches that state through ``release_connection`` and
    ``expire_pending_calls``.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        calls: CallStore,
        presence: PresenceTracker,
        metrics: MetricsCollector | None = None,
        pin_identity: bool = True,
    ) -> None:
        """Initialize the coordinator.

        Args:
            registry: Connection registry used for membership and delivery
            calls: Call store
            presence: Presence tracker
            metrics: Optional metrics collector
            pin_identity: Reject events whose userId differs from the first
                one the connection presented
        """
        self._registry = registry
        self._calls = calls
        self._presence = presence
        self._metrics = metrics
        self._pin_identity = pin_identity
        self._contexts: dict[str, ConnectionContext] = {}

        self._handlers = {
            "join_workspace": self._on_join_workspace,
            "leave_workspace": self._on_leave_workspace,
            "get_active_calls": self._on_get_active_calls,
            "create_call": self._on_create_call,
            "join_call": self._on_join_call,
            "share_peer_id": self._on_share_peer_id,
            "leave_call": self._on_leave_call,
            "get_call_status": self._on_get_call_status,
            "user_online": self._on_user_online,
            "user_offline": self._on_user_offline,
            "get_presence": self._on_get_presence,
        }

    def context(self, connection_id: str) -> ConnectionContext | None:
        return self._contexts.get(connection_id)

    async def connection_opened(self, connection: ConnectionHandle) -> ConnectionContext:
        """Register a new connection and greet it with its id."""
        connection_id = connection.connection_id
        self._registry.register(connection)
        ctx = self._contexts.setdefault(connection_id, ConnectionContext(connection_id))
        if self._metrics:
            self._metrics.record_connection_opened()

        await self._registry.send(connection_id, ConnectedEvent(connection_id=connection_id))
        logger.info("Connection opened", extra={"connection_id": connection_id})
        return ctx

    async def handle_event(self, connection_id: str, event: ClientEvent) -> None:
        """Process one inbound event to completion.

        Never raises: failures are reported to the requester as
        ``call_error`` (or ignored and logged for ``NotInWorkspaceError``).
        """
        ctx = self._contexts.get(connection_id)
        if ctx is None or ctx.state is CallState.DISCONNECTED:
            logger.warning(
                "Ignoring event from unknown connection",
                extra={"connection_id": connection_id, "type": event.type},
            )
            return

        failed = False
        try:
            await self._handlers[event.type](ctx, event)
        except NotInWorkspaceError as e:
            logger.warning(
                "Ignoring event for workspace not joined",
                extra={
                    "connection_id": connection_id,
                    "type": event.type,
                    "workspace": e.workspace_id,
                },
            )
        except SignalingError as e:
            failed = True
            logger.info(
                "Event rejected",
                extra={"connection_id": connection_id, "type": event.type, "code": e.code},
            )
            await self._send_error(
                connection_id, e.code, e.message, e.call_id, getattr(event, "request_id", None)
            )
        except Exception:
            failed = True
            logger.exception(
                "Unhandled error while processing event",
                extra={"connection_id": connection_id, "type": event.type},
            )
            await self._send_error(
                connection_id,
                "INTERNAL_ERROR",
                "Internal server error",
                getattr(event, "call_id", None),
                getattr(event, "request_id", None),
            )
        finally:
            self._record_event(failed)

    # ------------------------------------------------------------------
    # Workspace membership
    # ------------------------------------------------------------------

    async def _on_join_workspace(self, ctx: ConnectionContext, event: JoinWorkspaceEvent) -> None:
        if self._registry.join(ctx.connection_id, event.workspace_slug):
            logger.info(
                "Connection joined workspace",
                extra={"connection_id": ctx.connection_id, "workspace": event.workspace_slug},
            )

    async def _on_leave_workspace(
        self, ctx: ConnectionContext, event: LeaveWorkspaceEvent
    ) -> None:
        workspace_id = event.workspace_slug
        call_id = self._calls.call_for_connection(ctx.connection_id)
        if call_id is not None and self._calls.get_call(call_id).workspace_id == workspace_id:
            await self._leave_call(ctx.connection_id, call_id, reason="left")

        self._registry.leave(ctx.connection_id, workspace_id)
        if self._presence.release_connection(workspace_id, ctx.connection_id):
            await self._broadcast_presence(workspace_id)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def _on_get_active_calls(
        self, ctx: ConnectionContext, event: GetActiveCallsEvent
    ) -> None:
        self._require_member(ctx, event.workspace_slug)
        await self._registry.send(ctx.connection_id, self._active_calls(event.workspace_slug))

    async def _on_create_call(self, ctx: ConnectionContext, event: CreateCallEvent) -> None:
        workspace_id = event.workspace_slug
        self._require_member(ctx, workspace_id)
        self._bind_identity(ctx, event.user_id, event.user_name)

        call_id = self._calls.create_call(
            workspace_id,
            event.user_id,
            event.user_name,
            creator_connection_id=ctx.connection_id,
        )
        session = self._calls.get_call(call_id)
        if self._metrics:
            self._metrics.record_call_created()

        created = CallCreatedEvent(
            call_id=call_id,
            workspace_slug=workspace_id,
            creator_name=session.creator_name,
            created_at=session.created_at,
        )
        await self._registry.send(
            ctx.connection_id, created.model_copy(update={"request_id": event.request_id})
        )
        await self._registry.broadcast(workspace_id, created, exclude=ctx.connection_id)
        await self._registry.broadcast(workspace_id, self._active_calls(workspace_id))

    async def _on_join_call(self, ctx: ConnectionContext, event: JoinCallEvent) -> None:
        workspace_id = event.workspace_slug
        call_id = event.call_id
        self._require_member(ctx, workspace_id)
        self._bind_identity(ctx, event.user_id, event.user_name)

        if self._calls.get_call(call_id).workspace_id != workspace_id:
            raise CallNotFoundError(call_id)

        current = self._calls.call_for_connection(ctx.connection_id)
        if current is not None and current != call_id:
            await self._leave_call(ctx.connection_id, current, reason="switched")

        rejoining = ctx.state is CallState.IN_CALL and ctx.call_id == call_id
        if not rejoining:
            ctx.transition(CallState.JOINING)
        try:
            # The previous call's leave broadcasts may have yielded; the
            # target call can be gone by now.
            result = self._calls.add_participant(
                call_id, ctx.connection_id, event.user_id, event.user_name, event.peer_id
            )
        except CallNotFoundError:
            if not rejoining:
                ctx.transition(CallState.NOT_IN_CALL)
            raise

        if not rejoining:
            ctx.transition(CallState.IN_CALL)
            ctx.call_id = call_id
        if self._metrics and not result.rejoined:
            self._metrics.record_join()

        logger.info(
            "Participant joined call",
            extra={
                "connection_id": ctx.connection_id,
                "call_id": call_id,
                "roster_size": len(result.roster),
                "rejoined": result.rejoined,
            },
        )

        others = [p for p in result.roster if p.connection_id != ctx.connection_id]
        joined = result.participant

        await self._registry.send(
            ctx.connection_id,
            ExistingParticipantsEvent(
                call_id=call_id,
                participants=[_participant_info(p) for p in others],
                request_id=event.request_id,
            ),
        )
        await self._registry.send_many(
            [p.connection_id for p in others],
            UserJoinedCallEvent(
                call_id=call_id,
                connection_id=joined.connection_id,
                user_id=joined.user_id,
                user_name=joined.user_name,
                peer_id=joined.peer_id,
            ),
        )
        await self._registry.broadcast(
            workspace_id,
            CallParticipantCountUpdatedEvent(
                call_id=call_id,
                workspace_slug=workspace_id,
                participant_count=len(result.roster),
            ),
        )

    async def _on_share_peer_id(self, ctx: ConnectionContext, event: SharePeerIdEvent) -> None:
        participant = self._calls.set_peer_identity(event.call_id, ctx.connection_id, event.peer_id)
        if participant is None:
            logger.debug(
                "Ignoring peer id from non-participant",
                extra={"connection_id": ctx.connection_id, "call_id": event.call_id},
            )
            return

        roster = self._calls.get_roster(event.call_id)
        await self._registry.send_many(
            [p.connection_id for p in roster],
            PeerIdSharedEvent(
                call_id=event.call_id,
                connection_id=participant.connection_id,
                user_id=participant.user_id,
                user_name=participant.user_name,
                peer_id=event.peer_id,
            ),
            exclude=ctx.connection_id,
        )

    async def _on_leave_call(self, ctx: ConnectionContext, event: LeaveCallEvent) -> None:
        if not await self._leave_call(ctx.connection_id, event.call_id, reason="left"):
            logger.debug(
                "leave_call for a call the connection is not in",
                extra={"connection_id": ctx.connection_id, "call_id": event.call_id},
            )

    async def _on_get_call_status(
        self, ctx: ConnectionContext, event: GetCallStatusEvent
    ) -> None:
        workspace_id = event.workspace_slug
        participants = [
            CallStatusParticipant(call_id=call_id, **_participant_info(p).model_dump())
            for call_id, p in self._calls.workspace_participants(workspace_id)
        ]
        await self._registry.send(
            ctx.connection_id,
            CallStatusEvent(
                workspace_slug=workspace_id,
                participants=participants,
                calls=self._call_summaries(workspace_id),
            ),
        )

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def _on_user_online(self, ctx: ConnectionContext, event: UserOnlineEvent) -> None:
        workspace_id = event.workspace_slug
        self._require_member(ctx, workspace_id)
        self._bind_identity(ctx, event.user_id, event.user_name)

        if self._presence.set_online(
            workspace_id, event.user_id, ctx.connection_id, event.user_name
        ):
            await self._broadcast_presence(workspace_id)

    async def _on_user_offline(self, ctx: ConnectionContext, event: UserOfflineEvent) -> None:
        workspace_id = event.workspace_slug
        self._require_member(ctx, workspace_id)
        self._bind_identity(ctx, event.user_id, None)

        if self._presence.set_offline(workspace_id, event.user_id, ctx.connection_id):
            await self._broadcast_presence(workspace_id)

    async def _on_get_presence(self, ctx: ConnectionContext, event: GetPresenceEvent) -> None:
        workspace_id = event.workspace_slug
        self._require_member(ctx, workspace_id)
        users = self._presence_users(workspace_id)
        await self._registry.send(
            ctx.connection_id,
            PresenceListEvent(
                workspace_slug=workspace_id,
                online_users=[u.user_id for u in users],
                users=users,
            ),
        )

    # ------------------------------------------------------------------
    # Lifecycle entry points (used by the reaper)
    # ------------------------------------------------------------------

    async def release_connection(self, connection_id: str, rooms: list[str]) -> ReleaseResult:
        """Clean up after a connection that went away.

        Takes the same removal path as an explicit ``leave_call``, so racing
        with one is harmless. Repeated calls find nothing left to remove.

        Args:
            connection_id: Departed connection
            rooms: Rooms it was part of (from ``ConnectionRegistry.on_disconnect``)
        """
        left_call_id = None
        call_id = self._calls.call_for_connection(connection_id)
        if call_id is not None and await self._leave_call(
            connection_id, call_id, reason="disconnected"
        ):
            left_call_id = call_id

        discarded = self._calls.discard_pending_calls(connection_id)
        for session in discarded:
            await self._announce_call_removed(session)

        changed: list[str] = []
        for workspace_id in sorted(set(rooms) | self._presence.workspaces_of(connection_id)):
            if self._presence.release_connection(workspace_id, connection_id):
                changed.append(workspace_id)
                await self._broadcast_presence(workspace_id)

        ctx = self._contexts.pop(connection_id, None)
        if ctx is not None and ctx.state is not CallState.DISCONNECTED:
            ctx.transition(CallState.DISCONNECTED)
        self._refresh_gauges()

        return ReleaseResult(
            left_call_id=left_call_id,
            discarded_call_ids=tuple(s.call_id for s in discarded),
            presence_changed=tuple(changed),
        )

    async def expire_pending_calls(self, max_age_s: float) -> list[str]:
        """Remove calls nobody joined within ``max_age_s`` seconds."""
        expired = self._calls.expire_pending_calls(max_age_s)
        for session in expired:
            logger.info(
                "Pending call expired",
                extra={"call_id": session.call_id, "workspace": session.workspace_id},
            )
            await self._announce_call_removed(session)
        if expired:
            if self._metrics:
                self._metrics.record_calls_expired(len(expired))
            self._refresh_gauges()
        return [s.call_id for s in expired]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _leave_call(self, connection_id: str, call_id: str, reason: str) -> bool:
        """Remove a participant and notify everyone affected.

        Returns:
            False if the connection was not in that call
        """
        result = self._calls.remove_participant(call_id, connection_id)
        if not result.removed or result.participant is None or result.workspace_id is None:
            return False

        ctx = self._contexts.get(connection_id)
        if ctx is not None and ctx.state is CallState.IN_CALL:
            ctx.transition(CallState.DISCONNECTED if reason == "disconnected" else CallState.LEFT)
            ctx.call_id = None
        if self._metrics:
            self._metrics.record_leave(disconnected=reason == "disconnected")

        workspace_id = result.workspace_id
        participant = result.participant
        logger.info(
            "Participant left call",
            extra={
                "connection_id": connection_id,
                "call_id": call_id,
                "reason": reason,
                "call_deleted": result.call_deleted,
            },
        )

        await self._registry.send_many(
            [p.connection_id for p in result.remaining],
            UserLeftCallEvent(
                call_id=call_id,
                connection_id=connection_id,
                user_id=participant.user_id,
                peer_id=participant.peer_id,
                reason=reason,
            ),
        )
        await self._registry.broadcast(
            workspace_id,
            CallParticipantCountUpdatedEvent(
                call_id=call_id,
                workspace_slug=workspace_id,
                participant_count=len(result.remaining),
            ),
        )
        if result.call_deleted:
            if self._metrics:
                self._metrics.record_call_ended(result.call_duration_s)
            await self._registry.broadcast(
                workspace_id, CallEndedEvent(call_id=call_id, workspace_slug=workspace_id)
            )
            await self._registry.broadcast(workspace_id, self._active_calls(workspace_id))
        return True

    async def _announce_call_removed(self, session: CallSession) -> None:
        workspace_id = session.workspace_id
        await self._registry.broadcast(
            workspace_id, CallEndedEvent(call_id=session.call_id, workspace_slug=workspace_id)
        )
        await self._registry.broadcast(workspace_id, self._active_calls(workspace_id))

    async def _broadcast_presence(self, workspace_id: str) -> None:
        users = self._presence_users(workspace_id)
        await self._registry.broadcast(
            workspace_id,
            PresenceUpdateEvent(
                workspace_slug=workspace_id,
                online_users=[u.user_id for u in users],
                users=users,
            ),
        )

    async def _send_error(
        self,
        connection_id: str,
        code: str,
        message: str,
        call_id: str | None = None,
        request_id: str | None = None,
    ) -> None:
        await self._registry.send(
            connection_id,
            CallErrorEvent(code=code, message=message, call_id=call_id, request_id=request_id),
        )

    def _require_member(self, ctx: ConnectionContext, workspace_id: str) -> None:
        if not self._registry.is_member(ctx.connection_id, workspace_id):
            raise NotInWorkspaceError(workspace_id)

    def _bind_identity(
        self, ctx: ConnectionContext, user_id: str, user_name: str | None
    ) -> None:
        """Pin the first user id a connection presents."""
        if ctx.user_id is None or not self._pin_identity:
            ctx.user_id = user_id
        elif ctx.user_id != user_id:
            raise IdentityMismatchError(
                f"Connection is bound to another user (got {user_id})"
            )
        if user_name:
            ctx.user_name = user_name

    def _call_summaries(self, workspace_id: str) -> list[CallSummaryInfo]:
        return [
            CallSummaryInfo(
                call_id=s.call_id,
                creator_name=s.creator_name,
                participant_count=s.participant_count,
                created_at=s.created_at,
            )
            for s in self._calls.list_active_calls(workspace_id)
        ]

    def _active_calls(self, workspace_id: str) -> ActiveCallsListEvent:
        return ActiveCallsListEvent(
            workspace_slug=workspace_id, calls=self._call_summaries(workspace_id)
        )

    def _presence_users(self, workspace_id: str) -> list[PresenceUser]:
        return [
            PresenceUser(user_id=user_id, user_name=user_name)
            for user_id, user_name in self._presence.snapshot(workspace_id)
        ]

    def _record_event(self, failed: bool) -> None:
        if self._metrics:
            self._metrics.record_event(error=failed)
        self._refresh_gauges()

    def _refresh_gauges(self) -> None:
        if self._metrics:
            self._metrics.update_state(
                calls=self._calls.call_count,
                participants=self._calls.participant_count,
                dropped_sends=self._registry.dropped_sends,
            )
