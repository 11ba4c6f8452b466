"""In-memory call store.

Holds the workspace → call session → roster mapping. Pure state container:
no I/O and no awaits, so every method is an atomic step on the event loop.

Invariants:
- A connection is a participant of at most one call.
- An activated call (one that has had a participant) whose roster becomes
  empty is deleted within the same method call that emptied it.
- A freshly created call is *pending* (empty roster, never joined) until its
  first join; pending calls are removed by their creator disconnecting or by
  expiry.
"""

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from teamcall.errors import AlreadyInCallError, CallNotFoundError

logger = logging.getLogger(__name__)

# 16 random bytes -> 22 url-safe characters
CALL_ID_BYTES = 16


@dataclass
class Participant:
    """A (connection, user) binding inside one call roster."""

    connection_id: str
    user_id: str
    user_name: str
    peer_id: str | None = None
    joined_at: float = field(default_factory=time.time)


@dataclass
class CallSession:
    """One active (or pending) video call in a workspace."""

    call_id: str
    workspace_id: str
    creator_user_id: str
    creator_name: str
    created_at: float
    sequence: int
    creator_connection_id: str | None = None
    roster: dict[str, Participant] = field(default_factory=dict)
    activated: bool = False

    @property
    def participant_count(self) -> int:
        return len(self.roster)

    @property
    def is_pending(self) -> bool:
        """True while nobody has joined yet."""
        return not self.activated


@dataclass(frozen=True)
class CallSummary:
    """Lobby listing entry for a call."""

    call_id: str
    creator_name: str
    participant_count: int
    created_at: float


@dataclass(frozen=True)
class JoinResult:
    """Outcome of ``CallStore.add_participant``."""

    participant: Participant
    roster: tuple[Participant, ...]
    rejoined: bool


@dataclass(frozen=True)
class RemovalResult:
    """Outcome of ``CallStore.remove_participant``."""

    removed: bool
    call_deleted: bool = False
    participant: Participant | None = None
    workspace_id: str | None = None
    remaining: tuple[Participant, ...] = ()
    call_duration_s: float | None = None


class CallStore:
    """Workspace-scoped registry of call sessions and their rosters."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize an empty store.

        Args:
            clock: Time source in epoch seconds (injectable for tests)
        """
        self._clock = clock
        self._calls: dict[str, CallSession] = {}
        self._workspaces: dict[str, dict[str, CallSession]] = {}
        self._connection_calls: dict[str, str] = {}
        self._sequence = 0

    @property
    def call_count(self) -> int:
        return len(self._calls)

    @property
    def participant_count(self) -> int:
        return len(self._connection_calls)

    def create_call(
        self,
        workspace_id: str,
        creator_user_id: str,
        creator_name: str,
        creator_connection_id: str | None = None,
    ) -> str:
        """Create a pending call with an empty roster.

        Args:
            workspace_id: Owning workspace
            creator_user_id: User who requested the call
            creator_name: Display name of the creator
            creator_connection_id: Connection that issued the request

        Returns:
            Newly generated, unguessable call identifier
        """
        call_id = secrets.token_urlsafe(CALL_ID_BYTES)
        while call_id in self._calls:
            call_id = secrets.token_urlsafe(CALL_ID_BYTES)

        self._sequence += 1
        session = CallSession(
            call_id=call_id,
            workspace_id=workspace_id,
            creator_user_id=creator_user_id,
            creator_name=creator_name,
            created_at=self._clock(),
            sequence=self._sequence,
            creator_connection_id=creator_connection_id,
        )
        self._calls[call_id] = session
        self._workspaces.setdefault(workspace_id, {})[call_id] = session

        logger.info(
            "Call created",
            extra={"call_id": call_id, "workspace": workspace_id, "creator": creator_user_id},
        )
        return call_id

    def get_call(self, call_id: str) -> CallSession:
        """Return the call session or raise ``CallNotFoundError``."""
        session = self._calls.get(call_id)
        if session is None:
            raise CallNotFoundError(call_id)
        return session

    def has_call(self, call_id: str) -> bool:
        return call_id in self._calls

    def call_for_connection(self, connection_id: str) -> str | None:
        """Return the id of the call this connection participates in, if any."""
        return self._connection_calls.get(connection_id)

    def add_participant(
        self,
        call_id: str,
        connection_id: str,
        user_id: str,
        user_name: str,
        peer_id: str | None = None,
    ) -> JoinResult:
        """Add a connection to a call roster.

        Re-adding a connection that is already in this call refreshes its
        name (and peer id, when one is supplied) instead of duplicating it.

        Raises:
            CallNotFoundError: If the call does not exist
            AlreadyInCallError: If the connection is in a different call
        """
        session = self.get_call(call_id)

        current = self._connection_calls.get(connection_id)
        if current is not None and current != call_id:
            raise AlreadyInCallError(connection_id, current)

        existing = session.roster.get(connection_id)
        if existing is not None:
            existing.user_id = user_id
            existing.user_name = user_name
            if peer_id:
                existing.peer_id = peer_id
            participant = existing
            rejoined = True
        else:
            participant = Participant(
                connection_id=connection_id,
                user_id=user_id,
                user_name=user_name,
                peer_id=peer_id or None,
                joined_at=self._clock(),
            )
            session.roster[connection_id] = participant
            self._connection_calls[connection_id] = call_id
            session.activated = True
            rejoined = False

        logger.debug(
            "Participant added",
            extra={
                "call_id": call_id,
                "connection_id": connection_id,
                "rejoined": rejoined,
                "roster_size": len(session.roster),
            },
        )
        return JoinResult(
            participant=replace(participant),
            roster=tuple(replace(p) for p in session.roster.values()),
            rejoined=rejoined,
        )

    def set_peer_identity(
        self, call_id: str, connection_id: str, peer_id: str
    ) -> Participant | None:
        """Record the peer token of a participant.

        Returns:
            Snapshot of the updated participant, or None when the call or the
            participant is unknown (late tokens are ignored)
        """
        session = self._calls.get(call_id)
        if session is None:
            return None
        participant = session.roster.get(connection_id)
        if participant is None:
            return None
        participant.peer_id = peer_id
        return replace(participant)

    def remove_participant(self, call_id: str, connection_id: str) -> RemovalResult:
        """Remove a connection from a call roster.

        Deletes the call when the roster becomes empty. Removing a
        non-member is a no-op reporting ``removed=False``.
        """
        session = self._calls.get(call_id)
        if session is None:
            return RemovalResult(removed=False)

        participant = session.roster.pop(connection_id, None)
        if participant is None:
            return RemovalResult(removed=False, workspace_id=session.workspace_id)

        if self._connection_calls.get(connection_id) == call_id:
            del self._connection_calls[connection_id]

        call_deleted = not session.roster
        duration = None
        if call_deleted:
            duration = self._clock() - session.created_at
            self._delete(session)

        return RemovalResult(
            removed=True,
            call_deleted=call_deleted,
            participant=participant,
            workspace_id=session.workspace_id,
            remaining=tuple(replace(p) for p in session.roster.values()),
            call_duration_s=duration,
        )

    def get_roster(self, call_id: str) -> list[Participant]:
        """Return participant snapshots in join order.

        Raises:
            CallNotFoundError: If the call does not exist
        """
        session = self.get_call(call_id)
        return [replace(p) for p in session.roster.values()]

    def list_active_calls(self, workspace_id: str) -> list[CallSummary]:
        """List calls in a workspace, oldest first."""
        sessions = sorted(
            self._workspaces.get(workspace_id, {}).values(),
            key=lambda s: (s.created_at, s.sequence),
        )
        return [
            CallSummary(
                call_id=s.call_id,
                creator_name=s.creator_name,
                participant_count=s.participant_count,
                created_at=s.created_at,
            )
            for s in sessions
        ]

    def workspace_participants(self, workspace_id: str) -> list[tuple[str, Participant]]:
        """Return (call_id, participant) pairs for every call in a workspace."""
        pairs: list[tuple[str, Participant]] = []
        sessions = sorted(
            self._workspaces.get(workspace_id, {}).values(),
            key=lambda s: (s.created_at, s.sequence),
        )
        for session in sessions:
            pairs.extend((session.call_id, replace(p)) for p in session.roster.values())
        return pairs

    def discard_pending_calls(self, connection_id: str) -> list[CallSession]:
        """Delete never-joined calls created by this connection."""
        doomed = [
            s
            for s in self._calls.values()
            if s.is_pending and s.creator_connection_id == connection_id
        ]
        for session in doomed:
            self._delete(session)
        return doomed

    def expire_pending_calls(self, max_age_s: float) -> list[CallSession]:
        """Delete pending calls created more than ``max_age_s`` seconds ago."""
        cutoff = self._clock() - max_age_s
        doomed = [s for s in self._calls.values() if s.is_pending and s.created_at <= cutoff]
        for session in doomed:
            self._delete(session)
        return doomed

    def _delete(self, session: CallSession) -> None:
        self._calls.pop(session.call_id, None)
        workspace_calls = self._workspaces.get(session.workspace_id)
        if workspace_calls is not None:
            workspace_calls.pop(session.call_id, None)
            if not workspace_calls:
                del self._workspaces[session.workspace_id]
        for connection_id in list(session.roster):
            if self._connection_calls.get(connection_id) == session.call_id:
                del self._connection_calls[connection_id]
        session.roster.clear()

        logger.info(
            "Call deleted",
            extra={"call_id": session.call_id, "workspace": session.workspace_id},
        )
