"""WebSocket message protocol definitions.

Defines Pydantic models for the signaling events exchanged over the
WebSocket transport. Every frame is one JSON object whose ``type`` field
names the event; remaining fields use camelCase on the wire.

Inbound frames are parsed into a discriminated union at the transport
boundary, so the coordinator only ever sees well-formed events.
"""

from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from teamcall.errors import InvalidEventError


class WireModel(BaseModel):
    """Base model: camelCase aliases on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# Slugs, ids and display names are trimmed. Peer tokens are relayed verbatim.
Slug = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]
Identifier = Slug
Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=256)]
DisplayName = Annotated[str, StringConstraints(strip_whitespace=True, max_length=256)]
PeerToken = Annotated[str, StringConstraints(min_length=1, max_length=256)]


# ============================================================================
# Client → Server
# ============================================================================


class JoinWorkspaceEvent(WireModel):
    """Subscribe the connection to a workspace room."""

    type: Literal["join_workspace"] = "join_workspace"
    workspace_slug: Slug


class LeaveWorkspaceEvent(WireModel):
    """Unsubscribe from a workspace room (leaves any call held there)."""

    type: Literal["leave_workspace"] = "leave_workspace"
    workspace_slug: Slug


class GetActiveCallsEvent(WireModel):
    type: Literal["get_active_calls"] = "get_active_calls"
    workspace_slug: Slug


class CreateCallEvent(WireModel):
    """Create a call. The requester must still send ``join_call`` afterwards."""

    type: Literal["create_call"] = "create_call"
    workspace_slug: Slug
    user_id: Identifier
    user_name: Name
    request_id: str | None = Field(
        default=None, max_length=128, description="Echoed back in call_created"
    )


class JoinCallEvent(WireModel):
    type: Literal["join_call"] = "join_call"
    call_id: Identifier
    workspace_slug: Slug
    user_id: Identifier
    user_name: Name
    peer_id: PeerToken | None = Field(default=None, description="Peer token, if already known")
    request_id: str | None = Field(
        default=None, max_length=128, description="Echoed back in existing_participants"
    )


class SharePeerIdEvent(WireModel):
    type: Literal["share_peer_id"] = "share_peer_id"
    call_id: Identifier
    peer_id: PeerToken


class LeaveCallEvent(WireModel):
    type: Literal["leave_call"] = "leave_call"
    call_id: Identifier


class GetCallStatusEvent(WireModel):
    type: Literal["get_call_status"] = "get_call_status"
    workspace_slug: Slug


class UserOnlineEvent(WireModel):
    type: Literal["user_online"] = "user_online"
    workspace_slug: Slug
    user_id: Identifier
    user_name: DisplayName | None = None


class UserOfflineEvent(WireModel):
    type: Literal["user_offline"] = "user_offline"
    workspace_slug: Slug
    user_id: Identifier


class GetPresenceEvent(WireModel):
    type: Literal["get_presence"] = "get_presence"
    workspace_slug: Slug


ClientEvent = Annotated[
    JoinWorkspaceEvent
    | LeaveWorkspaceEvent
    | GetActiveCallsEvent
    | CreateCallEvent
    | JoinCallEvent
    | SharePeerIdEvent
    | LeaveCallEvent
    | GetCallStatusEvent
    | UserOnlineEvent
    | UserOfflineEvent
    | GetPresenceEvent,
    Field(discriminator="type"),
]

_client_event_adapter: TypeAdapter[ClientEvent] = TypeAdapter(ClientEvent)


def parse_client_event(raw: str | bytes) -> ClientEvent:
    """Validate one inbound frame.

    Args:
        raw: JSON text of a single event

    Returns:
        The typed event

    Raises:
        InvalidEventError: If the frame is not valid JSON, names an unknown
            event type, or has missing/ill-typed fields
    """
    try:
        return _client_event_adapter.validate_json(raw)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "message"
        raise InvalidEventError(f"{location}: {first['msg']}") from e


# ============================================================================
# Server → Client
# ============================================================================


class ParticipantInfo(WireModel):
    connection_id: str
    user_id: str
    user_name: str
    peer_id: str | None = None
    joined_at: float


class CallSummaryInfo(WireModel):
    call_id: str
    creator_name: str
    participant_count: int = Field(..., ge=0)
    created_at: float


class PresenceUser(WireModel):
    user_id: str
    user_name: str | None = None


class ConnectedEvent(WireModel):
    """First frame on every connection; tells the client its own id."""

    type: Literal["connected"] = "connected"
    connection_id: str


class ActiveCallsListEvent(WireModel):
    type: Literal["active_calls_list"] = "active_calls_list"
    workspace_slug: str
    calls: list[CallSummaryInfo] = Field(default_factory=list)


class CallCreatedEvent(WireModel):
    type: Literal["call_created"] = "call_created"
    call_id: str
    workspace_slug: str
    creator_name: str
    created_at: float
    request_id: str | None = None


class CallEndedEvent(WireModel):
    type: Literal["call_ended"] = "call_ended"
    call_id: str
    workspace_slug: str


class CallParticipantCountUpdatedEvent(WireModel):
    type: Literal["call_participant_count_updated"] = "call_participant_count_updated"
    call_id: str
    workspace_slug: str
    participant_count: int = Field(..., ge=0)


class ExistingParticipantsEvent(WireModel):
    """Roster replay sent only to a joining connection (excludes itself)."""

    type: Literal["existing_participants"] = "existing_participants"
    call_id: str
    participants: list[ParticipantInfo] = Field(default_factory=list)
    request_id: str | None = None


class UserJoinedCallEvent(WireModel):
    type: Literal["user_joined_call"] = "user_joined_call"
    call_id: str
    connection_id: str
    user_id: str
    user_name: str
    peer_id: str | None = None


class PeerIdSharedEvent(WireModel):
    type: Literal["peer_id_shared"] = "peer_id_shared"
    call_id: str
    connection_id: str
    user_id: str
    user_name: str
    peer_id: str


class UserLeftCallEvent(WireModel):
    type: Literal["user_left_call"] = "user_left_call"
    call_id: str
    connection_id: str
    user_id: str
    peer_id: str | None = None
    reason: Literal["left", "disconnected", "switched"] = "left"


class CallErrorEvent(WireModel):
    type: Literal["call_error"] = "call_error"
    code: str = Field(default="INTERNAL_ERROR", description="Stable error code")
    message: str
    call_id: str | None = None
    request_id: str | None = None


class PresenceListEvent(WireModel):
    """Reply to ``get_presence``."""

    type: Literal["presence_list"] = "presence_list"
    workspace_slug: str
    online_users: list[str] = Field(default_factory=list)
    users: list[PresenceUser] = Field(default_factory=list)


class PresenceUpdateEvent(WireModel):
    """Full online set, broadcast to the workspace room on every change."""

    type: Literal["presence_update"] = "presence_update"
    workspace_slug: str
    online_users: list[str] = Field(default_factory=list)
    users: list[PresenceUser] = Field(default_factory=list)


class CallStatusParticipant(ParticipantInfo):
    call_id: str


class CallStatusEvent(WireModel):
    type: Literal["call_status"] = "call_status"
    workspace_slug: str
    participants: list[CallStatusParticipant] = Field(default_factory=list)
    calls: list[CallSummaryInfo] = Field(default_factory=list)


# Union type for all server → client messages
ServerEvent = (
    ConnectedEvent
    | ActiveCallsListEvent
    | CallCreatedEvent
    | CallEndedEvent
    | CallParticipantCountUpdatedEvent
    | ExistingParticipantsEvent
    | UserJoinedCallEvent
    | PeerIdSharedEvent
    | UserLeftCallEvent
    | CallErrorEvent
    | PresenceListEvent
    | PresenceUpdateEvent
    | CallStatusEvent
)

_server_event_adapter: TypeAdapter[ServerEvent] = TypeAdapter(
    Annotated[ServerEvent, Field(discriminator="type")]
)


def encode_server_event(event: ServerEvent) -> str:
    """Serialize an outbound event with camelCase field names."""
    return event.model_dump_json(by_alias=True)


def parse_server_event(raw: str | bytes) -> ServerEvent:
    """Parse an outbound event (used by the client library).

    Raises:
        InvalidEventError: If the frame is not a known server event
    """
    try:
        return _server_event_adapter.validate_json(raw)
    except ValidationError as e:
        raise InvalidEventError(f"Unrecognized server event: {e.errors()[0]['msg']}") from e
