"""Error taxonomy for the signaling layer.

Every error carries a stable ``code`` that is sent to clients inside
``call_error`` events. None of these are fatal to the server: they are
caught per event by the coordinator.
"""


class SignalingError(Exception):
    """Base class for all signaling errors."""

    code = "SIGNALING_ERROR"

    def __init__(self, message: str, call_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.call_id = call_id


class CallNotFoundError(SignalingError):
    """Referenced call does not exist (or belongs to another workspace)."""

    code = "CALL_NOT_FOUND"

    def __init__(self, call_id: str) -> None:
        super().__init__(f"Call not found: {call_id}", call_id=call_id)


class NotInWorkspaceError(SignalingError):
    """Event requires a workspace room the connection has not joined."""

    code = "NOT_IN_WORKSPACE"

    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"Connection has not joined workspace: {workspace_id}")
        self.workspace_id = workspace_id


class InvalidEventError(SignalingError):
    """Inbound message failed boundary validation."""

    code = "INVALID_EVENT"


class IdentityMismatchError(SignalingError):
    """Event carries a user id different from the one bound to the connection."""

    code = "IDENTITY_MISMATCH"


class AlreadyInCallError(SignalingError):
    """Connection is already a participant of a different call."""

    code = "ALREADY_IN_CALL"

    def __init__(self, connection_id: str, current_call_id: str) -> None:
        super().__init__(
            f"Connection {connection_id} is already in call {current_call_id}",
            call_id=current_call_id,
        )
        self.connection_id = connection_id


class SignalingTimeoutError(SignalingError):
    """Client did not receive the expected server response in time."""

    code = "TIMEOUT"


class ServerRejectedError(SignalingError):
    """The server answered a client request with ``call_error``."""

    def __init__(self, code: str, message: str, call_id: str | None = None) -> None:
        super().__init__(message, call_id=call_id)
        self.code = code
