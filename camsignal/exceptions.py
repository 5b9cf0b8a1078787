"""
Signaling exceptions

Raised by the session orchestrator, the transport adapters and the push
request broker. Routes translate them into HTTP status codes.
"""


class SignalingError(Exception):
    """Base class for every signaling failure."""


class AlreadyNegotiating(SignalingError):
    """A non-terminal session already exists for the target."""

    def __init__(self, target_id: str, state: str = ""):
        self.target_id = target_id
        self.state = state
        super().__init__(f"Target {target_id} already has an active session ({state})")


class TransportUnavailable(SignalingError):
    """The requested transport is not configured or its channel is closed."""

    def __init__(self, transport: str, reason: str = ""):
        self.transport = transport
        self.reason = reason
        message = f"Transport {transport} unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class AnswerTimeout(SignalingError):
    """A pending push request was not answered before its deadline."""

    def __init__(self, request_id: str, target_id: str = ""):
        self.request_id = request_id
        self.target_id = target_id
        super().__init__(f"No answer for push request {request_id} (target {target_id})")


class SessionClosed(SignalingError):
    """The session was closed while an operation was still waiting on it."""

    def __init__(self, target_id: str = "", cause: str = ""):
        self.target_id = target_id
        self.cause = cause
        super().__init__(f"Session for {target_id} closed" + (f": {cause}" if cause else ""))


class RemoteDescriptionRejected(SignalingError):
    """The remote peer or the media engine refused a session description."""


class RelayUnreachable(SignalingError):
    """The relay stayed down after the maximum number of reconnect attempts."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Relay unreachable after {attempts} reconnect attempts")
