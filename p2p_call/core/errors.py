"""Exceptions raised by the call-session core."""


class CallSessionError(Exception):
    """Base class for call-session failures."""


class StoreError(CallSessionError):
    """A signaling store operation failed."""


class EngineSetupError(CallSessionError):
    """The peer connection engine could not be configured (no usable ICE servers)."""


class SessionNotFound(CallSessionError):
    """The call id does not name a joinable call."""

    def __init__(self, call_id: str, detail: str = "no such call") -> None:
        super().__init__(f"Call {call_id}: {detail}")
        self.call_id = call_id


class SessionAlreadyAnswered(SessionNotFound):
    """The call already carries an answer from another callee."""

    def __init__(self, call_id: str) -> None:
        super().__init__(call_id, "already answered")


class SessionClosed(CallSessionError):
    """The session was torn down while an operation was in flight."""


class NegotiationError(CallSessionError):
    """The engine rejected a session description or could not produce one."""
