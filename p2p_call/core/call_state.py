from enum import Enum, auto
from dataclasses import dataclass
from typing import Optional, Callable

from p2p_call.logging_config import get_logger

logger = get_logger("call_state")


class Role(Enum):
    CALLER = "caller"
    CALLEE = "callee"


class SessionPhase(Enum):
    IDLE = auto()
    CREATING = auto()
    JOINING = auto()
    AWAITING_REMOTE_DESCRIPTION = auto()
    CONNECTED = auto()
    CLOSED = auto()

    @property
    def is_negotiating(self) -> bool:
        return self in (SessionPhase.CREATING, SessionPhase.JOINING)


class CloseReason(Enum):
    HANGUP = "hangup"
    REMOTE_ENDED = "remote_ended"
    DISCONNECTED = "disconnected"
    SETUP_FAILED = "setup_failed"


_TRANSITIONS = {
    SessionPhase.IDLE: {SessionPhase.CREATING, SessionPhase.JOINING},
    SessionPhase.CREATING: {SessionPhase.AWAITING_REMOTE_DESCRIPTION},
    SessionPhase.JOINING: {SessionPhase.AWAITING_REMOTE_DESCRIPTION},
    SessionPhase.AWAITING_REMOTE_DESCRIPTION: {SessionPhase.CONNECTED},
    SessionPhase.CONNECTED: set(),
    SessionPhase.CLOSED: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class SessionInfo:
    role: Role
    call_id: Optional[str] = None
    close_reason: Optional[CloseReason] = None


class CallSessionStateMachine:
    """
    Negotiation state of one call session.

    Pure bookkeeping: no store or engine access. The coordinator drives it and
    presentation code can subscribe to on_state_changed. CLOSED is reachable
    from every phase except CLOSED itself and is only entered through close().
    """

    def __init__(self) -> None:
        self.phase: SessionPhase = SessionPhase.IDLE
        self.session: Optional[SessionInfo] = None
        self.on_state_changed: Optional[
            Callable[[SessionPhase, Optional[SessionInfo]], None]
        ] = None

    @property
    def role(self) -> Optional[Role]:
        return self.session.role if self.session else None

    @property
    def call_id(self) -> Optional[str]:
        return self.session.call_id if self.session else None

    @property
    def is_closed(self) -> bool:
        return self.phase is SessionPhase.CLOSED

    def _set_state(self, phase: SessionPhase) -> None:
        logger.debug(f"Session phase {self.phase.name} -> {phase.name}")
        self.phase = phase
        if self.on_state_changed:
            self.on_state_changed(self.phase, self.session)

    def begin(self, role: Role, call_id: Optional[str] = None) -> SessionInfo:
        if self.phase is not SessionPhase.IDLE:
            raise InvalidTransition(
                f"Cannot start a {role.value} session from {self.phase.name}."
            )
        self.session = SessionInfo(role=role, call_id=call_id)
        self._set_state(
            SessionPhase.CREATING if role is Role.CALLER else SessionPhase.JOINING
        )
        return self.session

    def bind_call_id(self, call_id: str) -> None:
        if self.session is None:
            raise InvalidTransition("No session to bind a call id to.")
        self.session.call_id = call_id

    def advance(self, phase: SessionPhase) -> None:
        if phase is SessionPhase.CLOSED:
            raise InvalidTransition("Use close() to end a session.")
        if phase not in _TRANSITIONS[self.phase]:
            raise InvalidTransition(f"{self.phase.name} -> {phase.name} is not allowed.")
        self._set_state(phase)

    def close(self, reason: CloseReason) -> bool:
        """Enter CLOSED. Returns False if the session was already closed."""
        if self.phase is SessionPhase.CLOSED:
            return False
        if self.session is not None:
            self.session.close_reason = reason
        self._set_state(SessionPhase.CLOSED)
        return True
