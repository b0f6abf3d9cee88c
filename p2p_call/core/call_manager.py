"""
Qt-friendly front for call sessions.

This is a thin wrapper around CallSessionCoordinator that:
1. Builds the engine from our Config (ICE servers first, then aiortc)
2. Owns at most one active session at a time
3. Turns session events into Qt signals for a presentation layer
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from PySide6.QtCore import QObject, Signal

from p2p_call.config import Config
from p2p_call.core.call_state import CloseReason, SessionInfo, SessionPhase
from p2p_call.core.coordinator import CallSessionCoordinator, EngineFactory
from p2p_call.core.engine import AiortcEngine, PeerConnectionEngine
from p2p_call.core.errors import CallSessionError, SessionClosed, SessionNotFound
from p2p_call.core.ice_servers import resolve_ice_servers
from p2p_call.core.store import SignalingStore
from p2p_call.logging_config import get_logger

logger = get_logger("call_manager")


def aiortc_engine_factory(config: Config) -> EngineFactory:
    """Engine factory that resolves ICE servers before building the connection."""

    async def build() -> PeerConnectionEngine:
        servers = await resolve_ice_servers(config)
        logger.info(f"Creating peer connection with {len(servers)} ICE server(s)")
        return AiortcEngine(servers)

    return build


class CallManager(QObject):
    """
    Emits Qt signals for UI updates:
    - state_changed(phase_name, call_id)
    - call_created(call_id)
    - call_connected(call_id)
    - call_ended(call_id, reason)
    - call_failed(message)
    - remote_track(track)
    - connection_state_changed(state)
    - local_media_changed(kind, enabled)
    """

    state_changed = Signal(str, str)
    call_created = Signal(str)
    call_connected = Signal(str)
    call_ended = Signal(str, str)
    call_failed = Signal(str)
    remote_track = Signal(object)
    connection_state_changed = Signal(str)
    local_media_changed = Signal(str, bool)

    def __init__(
        self,
        store: SignalingStore,
        config: Config,
        engine_factory: Optional[EngineFactory] = None,
    ):
        """
        Initialize CallManager.

        Args:
            store: Signaling store shared with the remote party
            config: Application configuration
            engine_factory: Override for the aiortc engine factory
        """
        super().__init__()
        self.store = store
        self.config = config
        self.engine_factory = engine_factory or aiortc_engine_factory(config)
        self.session: Optional[CallSessionCoordinator] = None
        self.last_error: Optional[CallSessionError] = None

    @property
    def is_in_call(self) -> bool:
        return self.session is not None and not self.session.closed

    @property
    def call_id(self) -> Optional[str]:
        return self.session.call_id if self.session else None

    def _new_session(self, tracks: Iterable[Any]) -> CallSessionCoordinator:
        if self.is_in_call:
            raise RuntimeError("Cannot start a new call while another call is active.")

        self.last_error = None
        session = CallSessionCoordinator(self.store, self.engine_factory, local_tracks=tracks)
        session.on_state_changed = self._on_state_changed
        session.on_remote_track = self.remote_track.emit
        session.on_connection_state = self.connection_state_changed.emit
        session.on_closed = self._on_closed
        self.session = session
        return session

    async def start_call(self, tracks: Iterable[Any] = ()) -> Optional[str]:
        """
        Create a new call.

        Returns:
            The call id to hand to the other party, or None if setup failed
            (call_failed has been emitted).
        """
        session = self._new_session(tracks)
        logger.info("Starting new call")
        try:
            call_id = await session.create_session()
        except SessionClosed:
            logger.info("Call ended before setup completed")
            return None
        except CallSessionError as exc:
            logger.error(f"Failed to start call: {exc}")
            self.last_error = exc
            self.call_failed.emit(str(exc))
            return None
        self.call_created.emit(call_id)
        return call_id

    async def join_call(self, call_id: str, tracks: Iterable[Any] = ()) -> Optional[str]:
        """
        Join the call with the given id.

        Returns:
            The call id, or None if the call does not exist or setup failed.
        """
        session = self._new_session(tracks)
        logger.info(f"Joining call {call_id}")
        try:
            return await session.join_session(call_id)
        except SessionClosed:
            logger.info("Call ended before setup completed")
            return None
        except SessionNotFound as exc:
            logger.warning(f"Cannot join: {exc}")
            self.last_error = exc
            self.call_failed.emit(str(exc))
            return None
        except CallSessionError as exc:
            logger.error(f"Failed to join call: {exc}")
            self.last_error = exc
            self.call_failed.emit(str(exc))
            return None

    async def hangup(self) -> None:
        """Hang up the current call, if any."""
        if self.session is None:
            return
        logger.info("Hanging up call")
        await self.session.teardown(CloseReason.HANGUP)

    async def replace_track(self, track: Any) -> None:
        if not self.is_in_call:
            raise CallSessionError("No active call")
        await self.session.replace_local_track(track)

    async def set_local_media_enabled(self, kind: str, enabled: bool) -> None:
        """Mute or unmute the microphone (``audio``), hide or show the camera (``video``)."""
        if not self.is_in_call:
            raise CallSessionError("No active call")
        if await self.session.set_local_media_enabled(kind, enabled):
            self.local_media_changed.emit(kind, enabled)

    def local_media_enabled(self, kind: str) -> bool:
        return self.session is None or self.session.local_media_enabled(kind)

    async def wait_ended(self) -> Optional[CloseReason]:
        if self.session is None:
            return None
        return await self.session.wait_closed()

    async def shutdown(self) -> None:
        """Clean shutdown: hang up and release the store."""
        logger.info("Shutting down call manager")
        await self.hangup()
        await self.store.close()

    def _on_state_changed(self, phase: SessionPhase, session: Optional[SessionInfo]) -> None:
        call_id = session.call_id if session and session.call_id else ""
        self.state_changed.emit(phase.name, call_id)
        if phase is SessionPhase.CONNECTED:
            logger.info(f"Call {call_id} connected")
            self.call_connected.emit(call_id)

    def _on_closed(self, call_id: Optional[str], reason: CloseReason) -> None:
        logger.info(f"Call {call_id or '(none)'} ended: {reason.value}")
        self.call_ended.emit(call_id or "", reason.value)
