"""
In-process stand-ins for the peer connection engine and media tracks.
"""

import asyncio
from typing import Any, List, Optional

from p2p_call.core.engine import (
    CONNECTION_STATE,
    LOCAL_CANDIDATE,
    REMOTE_TRACK,
    PeerConnectionEngine,
)
from p2p_call.core.signaling import IceCandidate, SessionDescription


class FakeTrack:
    def __init__(self, kind: str = "audio"):
        self.kind = kind
        self.stop_count = 0

    def stop(self) -> None:
        self.stop_count += 1


class FakeSender:
    def __init__(self, track: FakeTrack):
        self.track = track


class FakeEngine(PeerConnectionEngine):
    """
    Records every call. Applying a candidate before the remote description
    is set fails like a real peer connection does, and is remembered in
    ``violations``.
    """

    def __init__(self, name: str = "engine", local_candidates: Optional[List[str]] = None):
        super().__init__()
        self.name = name
        self.local_candidates = [
            IceCandidate(candidate=c, sdp_mid="0", sdp_mline_index=0)
            for c in (local_candidates or [])
        ]
        self.calls: List[str] = []
        self.applied: List[IceCandidate] = []
        self.violations: List[IceCandidate] = []
        self.senders: List[FakeSender] = []
        self.close_count = 0
        self.fail_remote = False
        self._local: Optional[SessionDescription] = None
        self._remote: Optional[SessionDescription] = None
        self._state = "new"

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return self._local

    @property
    def remote_description(self) -> Optional[SessionDescription]:
        return self._remote

    @property
    def connection_state(self) -> str:
        return self._state

    async def create_offer(self) -> SessionDescription:
        self.calls.append("create_offer")
        return SessionDescription(sdp=f"v=0 offer from {self.name}", type="offer")

    async def create_answer(self) -> SessionDescription:
        self.calls.append("create_answer")
        if self._remote is None:
            raise RuntimeError("create_answer without a remote offer")
        return SessionDescription(sdp=f"v=0 answer from {self.name}", type="answer")

    async def set_local_description(self, description: SessionDescription) -> None:
        self.calls.append("set_local_description")
        self._local = description
        for candidate in self.local_candidates:
            self._emit(LOCAL_CANDIDATE, candidate)

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.calls.append("set_remote_description")
        if self.fail_remote:
            raise ValueError("malformed remote description")
        self._remote = description

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if self._remote is None:
            self.violations.append(candidate)
            raise RuntimeError("remote description is not set")
        self.applied.append(candidate)

    def list_senders(self) -> List[Any]:
        return list(self.senders)

    def add_track(self, track: Any) -> Any:
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    async def replace_track(self, sender: Any, track: Any) -> None:
        sender.track = track

    async def close(self) -> None:
        self.close_count += 1
        self._state = "closed"

    # Test drivers

    def emit_state(self, state: str) -> None:
        self._state = state
        self._emit(CONNECTION_STATE, state)

    def emit_track(self, track: Any) -> None:
        self._emit(REMOTE_TRACK, track)

    def emit_candidate(self, candidate: str) -> None:
        self._emit(LOCAL_CANDIDATE, IceCandidate(candidate=candidate, sdp_mid="0", sdp_mline_index=0))


def factory_for(engine: PeerConnectionEngine):
    async def build() -> PeerConnectionEngine:
        return engine

    return build


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Let queued tasks run until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def drive_aiortc_state(monkeypatch, engine, state: str) -> None:
    """Make the engine's RTCPeerConnection report ``state`` and fire its change event."""
    pc = engine.peer_connection
    monkeypatch.setattr(type(pc), "connectionState", property(lambda self: state))
    pc.emit("connectionstatechange")
