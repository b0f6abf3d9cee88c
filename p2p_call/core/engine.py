"""
Peer connection engine interface and its aiortc implementation.

The coordinator only talks to :class:`PeerConnectionEngine`. Engine callbacks
are exposed as listener registrations so a session can attach them during
setup and detach them on teardown:

- ``local_candidate(IceCandidate)``
- ``remote_track(track)``
- ``connection_state(str)``
"""

from __future__ import annotations

import abc
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from p2p_call.core.signaling import IceCandidate, SessionDescription
from p2p_call.logging_config import get_logger

logger = get_logger("engine")

LOCAL_CANDIDATE = "local_candidate"
REMOTE_TRACK = "remote_track"
CONNECTION_STATE = "connection_state"

ENGINE_EVENTS = (LOCAL_CANDIDATE, REMOTE_TRACK, CONNECTION_STATE)

# aiortc has no "disconnected" state: consent loss on a dropped link ends in "failed"
AIORTC_STATE_ALIASES = {"failed": "disconnected"}


def engine_state(aiortc_state: str) -> str:
    """Map an aiortc connectionState onto the engine-level state name."""
    return AIORTC_STATE_ALIASES.get(aiortc_state, aiortc_state)


class PeerConnectionEngine(abc.ABC):
    """Capability interface over a standard peer connection."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[..., Any]]] = {
            name: [] for name in ENGINE_EVENTS
        }

    def add_listener(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register ``callback`` for ``event``; returns a function that unregisters it."""
        if event not in self._listeners:
            raise ValueError(f"Unknown engine event: {event}")
        self._listeners[event].append(callback)

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        return remove

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Error in {event} listener")

    @property
    @abc.abstractmethod
    def local_description(self) -> Optional[SessionDescription]: ...

    @property
    @abc.abstractmethod
    def remote_description(self) -> Optional[SessionDescription]: ...

    @property
    @abc.abstractmethod
    def connection_state(self) -> str: ...

    @abc.abstractmethod
    async def create_offer(self) -> SessionDescription: ...

    @abc.abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abc.abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None: ...

    @abc.abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None: ...

    @abc.abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    @abc.abstractmethod
    def list_senders(self) -> List[Any]: ...

    @abc.abstractmethod
    def add_track(self, track: Any) -> Any: ...

    @abc.abstractmethod
    async def replace_track(self, sender: Any, track: Any) -> None: ...

    @abc.abstractmethod
    async def close(self) -> None: ...


def candidates_from_sdp(sdp: str) -> List[IceCandidate]:
    """
    Extract ``a=candidate`` lines from a session description.

    Each candidate is tagged with the mid / m-line index / ice-ufrag of the
    media section it appears in. With BUNDLE every section repeats the same
    candidates; only the first occurrence is kept.
    """
    sections: List[Dict[str, Any]] = []
    session_ufrag: Optional[str] = None

    for raw_line in sdp.splitlines():
        line = raw_line.strip()
        if line.startswith("m="):
            sections.append({"mid": None, "ufrag": session_ufrag, "candidates": []})
        elif line.startswith("a=ice-ufrag:"):
            ufrag = line[len("a=ice-ufrag:"):]
            if sections:
                sections[-1]["ufrag"] = ufrag
            else:
                session_ufrag = ufrag
        elif not sections:
            continue
        elif line.startswith("a=mid:"):
            sections[-1]["mid"] = line[len("a=mid:"):]
        elif line.startswith("a=candidate:"):
            sections[-1]["candidates"].append(line[len("a="):])

    seen = set()
    result = []
    for index, section in enumerate(sections):
        for candidate in section["candidates"]:
            if candidate in seen:
                continue
            seen.add(candidate)
            result.append(
                IceCandidate(
                    candidate=candidate,
                    sdp_mid=section["mid"],
                    sdp_mline_index=index,
                    username_fragment=section["ufrag"],
                )
            )
    return result


class AiortcEngine(PeerConnectionEngine):
    """
    PeerConnectionEngine over aiortc.

    aiortc gathers all candidates inside setLocalDescription and writes them
    into the local SDP instead of trickling them. The adapter re-emits them as
    ``local_candidate`` events afterwards, so a browser peer that expects
    trickled candidates in the candidate tables still gets them.
    """

    def __init__(self, ice_servers: List[RTCIceServer]) -> None:
        super().__init__()
        self._pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))

        @self._pc.on("track")
        def on_track(track: Any) -> None:
            logger.debug(f"Received remote {track.kind} track {track.id}")
            self._emit(REMOTE_TRACK, track)

        @self._pc.on("connectionstatechange")
        def on_state_change() -> None:
            state = self._pc.connectionState
            logger.info(f"Connection state: {state}")
            self._emit(CONNECTION_STATE, engine_state(state))

    @property
    def peer_connection(self) -> RTCPeerConnection:
        return self._pc

    @staticmethod
    def _wrap(description: Optional[RTCSessionDescription]) -> Optional[SessionDescription]:
        if description is None:
            return None
        return SessionDescription(sdp=description.sdp, type=description.type)

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return self._wrap(self._pc.localDescription)

    @property
    def remote_description(self) -> Optional[SessionDescription]:
        return self._wrap(self._pc.remoteDescription)

    @property
    def connection_state(self) -> str:
        return engine_state(self._pc.connectionState)

    def _ensure_receivers(self) -> None:
        # Same effect as offerToReceiveAudio / offerToReceiveVideo
        kinds = {t.kind for t in self._pc.getTransceivers()}
        for kind in ("audio", "video"):
            if kind not in kinds:
                self._pc.addTransceiver(kind, direction="recvonly")

    async def create_offer(self) -> SessionDescription:
        self._ensure_receivers()
        return self._wrap(await self._pc.createOffer())

    async def create_answer(self) -> SessionDescription:
        return self._wrap(await self._pc.createAnswer())

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )
        local = self._pc.localDescription
        for candidate in candidates_from_sdp(local.sdp if local else ""):
            self._emit(LOCAL_CANDIDATE, candidate)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if candidate.is_end_of_candidates:
            return
        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        parsed = candidate_from_sdp(sdp)
        parsed.sdpMid = candidate.sdp_mid
        parsed.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(parsed)

    def list_senders(self) -> List[Any]:
        return self._pc.getSenders()

    def add_track(self, track: Any) -> Any:
        return self._pc.addTrack(track)

    async def replace_track(self, sender: Any, track: Any) -> None:
        sender.replaceTrack(track)

    async def close(self) -> None:
        await self._pc.close()
