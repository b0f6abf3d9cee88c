from dataclasses import dataclass
from typing import Literal, Dict, Any, Optional
import uuid


CALLS_TABLE = "calls"
OFFER_CANDIDATES_TABLE = "offerCandidates"
ANSWER_CANDIDATES_TABLE = "answerCandidates"

CANDIDATE_TABLES = (OFFER_CANDIDATES_TABLE, ANSWER_CANDIDATES_TABLE)

StoreEventType = Literal["INSERT", "UPDATE", "DELETE"]
EventFilter = Literal["INSERT", "UPDATE", "DELETE", "*"]

SdpType = Literal["offer", "answer"]


@dataclass(frozen=True)
class SessionDescription:
    sdp: str
    type: SdpType


@dataclass(frozen=True)
class IceCandidate:
    """
    A connectivity candidate in the browser's RTCIceCandidateInit shape.

    ``candidate`` keeps the ``candidate:`` prefix so rows written by this
    package and by browser peers are interchangeable.
    """

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None
    username_fragment: Optional[str] = None

    @property
    def is_end_of_candidates(self) -> bool:
        return not self.candidate.strip()

    def to_json(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
            "usernameFragment": self.username_fragment,
        }

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "IceCandidate":
        mline_index = payload.get("sdpMLineIndex")
        return cls(
            candidate=payload.get("candidate") or "",
            sdp_mid=payload.get("sdpMid"),
            sdp_mline_index=int(mline_index) if mline_index is not None else None,
            username_fragment=payload.get("usernameFragment"),
        )


@dataclass(frozen=True)
class CandidateRecord:
    call_id: str
    ice: IceCandidate
    id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        row = {"call_id": self.call_id}
        row.update(self.ice.to_json())
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CandidateRecord":
        return cls(
            call_id=str(row["call_id"]),
            ice=IceCandidate.from_json(row),
            id=str(row["id"]) if row.get("id") is not None else None,
        )


@dataclass
class CallRecord:
    id: str
    offer_sdp: Optional[str] = None
    offer_type: Optional[str] = None
    answer_sdp: Optional[str] = None
    answer_type: Optional[str] = None

    @property
    def offer(self) -> Optional[SessionDescription]:
        if not self.offer_sdp:
            return None
        return SessionDescription(sdp=self.offer_sdp, type=self.offer_type or "offer")

    @property
    def answer(self) -> Optional[SessionDescription]:
        if not self.answer_sdp:
            return None
        return SessionDescription(sdp=self.answer_sdp, type=self.answer_type or "answer")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CallRecord":
        return cls(
            id=str(row["id"]),
            offer_sdp=row.get("offer_sdp"),
            offer_type=row.get("offer_type"),
            answer_sdp=row.get("answer_sdp"),
            answer_type=row.get("answer_type"),
        )


@dataclass(frozen=True)
class StoreEvent:
    event_type: StoreEventType
    table: str
    new: Dict[str, Any]
    old: Optional[Dict[str, Any]] = None

    @property
    def row(self) -> Dict[str, Any]:
        """The row the event is about (the old row for deletions)."""
        if self.event_type == "DELETE":
            return self.old or self.new
        return self.new


def new_call_id() -> str:
    return str(uuid.uuid4())


def offer_update(description: SessionDescription) -> Dict[str, Any]:
    return {"offer_sdp": description.sdp, "offer_type": description.type}


def answer_update(description: SessionDescription) -> Dict[str, Any]:
    return {"answer_sdp": description.sdp, "answer_type": description.type}
