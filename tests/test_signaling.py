from p2p_call.core.signaling import (
    CallRecord,
    CandidateRecord,
    IceCandidate,
    SessionDescription,
    StoreEvent,
    answer_update,
    offer_update,
)


def test_candidate_row_uses_browser_field_names():
    ice = IceCandidate(
        candidate="candidate:1 1 udp 2122260223 10.0.0.2 54321 typ host",
        sdp_mid="0",
        sdp_mline_index=0,
        username_fragment="abcd",
    )
    row = CandidateRecord(call_id="call-1", ice=ice).to_row()

    assert row == {
        "call_id": "call-1",
        "candidate": ice.candidate,
        "sdpMid": "0",
        "sdpMLineIndex": 0,
        "usernameFragment": "abcd",
    }


def test_candidate_from_browser_row():
    record = CandidateRecord.from_row(
        {"id": 7, "call_id": "c", "candidate": "candidate:x", "sdpMid": "1", "sdpMLineIndex": "1"}
    )
    assert record.id == "7"
    assert record.ice.sdp_mline_index == 1
    assert record.ice.username_fragment is None
    assert not record.ice.is_end_of_candidates


def test_empty_candidate_means_end_of_candidates():
    assert IceCandidate.from_json({"candidate": ""}).is_end_of_candidates
    assert IceCandidate.from_json({}).is_end_of_candidates


def test_call_record_descriptions():
    record = CallRecord.from_row({"id": "c"})
    assert record.offer is None
    assert record.answer is None

    row = {"id": "c"}
    row.update(offer_update(SessionDescription(sdp="v=0 o", type="offer")))
    record = CallRecord.from_row(row)
    assert record.offer == SessionDescription(sdp="v=0 o", type="offer")
    assert record.answer is None

    row.update(answer_update(SessionDescription(sdp="v=0 a", type="answer")))
    assert CallRecord.from_row(row).answer.type == "answer"


def test_delete_event_row_is_old_row():
    event = StoreEvent("DELETE", "calls", {}, {"id": "c"})
    assert event.row == {"id": "c"}
    assert StoreEvent("INSERT", "calls", {"id": "d"}).row == {"id": "d"}
