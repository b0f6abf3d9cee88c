"""
tests/test_call_state.py
------------------------

Covers the negotiation phases a session may move through.
"""

import pytest

from p2p_call.core.call_state import (
    CallSessionStateMachine,
    CloseReason,
    InvalidTransition,
    Role,
    SessionPhase,
)


def test_caller_path():
    machine = CallSessionStateMachine()
    seen = []
    machine.on_state_changed = lambda phase, session: seen.append(phase)

    machine.begin(Role.CALLER)
    machine.bind_call_id("abc")
    machine.advance(SessionPhase.AWAITING_REMOTE_DESCRIPTION)
    machine.advance(SessionPhase.CONNECTED)

    assert seen == [
        SessionPhase.CREATING,
        SessionPhase.AWAITING_REMOTE_DESCRIPTION,
        SessionPhase.CONNECTED,
    ]
    assert machine.role is Role.CALLER
    assert machine.call_id == "abc"


def test_callee_starts_joining():
    machine = CallSessionStateMachine()
    machine.begin(Role.CALLEE, call_id="xyz")
    assert machine.phase is SessionPhase.JOINING
    assert machine.phase.is_negotiating
    assert machine.call_id == "xyz"


def test_cannot_skip_phases():
    machine = CallSessionStateMachine()
    machine.begin(Role.CALLER)
    with pytest.raises(InvalidTransition):
        machine.advance(SessionPhase.CONNECTED)


def test_cannot_begin_twice():
    machine = CallSessionStateMachine()
    machine.begin(Role.CALLER)
    with pytest.raises(InvalidTransition):
        machine.begin(Role.CALLEE)


def test_closed_only_through_close():
    machine = CallSessionStateMachine()
    machine.begin(Role.CALLER)
    with pytest.raises(InvalidTransition):
        machine.advance(SessionPhase.CLOSED)


def test_close_from_any_phase_and_only_once():
    machine = CallSessionStateMachine()
    machine.begin(Role.CALLEE)
    assert machine.close(CloseReason.SETUP_FAILED) is True
    assert machine.is_closed
    assert machine.session.close_reason is CloseReason.SETUP_FAILED

    assert machine.close(CloseReason.HANGUP) is False
    assert machine.session.close_reason is CloseReason.SETUP_FAILED

    with pytest.raises(InvalidTransition):
        machine.advance(SessionPhase.AWAITING_REMOTE_DESCRIPTION)


def test_close_from_idle():
    machine = CallSessionStateMachine()
    assert machine.close(CloseReason.HANGUP) is True
    assert machine.session is None
    assert machine.phase is SessionPhase.CLOSED
