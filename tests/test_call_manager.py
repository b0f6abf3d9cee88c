"""
tests/test_call_manager.py
--------------------------

Covers the Qt front: signals emitted for created / connected / ended /
failed calls and the one-call-at-a-time rule.
"""

import asyncio

import pytest

from p2p_call.core.call_manager import CallManager
from p2p_call.core.call_state import SessionPhase
from p2p_call.core.errors import CallSessionError, EngineSetupError, NegotiationError, SessionNotFound
from p2p_call.core.signaling import CALLS_TABLE, SessionDescription, offer_update

from fakes import FakeEngine, FakeTrack, eventually, factory_for


class SignalLog:
    def __init__(self, manager):
        self.created = []
        self.connected = []
        self.ended = []
        self.failed = []
        self.phases = []
        manager.call_created.connect(lambda call_id: self.created.append(call_id))
        manager.call_connected.connect(lambda call_id: self.connected.append(call_id))
        manager.call_ended.connect(lambda call_id, reason: self.ended.append((call_id, reason)))
        manager.call_failed.connect(lambda message: self.failed.append(message))
        manager.state_changed.connect(lambda phase, call_id: self.phases.append(phase))


@pytest.mark.asyncio
async def test_start_join_and_hangup(qapp, store, config):
    caller = CallManager(store, config, engine_factory=factory_for(FakeEngine("caller")))
    callee = CallManager(store, config, engine_factory=factory_for(FakeEngine("callee")))
    caller_log, callee_log = SignalLog(caller), SignalLog(callee)

    call_id = await caller.start_call([FakeTrack("audio")])
    assert call_id is not None
    assert caller_log.created == [call_id]
    assert caller.is_in_call
    assert caller.call_id == call_id

    assert await callee.join_call(call_id) == call_id
    await eventually(lambda: caller_log.connected == [call_id])
    assert callee_log.connected == [call_id]
    assert caller_log.phases[:3] == ["CREATING", "AWAITING_REMOTE_DESCRIPTION", "CONNECTED"]

    await caller.hangup()
    assert await asyncio.wait_for(callee.wait_ended(), 2) is not None
    assert caller_log.ended == [(call_id, "hangup")]
    assert callee_log.ended == [(call_id, "remote_ended")]
    assert not caller.is_in_call
    assert not callee.is_in_call


@pytest.mark.asyncio
async def test_join_unknown_call_reports_failure(qapp, store, config):
    manager = CallManager(store, config, engine_factory=factory_for(FakeEngine()))
    log = SignalLog(manager)

    assert await manager.join_call("nope") is None
    assert len(log.failed) == 1
    assert "nope" in log.failed[0]
    assert isinstance(manager.last_error, SessionNotFound)
    assert log.ended == [("", "setup_failed")]
    assert not manager.is_in_call


@pytest.mark.asyncio
async def test_missing_ice_configuration_fails_start(qapp, store, config):
    manager = CallManager(store, config)
    log = SignalLog(manager)

    assert await manager.start_call() is None
    assert isinstance(manager.last_error, EngineSetupError)
    assert len(log.failed) == 1
    assert log.created == []
    assert store.rows("calls") == []


@pytest.mark.asyncio
async def test_one_call_at_a_time(qapp, store, config):
    manager = CallManager(store, config, engine_factory=factory_for(FakeEngine()))
    await manager.start_call()

    with pytest.raises(RuntimeError):
        await manager.start_call()

    await manager.hangup()
    assert manager.session.phase is SessionPhase.CLOSED

    manager.engine_factory = factory_for(FakeEngine())
    assert await manager.start_call() is not None
    await manager.shutdown()
    assert not manager.is_in_call
    assert store.subscription_count == 0


@pytest.mark.asyncio
async def test_hangup_without_call_is_noop(qapp, store, config):
    manager = CallManager(store, config)
    await manager.hangup()
    assert await manager.wait_ended() is None


@pytest.mark.asyncio
async def test_malformed_offer_reports_failure(qapp, store, config):
    call_id = await store.insert(CALLS_TABLE, offer_update(SessionDescription("garbage", "offer")))
    engine = FakeEngine("callee")
    engine.fail_remote = True
    manager = CallManager(store, config, engine_factory=factory_for(engine))
    log = SignalLog(manager)

    assert await manager.join_call(call_id) is None
    assert isinstance(manager.last_error, NegotiationError)
    assert len(log.failed) == 1
    assert "malformed remote description" in log.failed[0]
    assert log.ended == [(call_id, "setup_failed")]
    assert not manager.is_in_call


@pytest.mark.asyncio
async def test_microphone_and_camera_switches(qapp, store, config):
    caller_engine = FakeEngine("caller")
    caller = CallManager(store, config, engine_factory=factory_for(caller_engine))
    callee = CallManager(store, config, engine_factory=factory_for(FakeEngine("callee")))
    changes = []
    caller.local_media_changed.connect(lambda kind, enabled: changes.append((kind, enabled)))

    with pytest.raises(CallSessionError):
        await caller.set_local_media_enabled("audio", False)

    microphone, camera = FakeTrack("audio"), FakeTrack("video")
    call_id = await caller.start_call([microphone, camera])
    await callee.join_call(call_id)

    await caller.set_local_media_enabled("audio", False)
    await caller.set_local_media_enabled("audio", False)
    await caller.set_local_media_enabled("video", False)
    await caller.set_local_media_enabled("video", True)

    assert changes == [("audio", False), ("video", False), ("video", True)]
    assert not caller.local_media_enabled("audio")
    assert caller.local_media_enabled("video")
    assert [s.track for s in caller_engine.senders] == [None, camera]

    await caller.hangup()
    assert microphone.stop_count == 1
    await asyncio.wait_for(callee.wait_ended(), 2)
