"""
Call-session negotiation coordinator.

One coordinator instance drives one call for one party. The Caller creates
the call row and publishes an offer; the Callee reads the offer and writes an
answer. Candidate exchange is delegated to :class:`CandidateRelay` and
remote hang-up / link loss detection to :class:`LifecycleWatcher`.

Every continuation after an ``await`` re-checks the closed flag, so a
teardown that lands while setup is suspended stops the setup at its next
step instead of letting it touch the engine or the store.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from p2p_call.core.call_state import (
    CallSessionStateMachine,
    CloseReason,
    Role,
    SessionInfo,
    SessionPhase,
)
from p2p_call.core.candidate_relay import CandidateRelay
from p2p_call.core.engine import CONNECTION_STATE, REMOTE_TRACK, PeerConnectionEngine
from p2p_call.core.errors import (
    CallSessionError,
    NegotiationError,
    SessionAlreadyAnswered,
    SessionClosed,
    SessionNotFound,
    StoreError,
)
from p2p_call.core.lifecycle import LifecycleWatcher
from p2p_call.core.signaling import (
    CALLS_TABLE,
    CallRecord,
    SessionDescription,
    StoreEvent,
    answer_update,
    offer_update,
)
from p2p_call.core.store import SignalingStore, Subscription
from p2p_call.logging_config import SessionLogAdapter, get_logger

EngineFactory = Callable[[], Awaitable[PeerConnectionEngine]]

T = TypeVar("T")


class CallSessionCoordinator:
    """
    Drives the offer/answer handshake for a single call.

    Args:
        store: Signaling store shared with the peer
        engine_factory: Coroutine function returning a configured engine. It
            must resolve the ICE servers itself and raise EngineSetupError when
            none are usable; it is awaited before any call row is touched.
        local_tracks: Media tracks owned by this session (stopped on teardown)
    """

    def __init__(
        self,
        store: SignalingStore,
        engine_factory: EngineFactory,
        local_tracks: Iterable[Any] = (),
    ) -> None:
        self.store = store
        self._engine_factory = engine_factory
        self.local_tracks: List[Any] = list(local_tracks)

        self.engine: Optional[PeerConnectionEngine] = None
        self.relay: Optional[CandidateRelay] = None
        self.watcher: Optional[LifecycleWatcher] = None

        self._machine = CallSessionStateMachine()
        self._machine.on_state_changed = self._state_changed
        self._log = SessionLogAdapter(get_logger("coordinator"))

        self._closed = False
        self._closed_event = asyncio.Event()
        self._answer_subscription: Optional[Subscription] = None
        self._answer_task: Optional[asyncio.Task] = None
        self._engine_unregisters: List[Callable[[], None]] = []
        # kind -> (sender, track) for media switched off by the user
        self._muted: Dict[str, Tuple[Any, Any]] = {}
        self._remote_applied = False
        self._offer_written = False
        self._answer_written = False
        self._row_deleted = False

        # Presentation hooks
        self.on_state_changed: Optional[Callable[[SessionPhase, Optional[SessionInfo]], None]] = None
        self.on_remote_track: Optional[Callable[[Any], None]] = None
        self.on_connection_state: Optional[Callable[[str], None]] = None
        self.on_closed: Optional[Callable[[Optional[str], CloseReason], None]] = None

    # -- Observable state --------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self._machine.phase

    @property
    def role(self) -> Optional[Role]:
        return self._machine.role

    @property
    def call_id(self) -> Optional[str]:
        return self._machine.call_id

    @property
    def close_reason(self) -> Optional[CloseReason]:
        session = self._machine.session
        return session.close_reason if session else None

    @property
    def closed(self) -> bool:
        return self._closed

    async def wait_closed(self) -> CloseReason:
        await self._closed_event.wait()
        return self.close_reason or CloseReason.HANGUP

    def _state_changed(self, phase: SessionPhase, session: Optional[SessionInfo]) -> None:
        self._log.info(f"Session is now {phase.name}")
        if self.on_state_changed:
            self.on_state_changed(phase, session)

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosed("Session was torn down during setup")

    # -- Setup helpers -----------------------------------------------------

    async def _prepare_engine(self) -> PeerConnectionEngine:
        engine = await self._engine_factory()
        self.engine = engine
        if self._closed:
            await engine.close()
            raise SessionClosed("Session was torn down during setup")
        for track in self.local_tracks:
            engine.add_track(track)
        return engine

    def _bind_call(self, call_id: str) -> None:
        self._machine.bind_call_id(call_id)
        self._log.bind(call_id=call_id)

    async def _attach(self, engine: PeerConnectionEngine, call_id: str, role: Role) -> None:
        """Register engine listeners, start the relay and the lifecycle watcher."""
        self._engine_unregisters.append(engine.add_listener(REMOTE_TRACK, self._remote_track))
        self._engine_unregisters.append(
            engine.add_listener(CONNECTION_STATE, self._connection_state)
        )

        self.relay = CandidateRelay(self.store, engine, call_id, role)
        self.relay.start_outbound()

        self.watcher = LifecycleWatcher(self.store, engine, call_id, self.teardown)
        await self.watcher.install()
        self._ensure_open()

        await self.relay.start_inbound()
        self._ensure_open()

    def _remote_track(self, track: Any) -> None:
        if self._closed:
            return
        self._log.info(f"Remote {getattr(track, 'kind', 'media')} track arrived")
        if self.on_remote_track:
            self.on_remote_track(track)

    def _connection_state(self, state: str) -> None:
        if self.on_connection_state and not self._closed:
            self.on_connection_state(state)

    async def _negotiate(self, step: str, operation: Awaitable[T]) -> T:
        """Await an engine description step, reporting its failure as NegotiationError."""
        try:
            return await operation
        except CallSessionError:
            raise
        except Exception as exc:
            raise NegotiationError(f"Could not {step}: {exc}") from exc

    async def _setup_failed(self, exc: BaseException) -> None:
        if isinstance(exc, SessionClosed):
            return
        if isinstance(exc, SessionNotFound):
            self._log.warning(str(exc))
        else:
            self._log.error(f"Call setup failed: {exc}")
        await self.teardown(CloseReason.SETUP_FAILED)

    # -- Caller ------------------------------------------------------------

    async def create_session(self) -> str:
        """
        Start a new call as the Caller.

        Returns:
            The new call id, to be shared with the Callee

        Raises:
            EngineSetupError: no usable ICE configuration (no row is created)
            StoreError: the call row could not be created or written
            NegotiationError: the engine could not produce or apply the offer
            SessionClosed: teardown ran before setup finished
        """
        self._machine.begin(Role.CALLER)
        self._log.bind(role=Role.CALLER.value)
        try:
            engine = await self._prepare_engine()

            call_id = await self.store.insert(CALLS_TABLE, {})
            self._bind_call(call_id)
            if self._closed:
                # teardown ran before the id was known
                await self._delete_row()
                raise SessionClosed("Session was torn down during setup")
            self._log.info("Created call row")

            await self._attach(engine, call_id, Role.CALLER)

            offer = await self._negotiate("create offer", engine.create_offer())
            self._ensure_open()
            await self._negotiate("apply local offer", engine.set_local_description(offer))
            self._ensure_open()

            self._answer_subscription = await self.store.subscribe(
                CALLS_TABLE, "UPDATE", where=("id", call_id)
            )
            self._ensure_open()
            self._answer_task = asyncio.ensure_future(
                self._watch_for_answer(self._answer_subscription)
            )

            self._machine.advance(SessionPhase.AWAITING_REMOTE_DESCRIPTION)
            await self._write_offer(engine.local_description or offer)
            self._ensure_open()
            return call_id
        except BaseException as exc:
            await self._setup_failed(exc)
            raise

    async def _write_offer(self, offer: SessionDescription) -> None:
        if self._offer_written:
            return
        self._offer_written = True
        await self.store.update(CALLS_TABLE, self.call_id, offer_update(offer))
        self._log.info("Offer published, waiting for an answer")

    async def _watch_for_answer(self, subscription: Subscription) -> None:
        async for event in subscription:
            if self._closed:
                break
            await self._on_call_updated(event)

    async def _on_call_updated(self, event: StoreEvent) -> None:
        record = CallRecord.from_row(event.new)
        answer = record.answer
        if answer is None or self._remote_applied or self._closed:
            return
        # Claimed before the await so redelivered updates cannot apply it twice
        self._remote_applied = True
        self._log.info("Answer received")
        try:
            await self.engine.set_remote_description(answer)
        except Exception as exc:
            self._log.error(f"Failed to apply answer: {exc}")
            await self.teardown(CloseReason.SETUP_FAILED)
            return
        if self._closed:
            return
        await self.relay.remote_description_set()
        if self._closed:
            return
        self._machine.advance(SessionPhase.CONNECTED)
        if self._answer_subscription is not None:
            self._answer_subscription.close()

    # -- Callee ------------------------------------------------------------

    async def join_session(self, call_id: str) -> str:
        """
        Join an existing call as the Callee.

        Raises:
            EngineSetupError: no usable ICE configuration (the row is not read)
            SessionNotFound: no call with that id, or it has no offer yet
            SessionAlreadyAnswered: someone else already answered the call
            StoreError: the row could not be read or the answer not written
            NegotiationError: the stored offer was rejected or no answer could be made
            SessionClosed: teardown ran before setup finished
        """
        self._machine.begin(Role.CALLEE)
        self._log.bind(role=Role.CALLEE.value)
        try:
            engine = await self._prepare_engine()

            row = await self.store.select_by_id(CALLS_TABLE, call_id)
            self._ensure_open()
            if row is None:
                raise SessionNotFound(call_id)
            record = CallRecord.from_row(row)
            offer = record.offer
            if offer is None:
                raise SessionNotFound(call_id, "no offer published yet")
            if record.answer is not None:
                raise SessionAlreadyAnswered(call_id)

            self._bind_call(record.id)
            self._log.info("Joining call")
            await self._attach(engine, record.id, Role.CALLEE)

            self._machine.advance(SessionPhase.AWAITING_REMOTE_DESCRIPTION)
            self._remote_applied = True
            await self._negotiate("apply remote offer", engine.set_remote_description(offer))
            self._ensure_open()
            await self.relay.remote_description_set()
            self._ensure_open()

            answer = await self._negotiate("create answer", engine.create_answer())
            self._ensure_open()
            await self._negotiate("apply local answer", engine.set_local_description(answer))
            self._ensure_open()
            await self._write_answer(engine.local_description or answer)
            self._ensure_open()

            self._machine.advance(SessionPhase.CONNECTED)
            return record.id
        except BaseException as exc:
            await self._setup_failed(exc)
            raise

    async def _write_answer(self, answer: SessionDescription) -> None:
        if self._answer_written:
            return
        self._answer_written = True
        await self.store.update(CALLS_TABLE, self.call_id, answer_update(answer))
        self._log.info("Answer published")

    # -- Media -------------------------------------------------------------

    def _sender_for(self, kind: str) -> Optional[Any]:
        return next(
            (
                s
                for s in self.engine.list_senders()
                if s.track is not None and s.track.kind == kind
            ),
            None,
        )

    async def replace_local_track(self, track: Any) -> None:
        """
        Swap the outgoing track of the same kind (camera change, screen share).

        Adds the track when no sender of that kind exists. The previously
        owned track of that kind is stopped. If that kind is switched off the
        new track is kept back until it is switched on again.
        """
        if self._closed or self.engine is None:
            raise SessionClosed("No active session")

        muted = self._muted.get(track.kind)
        if muted is not None:
            self._muted[track.kind] = (muted[0], track)
        else:
            sender = self._sender_for(track.kind)
            if sender is not None:
                await self.engine.replace_track(sender, track)
            else:
                self.engine.add_track(track)

        for old in [t for t in self.local_tracks if t.kind == track.kind and t is not track]:
            old.stop()
            self.local_tracks.remove(old)
        if track not in self.local_tracks:
            self.local_tracks.append(track)
        self._log.info(f"Replaced local {track.kind} track")

    def local_media_enabled(self, kind: str) -> bool:
        return kind not in self._muted

    async def set_local_media_enabled(self, kind: str, enabled: bool) -> bool:
        """
        Switch outgoing ``audio`` (microphone) or ``video`` (camera) on or off.

        Switching off detaches the track from its sender without stopping it;
        the peer keeps the connection and just stops receiving media.

        Returns:
            True if the state changed, False if it already was as requested
            or there is no sender of that kind
        """
        if self._closed or self.engine is None:
            raise SessionClosed("No active session")

        if enabled:
            muted = self._muted.pop(kind, None)
            if muted is None:
                return False
            sender, track = muted
            await self.engine.replace_track(sender, track)
        else:
            if kind in self._muted:
                return False
            sender = self._sender_for(kind)
            if sender is None:
                return False
            self._muted[kind] = (sender, sender.track)
            await self.engine.replace_track(sender, None)

        self._log.info(f"Local {kind} {'enabled' if enabled else 'disabled'}")
        return True

    # -- Teardown ----------------------------------------------------------

    def _owned_tasks(self) -> List[asyncio.Task]:
        tasks = [self._answer_task] if self._answer_task is not None else []
        if self.relay is not None:
            tasks.extend(self.relay.tasks)
        if self.watcher is not None:
            tasks.extend(self.watcher.tasks)
        return tasks

    async def _join_tasks(self) -> None:
        # The task running teardown may itself be one of ours
        current = asyncio.current_task()
        tasks = [t for t in self._owned_tasks() if t is not current]
        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self._log.error(f"Background task failed: {result!r}")

    async def teardown(self, reason: CloseReason = CloseReason.HANGUP) -> None:
        """
        End the session. Only the first call does anything.

        Background tasks are awaited once their inputs are closed, so no
        candidate write can land after the call row is deleted. Closing the
        engine, stopping tracks and deleting the call row are each attempted
        once; failures are logged and do not stop the rest.
        """
        if self._closed:
            return
        self._closed = True
        self._log.info(f"Tearing down ({reason.value})")

        if self.relay is not None:
            self.relay.close()
        if self.watcher is not None:
            self.watcher.uninstall()
        if self._answer_subscription is not None:
            self._answer_subscription.close()
        for unregister in self._engine_unregisters:
            unregister()
        self._engine_unregisters.clear()

        await self._join_tasks()

        if self.engine is not None:
            try:
                await self.engine.close()
            except Exception as exc:
                self._log.warning(f"Error closing peer connection: {exc}")

        for track in self.local_tracks:
            try:
                track.stop()
            except Exception as exc:
                self._log.warning(f"Error stopping local track: {exc}")

        await self._delete_row()

        self._machine.close(reason)
        self._closed_event.set()
        if self.on_closed:
            self.on_closed(self.call_id, reason)

    async def _delete_row(self) -> None:
        if self.call_id is None or self._row_deleted:
            return
        self._row_deleted = True
        try:
            await self.store.delete(CALLS_TABLE, self.call_id)
            self._log.info("Deleted call row")
        except StoreError as exc:
            self._log.warning(f"Failed to delete call row: {exc}")
