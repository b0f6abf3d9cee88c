"""
Candidate exchange between the engine and the signaling store.

Outbound, every locally gathered candidate is written to the channel of the
local role. Inbound, candidates from the peer's channel come from two
sources, a one-time snapshot and a live INSERT subscription, and go through a
single apply path that holds them back until the remote description is set.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, List, Optional, Set

from p2p_call.core.call_state import Role
from p2p_call.core.engine import LOCAL_CANDIDATE, PeerConnectionEngine
from p2p_call.core.errors import StoreError
from p2p_call.core.signaling import (
    ANSWER_CANDIDATES_TABLE,
    OFFER_CANDIDATES_TABLE,
    CandidateRecord,
    IceCandidate,
)
from p2p_call.core.store import SignalingStore, Subscription
from p2p_call.logging_config import get_logger

logger = get_logger("candidate_relay")


def local_channel(role: Role) -> str:
    """Table this role publishes its candidates to."""
    return OFFER_CANDIDATES_TABLE if role is Role.CALLER else ANSWER_CANDIDATES_TABLE


def peer_channel(role: Role) -> str:
    """Table holding the other party's candidates."""
    return ANSWER_CANDIDATES_TABLE if role is Role.CALLER else OFFER_CANDIDATES_TABLE


class CandidateRelay:
    """
    Publishes local candidates and applies remote ones for one call.

    Remote candidates are applied strictly in arrival order and never before
    remote_description_set() has been called.
    """

    _STOP = object()

    def __init__(
        self,
        store: SignalingStore,
        engine: PeerConnectionEngine,
        call_id: str,
        role: Role,
    ) -> None:
        self.store = store
        self.engine = engine
        self.call_id = call_id
        self.role = role

        self._closed = False
        self._remote_ready = False
        self._draining = False
        self._pending: Deque[IceCandidate] = deque()
        self._seen_ids: Set[str] = set()

        self._outbound: asyncio.Queue = asyncio.Queue()
        self._publisher: Optional[asyncio.Task] = None
        self._consumer: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._unregister_local = None

        self.published_count = 0
        self.applied_count = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def tasks(self) -> List[asyncio.Task]:
        return [t for t in (self._publisher, self._consumer) if t is not None]

    # -- Outbound ----------------------------------------------------------

    def start_outbound(self) -> None:
        """Begin publishing candidates emitted by the engine."""
        if self._publisher is not None or self._closed:
            return
        self._unregister_local = self.engine.add_listener(
            LOCAL_CANDIDATE, self.on_local_candidate
        )
        self._publisher = asyncio.ensure_future(self._publish_loop())

    def on_local_candidate(self, candidate: IceCandidate) -> None:
        if self._closed:
            return
        if candidate.is_end_of_candidates:
            logger.debug("Local candidate gathering complete")
            return
        self._outbound.put_nowait(candidate)

    async def _publish_loop(self) -> None:
        table = local_channel(self.role)
        while True:
            candidate = await self._outbound.get()
            if candidate is self._STOP or self._closed:
                return
            record = CandidateRecord(call_id=self.call_id, ice=candidate)
            try:
                await self.store.insert(table, record.to_row())
                self.published_count += 1
                logger.debug(f"Published candidate to {table}: {candidate.candidate[:48]}")
            except StoreError as exc:
                logger.warning(f"Failed to publish candidate to {table}: {exc}")

    # -- Inbound -----------------------------------------------------------

    async def start_inbound(self) -> None:
        """
        Attach to the peer's channel.

        The live subscription is opened before the snapshot is read so nothing
        inserted in between is missed; rows seen in both are applied once.
        Snapshot rows are queued ahead of anything from the live stream.
        """
        if self._subscription is not None or self._closed:
            return
        table = peer_channel(self.role)
        self._subscription = await self.store.subscribe(
            table, "INSERT", where=("call_id", self.call_id)
        )
        if self._closed:
            self._subscription.close()
            return

        rows = await self.store.select_by_foreign_key(table, "call_id", self.call_id)
        if self._closed:
            return
        logger.debug(f"Snapshot of {table}: {len(rows)} candidate(s)")
        for row in rows:
            await self._receive_row(row)

        self._consumer = asyncio.ensure_future(self._consume(self._subscription))

    async def _consume(self, subscription: Subscription) -> None:
        async for event in subscription:
            if self._closed:
                break
            await self._receive_row(event.new)

    async def _receive_row(self, row: dict) -> None:
        try:
            record = CandidateRecord.from_row(row)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Ignoring malformed candidate row {row!r}: {exc}")
            return
        if record.call_id != str(self.call_id):
            return
        if record.id is not None:
            if record.id in self._seen_ids:
                return
            self._seen_ids.add(record.id)
        await self.apply(record.ice)

    async def apply(self, candidate: IceCandidate) -> None:
        """Single entry point for remote candidates."""
        if self._closed:
            return
        self._pending.append(candidate)
        if not self._remote_ready:
            logger.debug(f"Buffered remote candidate ({len(self._pending)} pending)")
            return
        await self._drain()

    async def remote_description_set(self) -> None:
        """Release buffered candidates; call once the remote description is applied."""
        if self._closed or self._remote_ready:
            return
        self._remote_ready = True
        if self._pending:
            logger.info(f"Flushing {len(self._pending)} buffered remote candidate(s)")
        await self._drain()

    async def _drain(self) -> None:
        # Only one drainer at a time; others leave their candidate in the queue
        if self._draining:
            return
        self._draining = True
        try:
            while self._pending and not self._closed:
                candidate = self._pending.popleft()
                try:
                    await self.engine.add_ice_candidate(candidate)
                    self.applied_count += 1
                except Exception as exc:
                    logger.warning(f"Engine rejected remote candidate {candidate.candidate!r}: {exc}")
        finally:
            self._draining = False

    # -- Shutdown ----------------------------------------------------------

    def close(self) -> None:
        """Stop publishing, consuming and applying. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        if self._unregister_local:
            self._unregister_local()
            self._unregister_local = None
        self._outbound.put_nowait(self._STOP)
        if self._subscription is not None:
            self._subscription.close()
        logger.debug(
            f"Relay closed (published {self.published_count}, applied {self.applied_count})"
        )
