"""
Watches for the two events that end a session from outside: the call row
disappearing from the store and the engine reporting ``disconnected``.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional

from p2p_call.core.call_state import CloseReason
from p2p_call.core.engine import CONNECTION_STATE, PeerConnectionEngine
from p2p_call.core.signaling import CALLS_TABLE
from p2p_call.core.store import SignalingStore, Subscription
from p2p_call.logging_config import get_logger

logger = get_logger("lifecycle")

TEARDOWN_STATES = frozenset({"disconnected"})


class LifecycleWatcher:
    """
    Calls ``on_terminate`` when the peer hangs up or the link drops.

    The watcher may fire more than once (e.g. deletion right after a
    disconnect); ``on_terminate`` is expected to be idempotent.
    """

    def __init__(
        self,
        store: SignalingStore,
        engine: PeerConnectionEngine,
        call_id: str,
        on_terminate: Callable[[CloseReason], Awaitable[None]],
    ) -> None:
        self.store = store
        self.engine = engine
        self.call_id = call_id
        self.on_terminate = on_terminate

        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self._terminate_task: Optional[asyncio.Task] = None
        self._unregister_state = None
        self._installed = False
        self._stopped = False

    @property
    def installed(self) -> bool:
        return self._installed and not self._stopped

    @property
    def tasks(self) -> List[asyncio.Task]:
        """Background tasks started by the watcher, for the owner to await."""
        return [t for t in (self._task, self._terminate_task) if t is not None]

    async def install(self) -> None:
        if self._installed or self._stopped:
            return
        self._installed = True
        self._unregister_state = self.engine.add_listener(
            CONNECTION_STATE, self._on_connection_state
        )
        self._subscription = await self.store.subscribe(
            CALLS_TABLE, "DELETE", where=("id", self.call_id)
        )
        if self._stopped:
            self._subscription.close()
            return
        self._task = asyncio.ensure_future(self._watch_deletion(self._subscription))
        logger.debug(f"Watching call {self.call_id} for deletion")

    async def _watch_deletion(self, subscription: Subscription) -> None:
        async for _event in subscription:
            if self._stopped:
                break
            logger.info(f"Call {self.call_id} was deleted by the other side")
            await self.on_terminate(CloseReason.REMOTE_ENDED)
            break

    def _on_connection_state(self, state: str) -> None:
        if self._stopped or state not in TEARDOWN_STATES:
            return
        if self._terminate_task is not None:
            return
        logger.info(f"Peer connection {state}, ending call {self.call_id}")
        self._terminate_task = asyncio.ensure_future(self.on_terminate(CloseReason.DISCONNECTED))

    def uninstall(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._unregister_state:
            self._unregister_state()
            self._unregister_state = None
        if self._subscription is not None:
            self._subscription.close()
