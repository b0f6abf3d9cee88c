"""
Signaling store contract and an in-process implementation.

A store holds the ``calls`` table and the two candidate tables and delivers
change notifications as :class:`StoreEvent` objects through
:class:`Subscription` async iterators. Notifications for one subscription are
delivered in the order the changes happened; nothing is promised across
subscriptions.
"""

from __future__ import annotations

import abc
import asyncio
import copy
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

from p2p_call.core.errors import StoreError
from p2p_call.core.signaling import (
    CALLS_TABLE,
    CANDIDATE_TABLES,
    EventFilter,
    StoreEvent,
    new_call_id,
)
from p2p_call.logging_config import get_logger

logger = get_logger("store")

Row = Dict[str, Any]
Where = Optional[Tuple[str, Any]]

# A deleted call takes its candidate rows with it
CASCADES: Dict[str, Tuple[Tuple[str, str], ...]] = {
    CALLS_TABLE: tuple((table, "call_id") for table in CANDIDATE_TABLES),
}


def _matches(row: Optional[Row], where: Where) -> bool:
    if where is None:
        return True
    if row is None:
        return False
    column, value = where
    return str(row.get(column)) == str(value)


class Subscription:
    """
    Async stream of store events for one table / event filter / predicate.

    Events pushed before the consumer starts iterating are kept in order.
    Iteration ends once close() is called.
    """

    _CLOSED = object()

    def __init__(
        self,
        table: str,
        event: EventFilter = "*",
        where: Where = None,
        on_close: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.table = table
        self.event = event
        self.where = where
        self._queue: asyncio.Queue = asyncio.Queue()
        self.on_close = on_close
        self.closed = False

    def accepts(self, event: StoreEvent) -> bool:
        if event.table != self.table:
            return False
        if self.event != "*" and event.event_type != self.event:
            return False
        return _matches(event.row, self.where)

    def push(self, event: StoreEvent) -> None:
        if self.closed or not self.accepts(event):
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(self._CLOSED)
        if self.on_close:
            self.on_close(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StoreEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item

    def __repr__(self) -> str:
        return f"<Subscription {self.table} {self.event} where={self.where}>"


class SignalingStore(abc.ABC):
    """Relational records plus change notifications."""

    @abc.abstractmethod
    async def insert(self, table: str, row: Row) -> str:
        """Insert a row and return its id."""

    @abc.abstractmethod
    async def update(self, table: str, row_id: str, values: Row) -> None:
        """Update fields of an existing row."""

    @abc.abstractmethod
    async def delete(self, table: str, row_id: str) -> None:
        """Delete a row (and the rows that cascade from it)."""

    @abc.abstractmethod
    async def select_by_id(self, table: str, row_id: str) -> Optional[Row]:
        """Return the row with ``id == row_id`` or None."""

    @abc.abstractmethod
    async def select_by_foreign_key(self, table: str, column: str, value: Any) -> List[Row]:
        """Return matching rows in insertion order."""

    @abc.abstractmethod
    async def subscribe(
        self, table: str, event: EventFilter = "*", where: Where = None
    ) -> Subscription:
        """
        Open a live notification stream.

        Changes made after this call are reported. Backends whose change feeds
        start with the current contents (Firestore) also report existing rows
        as INSERT events, so consumers must tolerate rows they already know.
        """

    async def close(self) -> None:
        """Release backend resources."""


class InMemorySignalingStore(SignalingStore):
    """
    Process-local store with the same contract as the hosted backend.

    Used for loopback calls inside one process and in tests. Notifications go
    through each subscription's queue, so consumers observe them
    asynchronously just like remote change feeds.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, "OrderedDict[str, Row]"] = {}
        self._subscriptions: List[Subscription] = []

    def _table(self, table: str) -> "OrderedDict[str, Row]":
        return self._tables.setdefault(table, OrderedDict())

    def rows(self, table: str) -> List[Row]:
        """Snapshot of a table, for inspection."""
        return [copy.deepcopy(row) for row in self._table(table).values()]

    def _publish(self, event: StoreEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription.push(event)

    async def insert(self, table: str, row: Row) -> str:
        row_id = str(row.get("id") or new_call_id())
        rows = self._table(table)
        if row_id in rows:
            raise StoreError(f"Duplicate id {row_id} in {table}")
        stored = dict(row, id=row_id)
        rows[row_id] = stored
        logger.debug(f"INSERT {table}/{row_id}")
        self._publish(StoreEvent("INSERT", table, copy.deepcopy(stored)))
        return row_id

    async def update(self, table: str, row_id: str, values: Row) -> None:
        rows = self._table(table)
        if row_id not in rows:
            raise StoreError(f"No row {row_id} in {table}")
        old = copy.deepcopy(rows[row_id])
        rows[row_id].update(values)
        logger.debug(f"UPDATE {table}/{row_id}: {sorted(values)}")
        self._publish(StoreEvent("UPDATE", table, copy.deepcopy(rows[row_id]), old))

    async def delete(self, table: str, row_id: str) -> None:
        rows = self._table(table)
        old = rows.pop(row_id, None)
        if old is None:
            return
        for child_table, column in CASCADES.get(table, ()):
            children = self._table(child_table)
            for child_id in [k for k, v in children.items() if _matches(v, (column, row_id))]:
                await self.delete(child_table, child_id)
        logger.debug(f"DELETE {table}/{row_id}")
        self._publish(StoreEvent("DELETE", table, {}, old))

    async def select_by_id(self, table: str, row_id: str) -> Optional[Row]:
        row = self._table(table).get(str(row_id))
        return copy.deepcopy(row) if row is not None else None

    async def select_by_foreign_key(self, table: str, column: str, value: Any) -> List[Row]:
        return [
            copy.deepcopy(row)
            for row in self._table(table).values()
            if _matches(row, (column, value))
        ]

    async def subscribe(
        self, table: str, event: EventFilter = "*", where: Where = None
    ) -> Subscription:
        subscription = Subscription(table, event, where, on_close=self._drop)
        self._subscriptions.append(subscription)
        return subscription

    def _drop(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
