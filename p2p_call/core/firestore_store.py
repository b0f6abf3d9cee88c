"""
Cloud Firestore backend for the signaling store.

Collections (names configurable):
- calls/{callId}: offer_sdp, offer_type, answer_sdp, answer_type
- offerCandidates/{autoId}: call_id, candidate, sdpMid, sdpMLineIndex, usernameFragment
- answerCandidates/{autoId}: same shape

The Firestore client is synchronous; blocking calls run in the default
executor and snapshot-listener callbacks, which fire on Firestore's watch
thread, are handed to the event loop with call_soon_threadsafe.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud.firestore_v1.base_query import FieldFilter

from p2p_call.config import Config
from p2p_call.core.errors import StoreError
from p2p_call.core.signaling import EventFilter, StoreEvent
from p2p_call.core.store import CASCADES, Row, SignalingStore, Subscription, Where
from p2p_call.logging_config import get_logger

logger = get_logger("firestore_store")

_FIRESTORE_ERRORS = (GoogleAPIError, GoogleAuthError)

_CHANGE_TO_EVENT = {
    "ADDED": "INSERT",
    "MODIFIED": "UPDATE",
    "REMOVED": "DELETE",
}


def initialize_firebase(
    credentials_path: Optional[str] = None,
    project_id: Optional[str] = None,
    emulator_host: Optional[str] = None,
) -> firebase_admin.App:
    """
    Get or initialize the default Firebase Admin app.

    With an emulator host, no credentials are needed and FIRESTORE_EMULATOR_HOST
    is exported before the client is created.
    """
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    options = {"projectId": project_id} if project_id else None

    if emulator_host:
        os.environ["FIRESTORE_EMULATOR_HOST"] = emulator_host
        logger.info(f"Using Firestore emulator at {emulator_host}")
        return firebase_admin.initialize_app(
            options={"projectId": project_id or "demo-p2p-call"}
        )

    credentials_path = credentials_path or os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    if credentials_path:
        if not os.path.exists(credentials_path):
            raise StoreError(f"Firebase credentials not found: {credentials_path}")
        cred = credentials.Certificate(credentials_path)
        logger.info(f"Using service account from {credentials_path}")
    else:
        cred = credentials.ApplicationDefault()
        logger.info("Using application default credentials")

    try:
        return firebase_admin.initialize_app(cred, options)
    except ValueError as exc:
        raise StoreError(f"Firebase init failed: {exc}") from exc


def _row(snapshot: Any) -> Row:
    data = snapshot.to_dict() or {}
    data["id"] = snapshot.id
    return data


class FirestoreSignalingStore(SignalingStore):
    """SignalingStore over Firestore collections."""

    def __init__(self, client: Any, collections: Optional[Dict[str, str]] = None) -> None:
        self._db = client
        self._collections = dict(collections or {})
        self._watches: List[Any] = []

    @classmethod
    def from_config(cls, config: Config) -> "FirestoreSignalingStore":
        try:
            app = initialize_firebase(
                credentials_path=config.firebase_credentials_path,
                project_id=config.firebase_project_id,
                emulator_host=config.firestore_emulator_host,
            )
            client = firestore.client(app)
        except _FIRESTORE_ERRORS as exc:
            raise StoreError(f"Failed to create Firestore client: {exc}") from exc
        return cls(client, config.collection_names)

    def _collection(self, table: str) -> Any:
        return self._db.collection(self._collections.get(table, table))

    async def _run(self, description: str, func, *args) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except _FIRESTORE_ERRORS as exc:
            raise StoreError(f"{description} failed: {exc}") from exc

    async def insert(self, table: str, row: Row) -> str:
        data = {k: v for k, v in row.items() if k != "id"}

        def _insert() -> str:
            doc_ref = self._collection(table).document(row.get("id") or None)
            doc_ref.create(data)
            return doc_ref.id

        row_id = await self._run(f"insert into {table}", _insert)
        logger.debug(f"Inserted {table}/{row_id}")
        return row_id

    async def update(self, table: str, row_id: str, values: Row) -> None:
        await self._run(
            f"update {table}/{row_id}",
            lambda: self._collection(table).document(row_id).update(values),
        )

    async def delete(self, table: str, row_id: str) -> None:
        def _delete() -> int:
            batch = self._db.batch()
            count = 0
            for child_table, column in CASCADES.get(table, ()):
                query = self._collection(child_table).where(
                    filter=FieldFilter(column, "==", row_id)
                )
                for child in query.stream():
                    batch.delete(child.reference)
                    count += 1
            batch.delete(self._collection(table).document(row_id))
            batch.commit()
            return count

        cascaded = await self._run(f"delete {table}/{row_id}", _delete)
        logger.debug(f"Deleted {table}/{row_id} (+{cascaded} dependent rows)")

    async def select_by_id(self, table: str, row_id: str) -> Optional[Row]:
        snapshot = await self._run(
            f"select {table}/{row_id}",
            lambda: self._collection(table).document(row_id).get(),
        )
        return _row(snapshot) if snapshot.exists else None

    async def select_by_foreign_key(self, table: str, column: str, value: Any) -> List[Row]:
        def _select() -> List[Any]:
            query = self._collection(table).where(filter=FieldFilter(column, "==", value))
            return list(query.stream())

        snapshots = await self._run(f"select {table} where {column}", _select)
        # create_time order is insertion order; avoids needing a composite index
        snapshots.sort(key=lambda snap: snap.create_time)
        return [_row(snap) for snap in snapshots]

    async def subscribe(
        self, table: str, event: EventFilter = "*", where: Where = None
    ) -> Subscription:
        loop = asyncio.get_running_loop()
        subscription = Subscription(table, event, where)

        def on_snapshot(_docs, changes, _read_time) -> None:
            for change in changes:
                event_type = _CHANGE_TO_EVENT.get(change.type.name)
                if event_type is None:
                    continue
                row = _row(change.document)
                if event_type == "DELETE":
                    store_event = StoreEvent("DELETE", table, {}, row)
                else:
                    store_event = StoreEvent(event_type, table, row)
                loop.call_soon_threadsafe(subscription.push, store_event)

        def _watch() -> Any:
            if where is not None and where[0] == "id":
                return self._collection(table).document(str(where[1])).on_snapshot(on_snapshot)
            query = self._collection(table)
            if where is not None:
                query = query.where(filter=FieldFilter(where[0], "==", where[1]))
            return query.on_snapshot(on_snapshot)

        watch = await self._run(f"subscribe to {table}", _watch)
        self._watches.append(watch)

        def unsubscribe(_subscription: Subscription) -> None:
            if watch in self._watches:
                self._watches.remove(watch)
            watch.unsubscribe()

        subscription.on_close = unsubscribe
        logger.debug(f"Listening on {table} ({event}) where={where}")
        return subscription

    async def close(self) -> None:
        for watch in list(self._watches):
            watch.unsubscribe()
        self._watches.clear()
