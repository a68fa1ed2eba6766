# app/services/mongo_store.py
import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import AsyncMongoClient, ReturnDocument, UpdateOne
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError
from pymongo.errors import OperationFailure, PyMongoError

from app.core.errors import NotFound, TransientStoreError
from app.services.document_store import (
    SERVER_TIMESTAMP,
    Document,
    DuplicateKeyError,
    ErrorCallback,
    Filters,
    Increment,
    IndexUnavailableError,
    LiveQueryUnavailableError,
    PreconditionFailed,
    SnapshotCallback,
    StrictClock,
    Unsubscribe,
)

logger = logging.getLogger(__name__)

# Change streams need a replica set or sharded cluster
CHANGE_STREAM_UNSUPPORTED = {40573}
# Sorts that would need an index (or more memory than the server allows)
SORT_NEEDS_INDEX = {96, 292}


def from_mongo(raw: Optional[Dict[str, Any]]) -> Optional[Document]:
    if raw is None:
        return None
    doc = dict(raw)
    doc["id"] = doc.pop("_id")
    return doc


def update_spec(changes: Document, clock: StrictClock) -> Dict[str, Dict[str, Any]]:
    """Translates store changes into `$set` / `$inc` operators."""
    spec: Dict[str, Dict[str, Any]] = {}
    ts = None
    for field, value in changes.items():
        if value is SERVER_TIMESTAMP:
            ts = ts or clock.now()
            spec.setdefault("$set", {})[field] = ts
        elif isinstance(value, Increment):
            spec.setdefault("$inc", {})[field] = value.amount
        else:
            spec.setdefault("$set", {})[field] = value
    return spec


def new_document(data: Document, clock: StrictClock) -> Document:
    ts = None
    doc = {}
    for field, value in data.items():
        if value is SERVER_TIMESTAMP:
            ts = ts or clock.now()
            doc[field] = ts
        elif isinstance(value, Increment):
            doc[field] = value.amount
        else:
            doc[field] = value
    return doc


def _translate(exc: PyMongoError) -> TransientStoreError:
    if isinstance(exc, OperationFailure) and exc.code in SORT_NEEDS_INDEX:
        return IndexUnavailableError(str(exc))
    if isinstance(exc, OperationFailure) and exc.code in CHANGE_STREAM_UNSUPPORTED:
        return LiveQueryUnavailableError(str(exc))
    return TransientStoreError(f"Document store unavailable: {exc}")


class MongoDocumentStore:
    """
    MongoDB backend. Conditional writes map onto filtered single-document
    operations (`find_one_and_update`, `delete_one`), batches run inside a
    transaction and watches follow change streams, re-reading the query on
    every change.
    """

    def __init__(self, client: AsyncMongoClient, db_name: str):
        self.client = client
        self.db = client[db_name]
        # BSON dates keep milliseconds
        self._clock = StrictClock(resolution=timedelta(milliseconds=1))

    @classmethod
    def from_uri(cls, uri: str, db_name: str) -> "MongoDocumentStore":
        return cls(AsyncMongoClient(uri, tz_aware=True, serverSelectionTimeoutMS=5000), db_name)

    async def close(self) -> None:
        await self.client.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            return from_mongo(await self.db[collection].find_one({"_id": doc_id}))
        except PyMongoError as exc:
            raise _translate(exc)

    async def query(
        self,
        collection: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
    ) -> List[Document]:
        cursor = self.db[collection].find(filters or {})
        if order_by:
            # Missing and null values sort first, as in the in-process store
            cursor = cursor.sort(order_by, 1)
        try:
            return [from_mongo(raw) for raw in await cursor.to_list()]
        except PyMongoError as exc:
            raise _translate(exc)

    def watch(
        self,
        collection: str,
        filters: Optional[Filters],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        order_by: Optional[str] = None,
    ) -> Unsubscribe:
        task = asyncio.get_running_loop().create_task(
            self._follow(collection, filters, order_by, on_snapshot, on_error)
        )

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def _follow(
        self,
        collection: str,
        filters: Optional[Filters],
        order_by: Optional[str],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        try:
            async with await self.db[collection].watch() as stream:
                await self._push(collection, filters, order_by, on_snapshot, on_error)
                async for _ in stream:
                    await self._push(collection, filters, order_by, on_snapshot, on_error)
        except PyMongoError as exc:
            logger.warning("Change stream on %s ended: %s", collection, exc)
            if on_error:
                on_error(_translate(exc))
        except TransientStoreError as exc:
            if on_error:
                on_error(exc)

    async def _push(
        self,
        collection: str,
        filters: Optional[Filters],
        order_by: Optional[str],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        snapshot = await self.query(collection, filters, order_by)
        try:
            on_snapshot(snapshot)
        except Exception as exc:
            logger.exception("Snapshot listener failed on %s", collection)
            if on_error:
                on_error(exc)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, collection: str, data: Document) -> Document:
        return await self.create_if_absent(collection, uuid.uuid4().hex, data)

    async def create_if_absent(self, collection: str, doc_id: str, data: Document) -> Document:
        doc = new_document(data, self._clock)
        doc["_id"] = doc_id
        try:
            await self.db[collection].insert_one(doc)
        except MongoDuplicateKeyError:
            raise DuplicateKeyError(collection, doc_id)
        except PyMongoError as exc:
            raise _translate(exc)
        return from_mongo(doc)

    async def _current(self, collection: str, doc_id: str) -> Document:
        current = await self.get(collection, doc_id)
        if current is None:
            raise NotFound(f"{collection}/{doc_id} not found")
        return current

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Document,
        expected: Optional[Document] = None,
    ) -> Document:
        """Apply `changes`; with `expected`, only if those fields still hold."""
        try:
            raw = await self.db[collection].find_one_and_update(
                {"_id": doc_id, **(expected or {})},
                update_spec(changes, self._clock),
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise _translate(exc)
        if raw is None:
            current = await self._current(collection, doc_id)
            raise PreconditionFailed(collection, doc_id, current)
        return from_mongo(raw)

    async def batch_update(self, collection: str, updates: List[Tuple[str, Document]]) -> None:
        """All-or-nothing: nothing is written if any target is missing."""
        if not updates:
            return
        ids = [doc_id for doc_id, _ in updates]
        requests = [UpdateOne({"_id": doc_id}, update_spec(changes, self._clock)) for doc_id, changes in updates]
        try:
            async with self.client.start_session() as session:
                async with await session.start_transaction():
                    found = await self.db[collection].count_documents({"_id": {"$in": ids}}, session=session)
                    if found != len(set(ids)):
                        raise NotFound(f"{collection}: {len(set(ids)) - found} documents not found")
                    await self.db[collection].bulk_write(requests, ordered=True, session=session)
        except PyMongoError as exc:
            raise _translate(exc)

    async def delete(self, collection: str, doc_id: str, expected: Optional[Document] = None) -> None:
        try:
            result = await self.db[collection].delete_one({"_id": doc_id, **(expected or {})})
        except PyMongoError as exc:
            raise _translate(exc)
        if result.deleted_count == 0:
            current = await self._current(collection, doc_id)
            raise PreconditionFailed(collection, doc_id, current)
