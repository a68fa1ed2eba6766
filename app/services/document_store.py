# app/services/document_store.py
import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from app.core.config import settings
from app.core.errors import NotFound, TransientStoreError

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Filters = Dict[str, Any]
SnapshotCallback = Callable[[List[Document]], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


# Replaced by the store clock at write time
SERVER_TIMESTAMP = _ServerTimestamp()


class Increment:
    """Atomic numeric increment applied by the store, never by the caller."""

    def __init__(self, amount: int = 1):
        self.amount = amount

    def __repr__(self) -> str:
        return f"Increment({self.amount})"


class IndexUnavailableError(TransientStoreError):
    """The store has no index able to serve an ordered query."""

    def __init__(self, message: str):
        super().__init__(message)


class LiveQueryUnavailableError(TransientStoreError):
    """The store cannot push changes; callers fall back to plain reads."""

    def __init__(self, message: str):
        super().__init__(message)


class DuplicateKeyError(Exception):
    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"{collection}/{doc_id} already exists")


class PreconditionFailed(Exception):
    def __init__(self, collection: str, doc_id: str, current: Document):
        self.collection = collection
        self.doc_id = doc_id
        self.current = current
        super().__init__(f"{collection}/{doc_id} changed concurrently")


class StrictClock:
    """Server timestamps that never repeat, at the backend's resolution."""

    def __init__(self, resolution: timedelta = timedelta(microseconds=1)):
        self.resolution = resolution
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self.resolution >= timedelta(milliseconds=1):
            now = now.replace(microsecond=now.microsecond // 1000 * 1000)
        if self._last is not None and now <= self._last:
            now = self._last + self.resolution
        self._last = now
        return now


class DocumentStore(Protocol):
    """
    Backend contract shared by the in-process store and MongoDB. Documents
    are plain dicts with their key under `id`.
    """

    async def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    async def query(
        self, collection: str, filters: Optional[Filters] = None, order_by: Optional[str] = None
    ) -> List[Document]: ...

    def watch(
        self,
        collection: str,
        filters: Optional[Filters],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        order_by: Optional[str] = None,
    ) -> Unsubscribe: ...

    async def add(self, collection: str, data: Document) -> Document: ...

    async def create_if_absent(self, collection: str, doc_id: str, data: Document) -> Document: ...

    async def update(
        self, collection: str, doc_id: str, changes: Document, expected: Optional[Document] = None
    ) -> Document: ...

    async def batch_update(self, collection: str, updates: List[Tuple[str, Document]]) -> None: ...

    async def delete(self, collection: str, doc_id: str, expected: Optional[Document] = None) -> None: ...


def created_at_key(doc: Document, field: str = "createdAt") -> Tuple[bool, datetime]:
    """Sort key that places documents without a timestamp first."""
    value = doc.get(field)
    if value is None:
        return (False, datetime.min.replace(tzinfo=timezone.utc))
    return (True, value)


def _matches(doc: Document, filters: Optional[Filters]) -> bool:
    if not filters:
        return True
    return all(doc.get(field) == value for field, value in filters.items())


class _Watch:
    def __init__(
        self,
        collection: str,
        filters: Optional[Filters],
        order_by: Optional[str],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback],
    ):
        self.collection = collection
        self.filters = filters
        self.order_by = order_by
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True


class InMemoryDocumentStore:
    """
    Async document store kept in process memory.

    Every operation yields to the event loop before touching data so that
    concurrent callers interleave the way they would against a hosted store.
    Check-and-write steps (create_if_absent, update with `expected`, batch
    updates, increments) run without a suspension point, which makes them
    atomic with respect to other coroutines.
    """

    def __init__(
        self,
        unindexed_orderings: Iterable[str] = (),
        live_queries: bool = True,
    ):
        self._collections: Dict[str, Dict[str, Document]] = defaultdict(dict)
        self._watches: Dict[str, List[_Watch]] = defaultdict(list)
        self._clock = StrictClock()
        self.unindexed_orderings = set(unindexed_orderings)
        self.live_queries = live_queries

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, current: Document, changes: Document) -> Document:
        updated = dict(current)
        ts = None
        for field, value in changes.items():
            if value is SERVER_TIMESTAMP:
                ts = ts or self._clock.now()
                updated[field] = ts
            elif isinstance(value, Increment):
                updated[field] = (updated.get(field) or 0) + value.amount
            else:
                updated[field] = copy.deepcopy(value)
        return updated

    def _check_ordering(self, collection: str, order_by: Optional[str]) -> None:
        if order_by and f"{collection}.{order_by}" in self.unindexed_orderings:
            raise IndexUnavailableError(
                f"The query requires an index on {collection}.{order_by}"
            )

    def _select(self, collection: str, filters: Optional[Filters], order_by: Optional[str]) -> List[Document]:
        docs = [
            copy.deepcopy(doc)
            for doc in self._collections[collection].values()
            if _matches(doc, filters)
        ]
        if order_by:
            docs.sort(key=lambda d: created_at_key(d, order_by))
        return docs

    def _notify(self, collection: str) -> None:
        loop = asyncio.get_running_loop()
        for watch in list(self._watches[collection]):
            loop.call_soon(self._deliver, watch)

    def _deliver(self, watch: _Watch) -> None:
        if not watch.active:
            return
        snapshot = self._select(watch.collection, watch.filters, watch.order_by)
        try:
            watch.on_snapshot(snapshot)
        except Exception as exc:
            logger.exception("Snapshot listener failed on %s", watch.collection)
            if watch.on_error:
                watch.on_error(exc)

    def _fail(self, watch: _Watch, exc: Exception) -> None:
        if watch.active and watch.on_error:
            watch.on_error(exc)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        await asyncio.sleep(0)
        doc = self._collections[collection].get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def query(
        self,
        collection: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
    ) -> List[Document]:
        await asyncio.sleep(0)
        self._check_ordering(collection, order_by)
        return self._select(collection, filters, order_by)

    def watch(
        self,
        collection: str,
        filters: Optional[Filters],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        order_by: Optional[str] = None,
    ) -> Unsubscribe:
        """
        Push subscription: `on_snapshot` receives the full matching result set
        once right away and again after every write to the collection. An
        unindexed ordering is reported asynchronously through `on_error`.
        """
        if not self.live_queries:
            raise LiveQueryUnavailableError("Live queries are not available")

        loop = asyncio.get_running_loop()
        watch = _Watch(collection, filters, order_by, on_snapshot, on_error)
        try:
            self._check_ordering(collection, order_by)
        except IndexUnavailableError as exc:
            loop.call_soon(self._fail, watch, exc)
        else:
            self._watches[collection].append(watch)
            loop.call_soon(self._deliver, watch)

        def unsubscribe() -> None:
            watch.active = False
            if watch in self._watches[collection]:
                self._watches[collection].remove(watch)

        return unsubscribe

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, collection: str, data: Document) -> Document:
        await asyncio.sleep(0)
        doc_id = uuid.uuid4().hex
        doc = self._resolve({}, data)
        doc["id"] = doc_id
        self._collections[collection][doc_id] = doc
        self._notify(collection)
        return copy.deepcopy(doc)

    async def create_if_absent(self, collection: str, doc_id: str, data: Document) -> Document:
        await asyncio.sleep(0)
        if doc_id in self._collections[collection]:
            raise DuplicateKeyError(collection, doc_id)
        doc = self._resolve({}, data)
        doc["id"] = doc_id
        self._collections[collection][doc_id] = doc
        self._notify(collection)
        return copy.deepcopy(doc)

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Document,
        expected: Optional[Document] = None,
    ) -> Document:
        """Apply `changes`; with `expected`, only if those fields still hold."""
        await asyncio.sleep(0)
        current = self._collections[collection].get(doc_id)
        if current is None:
            raise NotFound(f"{collection}/{doc_id} not found")
        if expected and not _matches(current, expected):
            raise PreconditionFailed(collection, doc_id, copy.deepcopy(current))
        doc = self._resolve(current, changes)
        self._collections[collection][doc_id] = doc
        self._notify(collection)
        return copy.deepcopy(doc)

    async def batch_update(self, collection: str, updates: List[Tuple[str, Document]]) -> None:
        """All-or-nothing: nothing is written if any target is missing."""
        await asyncio.sleep(0)
        docs = self._collections[collection]
        missing = [doc_id for doc_id, _ in updates if doc_id not in docs]
        if missing:
            raise NotFound(f"{collection}/{missing[0]} not found")
        for doc_id, changes in updates:
            docs[doc_id] = self._resolve(docs[doc_id], changes)
        if updates:
            self._notify(collection)

    async def delete(self, collection: str, doc_id: str, expected: Optional[Document] = None) -> None:
        await asyncio.sleep(0)
        current = self._collections[collection].get(doc_id)
        if current is None:
            raise NotFound(f"{collection}/{doc_id} not found")
        if expected and not _matches(current, expected):
            raise PreconditionFailed(collection, doc_id, copy.deepcopy(current))
        del self._collections[collection][doc_id]
        self._notify(collection)


_document_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    global _document_store
    if _document_store is None:
        backend = settings.STORE_BACKEND.lower()
        if backend == "mongo":
            from app.services.mongo_store import MongoDocumentStore

            _document_store = MongoDocumentStore.from_uri(settings.MONGO_URI, settings.MONGO_DB)
        elif backend == "memory":
            _document_store = InMemoryDocumentStore(
                unindexed_orderings=settings.STORE_UNINDEXED_ORDERINGS,
                live_queries=settings.STORE_LIVE_QUERIES,
            )
        else:
            raise ValueError(f"Unknown STORE_BACKEND {settings.STORE_BACKEND!r}")
        logger.info("Document store backend: %s", backend)
    return _document_store


async def close_document_store() -> None:
    global _document_store
    store, _document_store = _document_store, None
    close = getattr(store, "close", None)
    if close is not None:
        await close()
