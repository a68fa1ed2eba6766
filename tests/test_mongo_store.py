"""
MongoDB backend: operator translation, error mapping, conditional writes and
backend selection. No server is needed; collections are replaced by a small
in-test double.
"""

import asyncio
from datetime import timedelta
from types import SimpleNamespace

import pytest
from pymongo.errors import OperationFailure

from app.core.config import settings
from app.core.errors import NotFound, TransientStoreError
from app.services import document_store
from app.services.document_store import (
    SERVER_TIMESTAMP,
    Increment,
    IndexUnavailableError,
    InMemoryDocumentStore,
    LiveQueryUnavailableError,
    PreconditionFailed,
    StrictClock,
    close_document_store,
    get_document_store,
)
from app.services.mongo_store import MongoDocumentStore, _translate, from_mongo, new_document, update_spec


class FakeCollection:
    """Matches on equality only, which is all the store's filters use."""

    def __init__(self):
        self.docs = {}

    def _match(self, doc, flt):
        return all(doc.get(k) == v for k, v in flt.items())

    async def find_one(self, flt):
        for doc in self.docs.values():
            if self._match(doc, flt):
                return dict(doc)
        return None

    async def find_one_and_update(self, flt, spec, return_document=None):
        doc = await self.find_one(flt)
        if doc is None:
            return None
        doc.update(spec.get("$set", {}))
        for field, amount in spec.get("$inc", {}).items():
            doc[field] = doc.get(field, 0) + amount
        self.docs[doc["_id"]] = doc
        return dict(doc)

    async def delete_one(self, flt):
        doc = await self.find_one(flt)
        if doc is not None:
            del self.docs[doc["_id"]]
        return SimpleNamespace(deleted_count=0 if doc is None else 1)


@pytest.fixture
def mongo():
    collections = {}

    class FakeDb:
        def __getitem__(self, name):
            return collections.setdefault(name, FakeCollection())

    return MongoDocumentStore({"waste": FakeDb()}, "waste")


class TestTranslation:
    def test_update_spec_splits_set_and_inc(self):
        clock = StrictClock(resolution=timedelta(milliseconds=1))
        spec = update_spec({"text": "hi", "unreadCount.C": Increment(2), "updatedAt": SERVER_TIMESTAMP}, clock)

        assert spec["$inc"] == {"unreadCount.C": 2}
        assert spec["$set"]["text"] == "hi"
        assert spec["$set"]["updatedAt"].microsecond % 1000 == 0

    def test_new_document_fills_placeholders(self):
        clock = StrictClock()
        doc = new_document({"attempts": Increment(1), "createdAt": SERVER_TIMESTAMP, "read": False}, clock)

        assert doc["attempts"] == 1
        assert doc["createdAt"].tzinfo is not None
        assert doc["read"] is False

    def test_from_mongo_renames_the_key(self):
        assert from_mongo({"_id": "p1", "status": "pending"}) == {"id": "p1", "status": "pending"}
        assert from_mongo(None) is None

    @pytest.mark.parametrize(
        "code, expected",
        [(40573, LiveQueryUnavailableError), (292, IndexUnavailableError), (96, IndexUnavailableError)],
    )
    def test_server_errors_map_to_store_errors(self, code, expected):
        assert isinstance(_translate(OperationFailure("failed", code=code)), expected)

    def test_other_failures_are_transient(self):
        error = _translate(OperationFailure("boom", code=11600))
        assert type(error) is TransientStoreError
        assert error.retryable


class TestStrictClock:
    def test_millisecond_stamps_never_repeat(self):
        clock = StrictClock(resolution=timedelta(milliseconds=1))
        stamps = [clock.now() for _ in range(50)]

        assert all(a < b for a, b in zip(stamps, stamps[1:]))
        assert all(s.microsecond % 1000 == 0 for s in stamps)


class TestConditionalWrites:
    def test_update_applies_when_expected_holds(self, mongo):
        async def go():
            mongo.db["posts"].docs["p1"] = {"_id": "p1", "status": "pending", "edits": 0}
            return await mongo.update("posts", "p1", {"status": "accepted", "edits": Increment(1)}, expected={"status": "pending"})

        assert asyncio.run(go()) == {"id": "p1", "status": "accepted", "edits": 1}

    def test_stale_expectation_reports_current(self, mongo):
        async def go():
            mongo.db["posts"].docs["p1"] = {"_id": "p1", "status": "accepted"}
            await mongo.update("posts", "p1", {"status": "collected"}, expected={"status": "pending"})

        with pytest.raises(PreconditionFailed) as exc:
            asyncio.run(go())
        assert exc.value.current == {"id": "p1", "status": "accepted"}

    def test_missing_document(self, mongo):
        with pytest.raises(NotFound):
            asyncio.run(mongo.update("posts", "nope", {"status": "accepted"}))
        with pytest.raises(NotFound):
            asyncio.run(mongo.delete("posts", "nope"))

    def test_delete_checks_expectation(self, mongo):
        async def go():
            mongo.db["otps"].docs["p1"] = {"_id": "p1", "digest": "new"}
            with pytest.raises(PreconditionFailed):
                await mongo.delete("otps", "p1", expected={"digest": "old"})
            await mongo.delete("otps", "p1", expected={"digest": "new"})
            return await mongo.get("otps", "p1")

        assert asyncio.run(go()) is None


class TestBackendSelection:
    @pytest.fixture(autouse=True)
    def fresh_singleton(self, monkeypatch):
        monkeypatch.setattr(document_store, "_document_store", None)

    def test_memory_backend(self, monkeypatch):
        monkeypatch.setattr(settings, "STORE_BACKEND", "memory")
        store = get_document_store()

        assert isinstance(store, InMemoryDocumentStore)
        assert get_document_store() is store

    def test_mongo_backend(self, monkeypatch):
        monkeypatch.setattr(settings, "STORE_BACKEND", "Mongo")

        async def go():
            store = get_document_store()
            await close_document_store()
            return store

        store = asyncio.run(go())
        assert isinstance(store, MongoDocumentStore)
        assert store.db.name == settings.MONGO_DB
        assert document_store._document_store is None

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setattr(settings, "STORE_BACKEND", "sqlite")
        with pytest.raises(ValueError):
            get_document_store()
