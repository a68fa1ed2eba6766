"""
Every test gets fresh in-memory stores. Tests are plain synchronous
functions that drive coroutines through `asyncio.run`.
"""

import pytest

from app.services.document_store import InMemoryDocumentStore

from .fixtures import Services


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def services(store):
    return Services(store)


@pytest.fixture
def unindexed_services():
    return Services(InMemoryDocumentStore(unindexed_orderings={"messages.createdAt"}))
