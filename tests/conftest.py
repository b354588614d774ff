"""
Pytest configuration and shared fixtures.
"""

import asyncio
import copy
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional
from unittest.mock import AsyncMock

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from inventory.book_store import BookStore
from inventory.normalizer import ReferenceNormalizer
from inventory.orchestrator import MutationOrchestrator
from inventory.publisher import EventPublisher, RedisStreamChannel
from inventory.reconciliation import DeadLetterStore


class InMemoryCursor:
    """Cursor over a snapshot of matching documents."""

    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, keys):
        for key, direction in reversed(keys):
            self._docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return self

    def limit(self, n: int):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length: Optional[int] = None):
        docs = self._docs if length is None else self._docs[:length]
        return [copy.deepcopy(d) for d in docs]


class InMemoryCollection:
    """
    Collection double covering the Motor calls the inventory uses.

    Enforces uniqueness of ``_id`` and of ``unique_fields``, raising
    DuplicateKeyError like a unique index would. Every call yields to the event
    loop, and an upsert yields again between its lookup and its insert, so
    concurrent callers interleave the way they do against a real server.
    """

    def __init__(self, unique_fields: Iterable[str] = ()):
        self.docs: Dict[Any, Dict[str, Any]] = {}
        self.unique_fields = tuple(unique_fields)

    async def create_index(self, *args, **kwargs):
        return "index"

    @staticmethod
    def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        return all(doc.get(key) == value for key, value in query.items())

    def _first(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for doc in self.docs.values():
            if self._matches(doc, query):
                return doc
        return None

    def _check_unique(self, doc: Dict[str, Any]) -> None:
        if doc["_id"] in self.docs:
            raise DuplicateKeyError("E11000 duplicate key error: _id", 11000)
        for field in self.unique_fields:
            for other in self.docs.values():
                if other.get(field) == doc.get(field):
                    raise DuplicateKeyError(f"E11000 duplicate key error: {field}", 11000)

    @staticmethod
    def _apply(doc: Dict[str, Any], update: Dict[str, Any]) -> None:
        doc.update(copy.deepcopy(update.get("$set", {})))
        for key, amount in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + amount

    async def find_one(self, query: Dict[str, Any]):
        await asyncio.sleep(0)
        doc = self._first(query)
        return copy.deepcopy(doc) if doc is not None else None

    async def insert_one(self, doc: Dict[str, Any]):
        await asyncio.sleep(0)
        self._check_unique(doc)
        self.docs[doc["_id"]] = copy.deepcopy(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        upsert: bool = False,
        return_document=ReturnDocument.BEFORE,
    ):
        await asyncio.sleep(0)
        doc = self._first(query)
        if doc is None:
            if not upsert:
                return None
            new_doc = dict(query)
            new_doc.update(copy.deepcopy(update.get("$setOnInsert", {})))
            self._apply(new_doc, update)
            # Window in which a concurrent upsert of the same key can win
            await asyncio.sleep(0)
            self._check_unique(new_doc)
            self.docs[new_doc["_id"]] = new_doc
            return copy.deepcopy(new_doc) if return_document == ReturnDocument.AFTER else None

        before = copy.deepcopy(doc)
        self._apply(doc, update)
        return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before

    async def find_one_and_delete(self, query: Dict[str, Any]):
        await asyncio.sleep(0)
        doc = self._first(query)
        if doc is None:
            return None
        return self.docs.pop(doc["_id"])

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any]):
        await asyncio.sleep(0)
        doc = self._first(query)
        if doc is not None:
            self._apply(doc, update)
        return SimpleNamespace(matched_count=int(doc is not None), modified_count=int(doc is not None))

    def find(self, query: Dict[str, Any]):
        return InMemoryCursor([d for d in self.docs.values() if self._matches(d, query)])

    async def count_documents(self, query: Dict[str, Any]) -> int:
        return len([d for d in self.docs.values() if self._matches(d, query)])


@pytest.fixture
def authors_collection():
    return InMemoryCollection(unique_fields=("name",))


@pytest.fixture
def genres_collection():
    return InMemoryCollection(unique_fields=("name",))


@pytest.fixture
def books_collection():
    return InMemoryCollection()


@pytest.fixture
def dead_letters_collection():
    return InMemoryCollection()


@pytest.fixture
def normalizer(authors_collection, genres_collection):
    return ReferenceNormalizer(authors_collection, genres_collection)


@pytest.fixture
def book_store(books_collection):
    return BookStore(books_collection, max_update_conflicts=3)


@pytest.fixture
def mock_channel():
    """Channel that accepts every entry."""
    channel = AsyncMock(spec=RedisStreamChannel)
    channel.send.return_value = "1700000000000-0"
    return channel


@pytest.fixture
def publisher(mock_channel):
    return EventPublisher(mock_channel, retry_attempts=2, retry_delay=0, send_timeout=1.0)


@pytest.fixture
def dead_letter_store(dead_letters_collection):
    return DeadLetterStore(dead_letters_collection)


@pytest.fixture
def orchestrator(normalizer, book_store, publisher, dead_letter_store):
    return MutationOrchestrator(
        normalizer=normalizer,
        store=book_store,
        publisher=publisher,
        dead_letters=dead_letter_store,
        storage_retry_attempts=2,
        storage_retry_delay=0,
    )


@pytest.fixture
def published_events(mock_channel):
    """Stream entries handed to the channel, in order."""
    def _entries():
        return [call.args[0] for call in mock_channel.send.call_args_list]
    return _entries
