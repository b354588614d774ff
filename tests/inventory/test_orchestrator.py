"""
Tests for the mutation orchestrator.
Covers the create/update/delete flows, event emission and the post-commit
publish failure path.
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from pymongo.errors import AutoReconnect
from redis.exceptions import ConnectionError as RedisConnectionError

from inventory.errors import Forbidden, NotFound, StorageError, ValidationError
from inventory.models import EventType, ReferenceKind


def payloads(published_events):
    return [json.loads(entry["payload"]) for entry in published_events()]


class TestCreateBook:
    """Test cases for book creation."""

    @pytest.mark.asyncio
    async def test_create_normalizes_references(self, orchestrator, normalizer):
        result = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        author = await normalizer.get_ref(ReferenceKind.AUTHOR, result.book.author_id)
        genre = await normalizer.get_ref(ReferenceKind.GENRE, result.book.genre_id)
        assert author.name == "F.Herbert"
        assert genre.name == "SciFi"
        assert result.book.user_id == "alice"
        assert result.event_delivered is True

    @pytest.mark.asyncio
    async def test_second_owner_reuses_reference_rows(
        self, orchestrator, authors_collection, genres_collection
    ):
        dune = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")
        messiah = await orchestrator.create_book("bob", "Dune Messiah", "F.Herbert", "SciFi")

        assert messiah.book.author_id == dune.book.author_id
        assert messiah.book.genre_id == dune.book.genre_id
        assert len(authors_collection.docs) == 1
        assert len(genres_collection.docs) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_share_new_author(self, orchestrator, authors_collection, books_collection):
        results = await asyncio.gather(
            *[orchestrator.create_book(f"user-{i}", f"Book {i}", "New Author", "Poetry") for i in range(8)]
        )

        assert len({r.book.author_id for r in results}) == 1
        assert len(authors_collection.docs) == 1
        assert len(books_collection.docs) == 8

    @pytest.mark.asyncio
    async def test_create_emits_one_created_event(self, orchestrator, published_events):
        result = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        events = payloads(published_events)
        assert len(events) == 1
        assert events[0]["eventType"] == "BOOK_CREATED"
        assert events[0]["data"]["book_id"] == result.book.id
        assert events[0]["data"]["user_id"] == "alice"
        assert events[0]["data"]["author"] == {"id": result.book.author_id, "name": "F.Herbert"}
        assert events[0]["data"]["genre"] == {"id": result.book.genre_id, "name": "SciFi"}
        assert published_events()[0]["event_id"] == result.event_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("title,author,genre", [
        ("", "F.Herbert", "SciFi"),
        ("Dune", "  ", "SciFi"),
        ("Dune", "F.Herbert", None),
    ])
    async def test_missing_fields_rejected_before_any_write(
        self, orchestrator, authors_collection, books_collection, mock_channel, title, author, genre
    ):
        with pytest.raises(ValidationError):
            await orchestrator.create_book("alice", title, author, genre)

        assert books_collection.docs == {}
        assert authors_collection.docs == {}
        mock_channel.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_blank_caller_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.create_book("", "Dune", "F.Herbert", "SciFi")

    @pytest.mark.asyncio
    async def test_transient_normalizer_fault_is_retried(self, orchestrator, authors_collection):
        real = authors_collection.find_one_and_update
        calls = []

        async def first_call_fails(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise AutoReconnect("connection reset")
            return await real(*args, **kwargs)

        with patch.object(authors_collection, "find_one_and_update", side_effect=first_call_fails):
            result = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        assert len(calls) == 2
        assert result.book.author_id in authors_collection.docs

    @pytest.mark.asyncio
    async def test_persistent_storage_fault_aborts_without_event(
        self, orchestrator, books_collection, mock_channel
    ):
        with patch.object(books_collection, "insert_one", AsyncMock(side_effect=AutoReconnect("down"))):
            with pytest.raises(StorageError):
                await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        mock_channel.send.assert_not_called()


class TestUpdateBook:
    """Test cases for book updates."""

    @pytest.mark.asyncio
    async def test_title_only_update_keeps_references(self, orchestrator, published_events):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        updated = await orchestrator.update_book("alice", created.book.id, title="Renamed")

        assert updated.book.title == "Renamed"
        assert updated.book.author_id == created.book.author_id
        assert updated.book.genre_id == created.book.genre_id
        assert updated.book.updated_at > created.book.updated_at
        assert updated.author.name == "F.Herbert"
        assert updated.genre.name == "SciFi"

        event = payloads(published_events)[-1]
        assert event["eventType"] == "BOOK_UPDATED"
        assert event["data"]["title"] == "Renamed"
        assert event["data"]["author"]["name"] == "F.Herbert"

    @pytest.mark.asyncio
    async def test_update_author_resolves_new_row(self, orchestrator, authors_collection):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        updated = await orchestrator.update_book("alice", created.book.id, author="Frank Herbert")

        assert updated.book.author_id != created.book.author_id
        assert updated.author.name == "Frank Herbert"
        # The previous author row is never deleted
        assert len(authors_collection.docs) == 2

    @pytest.mark.asyncio
    async def test_non_owner_update_is_forbidden_without_event(
        self, orchestrator, books_collection, authors_collection, published_events
    ):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")
        before = dict(books_collection.docs[created.book.id])

        with pytest.raises(Forbidden):
            await orchestrator.update_book("bob", created.book.id, title="Renamed", author="Someone Else")

        assert books_collection.docs[created.book.id] == before
        assert len(authors_collection.docs) == 1
        assert [e["eventType"] for e in payloads(published_events)] == ["BOOK_CREATED"]

    @pytest.mark.asyncio
    async def test_update_missing_book(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.update_book("alice", "missing", title="x")

    @pytest.mark.asyncio
    async def test_empty_update_rejected(self, orchestrator):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        with pytest.raises(ValidationError):
            await orchestrator.update_book("alice", created.book.id)

    @pytest.mark.asyncio
    async def test_blank_field_rejected(self, orchestrator):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        with pytest.raises(ValidationError):
            await orchestrator.update_book("alice", created.book.id, genre=" ")


class TestDeleteBook:
    """Test cases for book deletion."""

    @pytest.mark.asyncio
    async def test_delete_emits_deleted_event_with_ids_only(self, orchestrator, published_events):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        deleted = await orchestrator.delete_book("alice", created.book.id)

        assert deleted.book.id == created.book.id
        event = payloads(published_events)[-1]
        assert event["eventType"] == "BOOK_DELETED"
        assert event["data"] == {"book_id": created.book.id, "user_id": "alice"}

    @pytest.mark.asyncio
    async def test_delete_keeps_reference_rows(self, orchestrator, authors_collection, genres_collection):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        await orchestrator.delete_book("alice", created.book.id)

        assert len(authors_collection.docs) == 1
        assert len(genres_collection.docs) == 1

    @pytest.mark.asyncio
    async def test_delete_nonexistent_raises_not_found(self, orchestrator, mock_channel):
        with pytest.raises(NotFound):
            await orchestrator.delete_book("alice", "missing")
        mock_channel.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_owner_delete_is_forbidden(self, orchestrator, books_collection):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        with pytest.raises(Forbidden):
            await orchestrator.delete_book("bob", created.book.id)
        assert created.book.id in books_collection.docs


class TestPublishFailure:
    """Test cases for event delivery failing after commit."""

    @pytest.mark.asyncio
    async def test_delete_succeeds_and_records_reconciliation(
        self, orchestrator, mock_channel, books_collection, dead_letters_collection
    ):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")
        mock_channel.send.side_effect = RedisConnectionError("down")

        result = await orchestrator.delete_book("alice", created.book.id)

        assert result.event_delivered is False
        assert created.book.id not in books_collection.docs
        assert list(dead_letters_collection.docs) == [result.event_id]
        record = dead_letters_collection.docs[result.event_id]
        assert record["status"] == "pending"
        assert record["event_type"] == "BOOK_DELETED"
        assert record["envelope"]["data"] == {"book_id": created.book.id, "user_id": "alice"}

    @pytest.mark.asyncio
    async def test_dead_letter_write_failure_still_succeeds(
        self, orchestrator, mock_channel, dead_letters_collection, books_collection
    ):
        mock_channel.send.side_effect = RedisConnectionError("down")

        with patch.object(dead_letters_collection, "insert_one", AsyncMock(side_effect=AutoReconnect("down"))):
            result = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        assert result.event_delivered is False
        assert result.book.id in books_collection.docs

    @pytest.mark.asyncio
    async def test_update_publish_failure_records_reconciliation(
        self, orchestrator, mock_channel, books_collection, dead_letters_collection
    ):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")
        mock_channel.send.side_effect = RedisConnectionError("down")

        result = await orchestrator.update_book("alice", created.book.id, title="Renamed")

        assert result.event_delivered is False
        assert books_collection.docs[created.book.id]["title"] == "Renamed"
        record = dead_letters_collection.docs[result.event_id]
        assert record["status"] == "pending"
        assert record["event_type"] == "BOOK_UPDATED"
        assert record["envelope"]["data"]["title"] == "Renamed"

    @pytest.mark.asyncio
    async def test_update_announced_when_names_unreadable_after_commit(
        self, orchestrator, genres_collection, published_events
    ):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        with patch.object(genres_collection, "find_one", AsyncMock(side_effect=AutoReconnect("down"))):
            result = await orchestrator.update_book("alice", created.book.id, title="Renamed")

        assert result.book.title == "Renamed"
        assert result.event_id is not None
        assert result.event_delivered is True
        assert result.genre.id == created.book.genre_id
        assert result.genre.name is None
        assert result.view() is not None

        events = payloads(published_events)
        assert [e["eventType"] for e in events] == ["BOOK_CREATED", "BOOK_UPDATED"]
        assert events[-1]["data"]["title"] == "Renamed"
        assert events[-1]["data"]["author"] == {"id": created.book.author_id, "name": "F.Herbert"}
        assert events[-1]["data"]["genre"] == {"id": created.book.genre_id}

    @pytest.mark.asyncio
    async def test_every_mutation_emits_exactly_one_event(self, orchestrator, published_events):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")
        await orchestrator.update_book("alice", created.book.id, title="Dune (1965)")
        await orchestrator.delete_book("alice", created.book.id)

        events = payloads(published_events)
        assert [e["eventType"] for e in events] == ["BOOK_CREATED", "BOOK_UPDATED", "BOOK_DELETED"]
        assert {e["data"]["book_id"] for e in events} == {created.book.id}
        assert len({entry["event_id"] for entry in published_events()}) == 3


class TestGetBook:
    """Test cases for reads."""

    @pytest.mark.asyncio
    async def test_get_resolves_names(self, orchestrator):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")

        view = await orchestrator.get_book(created.book.id)

        assert view.author.name == "F.Herbert"
        assert view.genre.name == "SciFi"
        assert view.user_id == "alice"
        assert view == created.view()

    @pytest.mark.asyncio
    async def test_get_missing(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.get_book("missing")

    @pytest.mark.asyncio
    async def test_mutation_result_operation(self, orchestrator):
        created = await orchestrator.create_book("alice", "Dune", "F.Herbert", "SciFi")
        assert created.operation is EventType.BOOK_CREATED
