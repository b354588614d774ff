"""
Book persistence: create, read, update and delete of book rows, scoped by owner.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .errors import Forbidden, NotFound, StorageError, ValidationError
from .models import Book, BookPatch, utc_now

logger = structlog.get_logger(__name__)

# MongoDB stores datetimes at millisecond resolution
TIMESTAMP_RESOLUTION = timedelta(milliseconds=1)


def next_timestamp(prior: Optional[datetime] = None) -> datetime:
    """
    Current time truncated to storage resolution, strictly after ``prior``.
    """
    now = utc_now()
    now = now.replace(microsecond=(now.microsecond // 1000) * 1000)
    if prior is not None and now <= prior:
        return prior + TIMESTAMP_RESOLUTION
    return now


class BookStore:
    """
    Owns book rows. Ownership checks always use the persisted owner, never a
    caller-supplied one.
    """

    def __init__(self, books: AsyncIOMotorCollection, max_update_conflicts: int = 5):
        """
        Args:
            books: Collection of book rows
            max_update_conflicts: How many times an update re-reads after
                losing a race with a concurrent writer
        """
        self.books = books
        self.max_update_conflicts = max_update_conflicts

    async def create(self, owner: str, title: str, author_id: str, genre_id: str) -> Book:
        """Insert a new book and return the stored row."""
        now = next_timestamp()
        book = Book(
            id=str(uuid.uuid4()),
            user_id=owner,
            title=title,
            author_id=author_id,
            genre_id=genre_id,
            created_at=now,
            updated_at=now,
        )
        try:
            await self.books.insert_one(book.to_document())
        except PyMongoError as e:
            logger.error("Failed to insert book", user_id=owner, error=str(e))
            raise StorageError("Failed to create book", {"error": str(e)}) from e

        logger.debug("Inserted book", book_id=book.id, user_id=owner)
        return book

    async def get(self, book_id: str) -> Book:
        """
        Load a book by id.

        Raises:
            NotFound: no such book
        """
        doc = await self._find(book_id)
        if doc is None:
            raise NotFound("Book not found", {"book_id": book_id})
        return Book.from_document(doc)

    async def update(self, book_id: str, caller_id: str, patch: BookPatch) -> Book:
        """
        Apply the provided fields of ``patch`` and bump ``updated_at``.

        The write is conditional on the row still matching what was read, so
        concurrent updates to one book serialize and the last commit wins.

        Raises:
            ValidationError: patch sets no field
            NotFound: no such book
            Forbidden: caller is not the owner
            StorageError: persistence fault or too many lost races
        """
        if patch.is_empty():
            raise ValidationError("Nothing to update", {"book_id": book_id})

        for attempt in range(self.max_update_conflicts):
            current = await self._load_owned(book_id, caller_id)

            changes: Dict[str, Any] = {
                field: value
                for field, value in patch.model_dump(exclude_none=True).items()
            }
            changes["updated_at"] = next_timestamp(current.updated_at)

            try:
                doc = await self.books.find_one_and_update(
                    {"_id": book_id, "user_id": caller_id, "updated_at": current.updated_at},
                    {"$set": changes},
                    return_document=ReturnDocument.AFTER,
                )
            except PyMongoError as e:
                logger.error("Failed to update book", book_id=book_id, error=str(e))
                raise StorageError("Failed to update book", {"book_id": book_id, "error": str(e)}) from e

            if doc is not None:
                logger.debug("Updated book", book_id=book_id, fields=sorted(changes))
                return Book.from_document(doc)

            logger.debug("Concurrent update detected, re-reading", book_id=book_id, attempt=attempt + 1)

        raise StorageError(
            "Book update kept conflicting with concurrent writers",
            {"book_id": book_id, "attempts": self.max_update_conflicts},
        )

    async def delete(self, book_id: str, caller_id: str) -> Book:
        """
        Remove a book and return its pre-delete snapshot.

        Raises:
            NotFound: no such book
            Forbidden: caller is not the owner
        """
        await self._load_owned(book_id, caller_id)

        try:
            doc = await self.books.find_one_and_delete({"_id": book_id, "user_id": caller_id})
        except PyMongoError as e:
            logger.error("Failed to delete book", book_id=book_id, error=str(e))
            raise StorageError("Failed to delete book", {"book_id": book_id, "error": str(e)}) from e

        if doc is None:
            # Deleted by a concurrent request between the read and the delete
            raise NotFound("Book not found", {"book_id": book_id})

        logger.debug("Deleted book", book_id=book_id)
        return Book.from_document(doc)

    async def _load_owned(self, book_id: str, caller_id: str) -> Book:
        book = await self.get(book_id)
        if book.user_id != caller_id:
            raise Forbidden(
                "Forbidden: You are not the owner of this book",
                {"book_id": book_id, "caller_id": caller_id},
            )
        return book

    async def _find(self, book_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.books.find_one({"_id": book_id})
        except PyMongoError as e:
            logger.error("Failed to load book", book_id=book_id, error=str(e))
            raise StorageError("Failed to load book", {"book_id": book_id, "error": str(e)}) from e
