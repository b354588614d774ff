"""
Mutation orchestration for books.

Each mutation moves through Validating, Normalizing, Persisting and
Publishing to Done; any error before the commit exits to Failed and no event
is built. Publishing happens strictly after the commit: a delivery failure is
reported through the error log and a reconciliation record, and the mutation
itself still succeeds.
"""

import asyncio
import uuid
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

import structlog
from pydantic import BaseModel

from .book_store import BookStore
from .errors import Forbidden, InventoryError, PublishError, StorageError, ValidationError
from .models import Book, BookEvent, BookPatch, BookView, EventData, EventType, ReferenceKind, ReferenceRef
from .normalizer import ReferenceNormalizer
from .publisher import EventPublisher
from .reconciliation import DeadLetterStore
from utilities.logger import MutationLogger

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class MutationState(str, Enum):
    """Per-request mutation states."""
    VALIDATING = "validating"
    NORMALIZING = "normalizing"
    PERSISTING = "persisting"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"


class MutationResult(BaseModel):
    """Caller-facing outcome of a committed mutation."""
    operation: EventType
    book: Book
    author: Optional[ReferenceRef] = None
    genre: Optional[ReferenceRef] = None
    event_id: Optional[str] = None
    event_delivered: bool = False
    state: MutationState = MutationState.DONE

    def view(self) -> Optional[BookView]:
        """Book with resolved references, when both are known."""
        if self.author is None or self.genre is None:
            return None
        return BookView(
            id=self.book.id,
            title=self.book.title,
            author=self.author,
            genre=self.genre,
            user_id=self.book.user_id,
            created_at=self.book.created_at,
            updated_at=self.book.updated_at,
        )


class MutationOrchestrator:
    """
    Entry point for create, update and delete of books.

    All collaborators are injected; the caller identity passed in is assumed to
    come from a verified source and is the only owner ever used.
    """

    def __init__(
        self,
        normalizer: ReferenceNormalizer,
        store: BookStore,
        publisher: EventPublisher,
        dead_letters: DeadLetterStore,
        storage_retry_attempts: int = 2,
        storage_retry_delay: float = 0.2,
    ):
        self.normalizer = normalizer
        self.store = store
        self.publisher = publisher
        self.dead_letters = dead_letters
        self.storage_retry_attempts = storage_retry_attempts
        self.storage_retry_delay = storage_retry_delay

    async def create_book(self, caller_id: str, title: str, author: str, genre: str) -> MutationResult:
        """
        Create a book owned by ``caller_id``.

        Raises:
            ValidationError: missing or blank field
            StorageError: persistence fault after bounded retries
        """
        mlog = self._mutation_logger("create")
        state = MutationState.VALIDATING
        try:
            self._require_identity(caller_id)
            self._require_text("title", title)
            self._require_text("author", author)
            self._require_text("genre", genre)
            mlog.log_mutation_start("create", caller_id)

            state = MutationState.NORMALIZING
            author_ref = await self._resolve(ReferenceKind.AUTHOR, author)
            genre_ref = await self._resolve(ReferenceKind.GENRE, genre)

            state = MutationState.PERSISTING
            book = await self.store.create(caller_id, title, author_ref.id, genre_ref.id)
        except InventoryError as e:
            mlog.log_mutation_failed("create", e.message, state.value, context=e.context)
            raise

        mlog.log_mutation_committed("create", book.id, book.user_id)
        event = self._build_event(EventType.BOOK_CREATED, book, author_ref, genre_ref)
        delivered = await self._announce(event, mlog)
        return MutationResult(
            operation=EventType.BOOK_CREATED,
            book=book,
            author=author_ref,
            genre=genre_ref,
            event_id=event.event_id,
            event_delivered=delivered,
        )

    async def update_book(
        self,
        caller_id: str,
        book_id: str,
        title: Optional[str] = None,
        author: Optional[str] = None,
        genre: Optional[str] = None,
    ) -> MutationResult:
        """
        Update the provided fields of a book owned by ``caller_id``.

        Raises:
            ValidationError: blank field, or nothing to update
            NotFound: no such book
            Forbidden: caller is not the owner
            StorageError: persistence fault after bounded retries
        """
        mlog = self._mutation_logger("update", book_id=book_id)
        state = MutationState.VALIDATING
        try:
            self._require_identity(caller_id)
            self._require_text("book_id", book_id)
            for field, value in (("title", title), ("author", author), ("genre", genre)):
                if value is not None:
                    self._require_text(field, value)
            if title is None and author is None and genre is None:
                raise ValidationError("At least one of title, author or genre is required")
            mlog.log_mutation_start("update", caller_id, book_id)

            # Fail fast for non-owners before any reference row is created.
            # The store re-checks ownership against the row it writes.
            await self._load_owned(book_id, caller_id)

            state = MutationState.NORMALIZING
            resolved: Dict[ReferenceKind, ReferenceRef] = {}
            if author is not None:
                resolved[ReferenceKind.AUTHOR] = await self._resolve(ReferenceKind.AUTHOR, author)
            if genre is not None:
                resolved[ReferenceKind.GENRE] = await self._resolve(ReferenceKind.GENRE, genre)

            state = MutationState.PERSISTING
            patch = BookPatch(
                title=title,
                author_id=resolved[ReferenceKind.AUTHOR].id if ReferenceKind.AUTHOR in resolved else None,
                genre_id=resolved[ReferenceKind.GENRE].id if ReferenceKind.GENRE in resolved else None,
            )
            book = await self.store.update(book_id, caller_id, patch)
        except InventoryError as e:
            mlog.log_mutation_failed("update", e.message, state.value, context=e.context)
            raise

        mlog.log_mutation_committed("update", book.id, book.user_id)

        author_ref = await self._reference_for(ReferenceKind.AUTHOR, book.author_id, resolved)
        genre_ref = await self._reference_for(ReferenceKind.GENRE, book.genre_id, resolved)
        event = self._build_event(EventType.BOOK_UPDATED, book, author_ref, genre_ref)
        delivered = await self._announce(event, mlog)
        return MutationResult(
            operation=EventType.BOOK_UPDATED,
            book=book,
            author=author_ref,
            genre=genre_ref,
            event_id=event.event_id,
            event_delivered=delivered,
        )

    async def delete_book(self, caller_id: str, book_id: str) -> MutationResult:
        """
        Delete a book owned by ``caller_id``.

        Raises:
            ValidationError: missing book id
            NotFound: no such book
            Forbidden: caller is not the owner
        """
        mlog = self._mutation_logger("delete", book_id=book_id)
        state = MutationState.VALIDATING
        try:
            self._require_identity(caller_id)
            self._require_text("book_id", book_id)
            mlog.log_mutation_start("delete", caller_id, book_id)

            state = MutationState.PERSISTING
            book = await self.store.delete(book_id, caller_id)
        except InventoryError as e:
            mlog.log_mutation_failed("delete", e.message, state.value, context=e.context)
            raise

        mlog.log_mutation_committed("delete", book.id, book.user_id)
        event = self._build_event(EventType.BOOK_DELETED, book)
        delivered = await self._announce(event, mlog)
        return MutationResult(
            operation=EventType.BOOK_DELETED,
            book=book,
            event_id=event.event_id,
            event_delivered=delivered,
        )

    async def get_book(self, book_id: str) -> BookView:
        """
        Load a book with its author and genre names.

        Raises:
            NotFound: no such book
        """
        self._require_text("book_id", book_id)
        book = await self._with_storage_retry("get_book", lambda: self.store.get(book_id))
        author = await self._with_storage_retry(
            "get_author", lambda: self.normalizer.get_ref(ReferenceKind.AUTHOR, book.author_id)
        )
        genre = await self._with_storage_retry(
            "get_genre", lambda: self.normalizer.get_ref(ReferenceKind.GENRE, book.genre_id)
        )
        return BookView(
            id=book.id,
            title=book.title,
            author=author,
            genre=genre,
            user_id=book.user_id,
            created_at=book.created_at,
            updated_at=book.updated_at,
        )

    @staticmethod
    def _build_event(
        event_type: EventType,
        book: Book,
        author: Optional[ReferenceRef] = None,
        genre: Optional[ReferenceRef] = None,
    ) -> BookEvent:
        """Event from the row the store returned, never from request input."""
        if event_type is EventType.BOOK_DELETED:
            data = EventData(book_id=book.id, user_id=book.user_id)
        else:
            data = EventData(
                book_id=book.id,
                user_id=book.user_id,
                title=book.title,
                author=author,
                genre=genre,
                created_at=book.created_at,
                updated_at=book.updated_at,
            )
        return BookEvent(event_type=event_type, data=data)

    async def _announce(self, event: BookEvent, mlog: MutationLogger) -> bool:
        """Publish after commit. Returns whether the channel accepted the event."""
        mlog.bind_context(state=MutationState.PUBLISHING.value, event_id=event.event_id)
        try:
            await self.publisher.publish(event)
            return True
        except PublishError as e:
            mlog.log_publish_failure(event.event_id, event.event_type.value, event.data.book_id, e.message)
            await self._dead_letter(event, e)
            return False

    async def _dead_letter(self, event: BookEvent, error: PublishError) -> None:
        reason = f"{error.message}: {error.context.get('error')}"
        try:
            await self.dead_letters.record(event, reason)
        except StorageError as e:
            # Last resort: the envelope in the error log is the reconciliation record
            logger.error(
                "Failed to record undelivered event",
                event_id=event.event_id,
                envelope=event.to_envelope(),
                publish_error=reason,
                error=e.message,
            )

    async def _load_owned(self, book_id: str, caller_id: str) -> Book:
        book = await self._with_storage_retry("get_book", lambda: self.store.get(book_id))
        if book.user_id != caller_id:
            raise Forbidden(
                "Forbidden: You are not the owner of this book",
                {"book_id": book_id, "caller_id": caller_id},
            )
        return book

    async def _resolve(self, kind: ReferenceKind, name: str) -> ReferenceRef:
        return await self._with_storage_retry(
            f"resolve_{kind.value}", lambda: self.normalizer.resolve_ref(kind, name)
        )

    async def _reference_for(
        self,
        kind: ReferenceKind,
        reference_id: str,
        resolved: Dict[ReferenceKind, ReferenceRef],
    ) -> ReferenceRef:
        """
        Reference of a committed row. Runs after the commit, so a failed name
        lookup degrades to an id-only reference instead of dropping the event.
        """
        ref = resolved.get(kind)
        if ref is not None and ref.id == reference_id:
            return ref
        try:
            return await self._with_storage_retry(
                f"get_{kind.value}", lambda: self.normalizer.get_ref(kind, reference_id)
            )
        except StorageError as e:
            logger.error(
                "Failed to load reference name after commit",
                kind=kind.value,
                id=reference_id,
                error=e.message,
            )
            return ReferenceRef(id=reference_id)

    async def _with_storage_retry(self, label: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an idempotent storage read or resolve, retrying StorageError with backoff."""
        for attempt in range(self.storage_retry_attempts + 1):
            try:
                return await operation()
            except StorageError as e:
                if attempt >= self.storage_retry_attempts:
                    raise
                delay = self.storage_retry_delay * (2 ** attempt)
                logger.warning(
                    "Retrying storage operation",
                    operation=label,
                    attempt=attempt + 1,
                    max_attempts=self.storage_retry_attempts,
                    delay_seconds=delay,
                    error=e.message,
                )
                await asyncio.sleep(delay)

    @staticmethod
    def _mutation_logger(operation: str, **context) -> MutationLogger:
        return MutationLogger("inventory.orchestrator").bind_context(
            request_id=str(uuid.uuid4()), operation=operation, **context
        )

    @staticmethod
    def _require_identity(caller_id: str) -> None:
        if not isinstance(caller_id, str) or not caller_id.strip():
            raise ValidationError("Caller identity is required")

    @staticmethod
    def _require_text(field: str, value: Optional[str]) -> None:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field} is required and must not be blank", {"field": field})
