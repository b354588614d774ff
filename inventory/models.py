"""
Pydantic models for books, reference data and outbound events.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(timezone.utc)


class ReferenceKind(str, Enum):
    """Kinds of normalized reference data."""
    AUTHOR = "author"
    GENRE = "genre"


class EventType(str, Enum):
    """Event kinds announced for committed book mutations."""
    BOOK_CREATED = "BOOK_CREATED"
    BOOK_UPDATED = "BOOK_UPDATED"
    BOOK_DELETED = "BOOK_DELETED"


class ReferenceRef(BaseModel):
    """
    Resolved author or genre: identifier plus name. The name is None only when
    it could not be re-read after a committed update.
    """
    id: str = Field(..., description="Reference identifier")
    name: Optional[str] = Field(None, description="Reference name")


class Book(BaseModel):
    """
    Persisted book row. Author and genre are held by identifier only.
    """
    id: str = Field(..., description="Book identifier, immutable")
    user_id: str = Field(..., description="Owner identity, immutable")
    title: str = Field(..., description="Book title")
    author_id: str = Field(..., description="Author reference")
    genre_id: str = Field(..., description="Genre reference")
    created_at: datetime = Field(..., description="Creation timestamp, immutable")
    updated_at: datetime = Field(..., description="Bumped on every successful update")

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Book":
        """Build a Book from a MongoDB document."""
        return cls(
            id=doc["_id"],
            user_id=doc["user_id"],
            title=doc["title"],
            author_id=doc["author_id"],
            genre_id=doc["genre_id"],
            created_at=_as_utc(doc["created_at"]),
            updated_at=_as_utc(doc["updated_at"]),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "author_id": self.author_id,
            "genre_id": self.genre_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class BookPatch(BaseModel):
    """Partial update: unspecified fields keep their prior value."""
    title: Optional[str] = None
    author_id: Optional[str] = None
    genre_id: Optional[str] = None

    def is_empty(self) -> bool:
        return self.title is None and self.author_id is None and self.genre_id is None


class BookView(BaseModel):
    """Book with resolved author and genre names."""
    id: str
    title: str
    author: ReferenceRef
    genre: ReferenceRef
    user_id: str
    created_at: datetime
    updated_at: datetime


class EventData(BaseModel):
    """Snapshot of the affected book at commit time."""
    book_id: str
    user_id: str
    title: Optional[str] = None
    author: Optional[ReferenceRef] = None
    genre: Optional[ReferenceRef] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookEvent(BaseModel):
    """
    Versioned event envelope.

    The JSON envelope is ``{eventType, timestamp, data}``. ``event_id`` is
    carried beside the envelope on the channel as the consumer idempotency key.
    """
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()), exclude=True)
    event_type: EventType = Field(..., alias="eventType")
    timestamp: datetime = Field(default_factory=utc_now)
    data: EventData

    model_config = {"populate_by_name": True}

    def to_envelope(self) -> Dict[str, Any]:
        """JSON-ready envelope with absent optional fields omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_envelope(cls, event_id: str, envelope: Dict[str, Any]) -> "BookEvent":
        """Rebuild an event from a stored envelope, keeping its original id."""
        event = cls.model_validate(envelope)
        event.event_id = event_id
        return event


def _as_utc(value: datetime) -> datetime:
    # Motor returns naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
