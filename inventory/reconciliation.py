"""
Dead-letter records for events that could not be delivered after their
mutation committed. The reconciliation forwarder replays them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorCollection
from pydantic import BaseModel, Field
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import StorageError
from .models import BookEvent, utc_now

logger = structlog.get_logger(__name__)


class RecordStatus(str, Enum):
    """Lifecycle of a reconciliation record."""
    PENDING = "pending"
    DELIVERED = "delivered"
    ABANDONED = "abandoned"


class ReconciliationRecord(BaseModel):
    """Durable marker of an undelivered event."""
    record_id: str = Field(..., description="Equals the event id")
    event_type: str = Field(..., description="Event kind")
    book_id: str = Field(..., description="Affected book")
    envelope: Dict[str, Any] = Field(..., description="Serialized event envelope")
    status: RecordStatus = Field(default=RecordStatus.PENDING)
    attempts: int = Field(default=0, ge=0, description="Forwarder delivery attempts")
    last_error: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_event(cls, event: BookEvent, error: str) -> "ReconciliationRecord":
        return cls(
            record_id=event.event_id,
            event_type=event.event_type.value,
            book_id=event.data.book_id,
            envelope=event.to_envelope(),
            last_error=error,
        )

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ReconciliationRecord":
        doc = dict(doc)
        doc["record_id"] = doc.pop("_id")
        return cls(**doc)

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["_id"] = doc.pop("record_id")
        doc["status"] = self.status.value
        return doc

    def to_event(self) -> BookEvent:
        return BookEvent.from_envelope(self.record_id, self.envelope)


class DeadLetterStore:
    """Persists reconciliation records in MongoDB."""

    def __init__(self, dead_letters: AsyncIOMotorCollection):
        self.dead_letters = dead_letters

    async def record(self, event: BookEvent, error: str) -> ReconciliationRecord:
        """
        Durably record an undelivered event. Recording the same event twice
        keeps the first record.
        """
        record = ReconciliationRecord.from_event(event, error)
        try:
            await self.dead_letters.insert_one(record.to_document())
            logger.warning(
                "Recorded undelivered event for reconciliation",
                record_id=record.record_id,
                event_type=record.event_type,
                book_id=record.book_id,
            )
        except DuplicateKeyError:
            logger.debug("Reconciliation record already exists", record_id=record.record_id)
        except PyMongoError as e:
            raise StorageError(
                "Failed to record undelivered event",
                {"record_id": record.record_id, "error": str(e)},
            ) from e
        return record

    async def pending(self, limit: int = 100) -> List[ReconciliationRecord]:
        """Oldest-first pending records."""
        try:
            cursor = (
                self.dead_letters.find({"status": RecordStatus.PENDING.value})
                .sort([("created_at", ASCENDING)])
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        except PyMongoError as e:
            logger.error("Failed to list pending reconciliation records", error=str(e))
            raise StorageError("Failed to list reconciliation records", {"error": str(e)}) from e
        return [ReconciliationRecord.from_document(doc) for doc in docs]

    async def mark_delivered(self, record_id: str) -> None:
        await self._update(
            record_id,
            {"$set": {"status": RecordStatus.DELIVERED.value, "last_error": None, "updated_at": utc_now()},
             "$inc": {"attempts": 1}},
        )

    async def mark_failed(self, record_id: str, error: str, attempts: int, max_attempts: int) -> RecordStatus:
        """
        Record a failed forwarding attempt. Once ``max_attempts`` is reached the
        record is abandoned and needs an operator.

        Args:
            record_id: Record to update
            error: Failure description
            attempts: Attempts made before this one
            max_attempts: Attempt ceiling
        """
        status = RecordStatus.ABANDONED if attempts + 1 >= max_attempts else RecordStatus.PENDING
        await self._update(
            record_id,
            {"$set": {"status": status.value, "last_error": error, "updated_at": utc_now()},
             "$inc": {"attempts": 1}},
        )
        if status is RecordStatus.ABANDONED:
            logger.error("Reconciliation record abandoned", record_id=record_id, attempts=attempts + 1, error=error)
        return status

    async def _update(self, record_id: str, update: Dict[str, Any]) -> None:
        try:
            await self.dead_letters.update_one({"_id": record_id}, update)
        except PyMongoError as e:
            logger.error("Failed to update reconciliation record", record_id=record_id, error=str(e))
            raise StorageError(
                "Failed to update reconciliation record",
                {"record_id": record_id, "error": str(e)},
            ) from e
