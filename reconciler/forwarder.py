"""
Reconciliation forwarder: moves pending dead-letter records back onto the
event channel and marks them delivered.
"""

from datetime import datetime
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from inventory.errors import PublishError, StorageError
from inventory.models import utc_now
from inventory.publisher import EventPublisher
from inventory.reconciliation import DeadLetterStore, RecordStatus

logger = structlog.get_logger(__name__)


class ForwardResult(BaseModel):
    """Summary of one forwarding pass."""
    checked: int = Field(default=0)
    delivered: int = Field(default=0)
    failed: int = Field(default=0)
    abandoned: int = Field(default=0)
    started_at: datetime = Field(default_factory=utc_now)
    duration_seconds: float = Field(default=0.0)


class ReconciliationForwarder:
    """
    Replays reconciliation records. Each replay reuses the original event id,
    so consumers that dedupe on it treat a replay of an already-seen event as a
    no-op.
    """

    def __init__(
        self,
        dead_letters: DeadLetterStore,
        publisher: EventPublisher,
        batch_size: int = 100,
        max_attempts: int = 10,
    ):
        """
        Args:
            dead_letters: Store of reconciliation records
            publisher: Publisher used for replays
            batch_size: Records handled per pass
            max_attempts: Forwarding attempts before a record is abandoned
        """
        self.dead_letters = dead_letters
        self.publisher = publisher
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.logger = logger.bind(component="reconciliation_forwarder")

    async def run_once(self, limit: Optional[int] = None) -> ForwardResult:
        """Forward one batch of pending records."""
        result = ForwardResult()
        records = await self.dead_letters.pending(limit or self.batch_size)
        result.checked = len(records)

        for record in records:
            try:
                await self.publisher.publish(record.to_event())
            except PublishError as e:
                result.failed += 1
                try:
                    status = await self.dead_letters.mark_failed(
                        record.record_id, e.message, record.attempts, self.max_attempts
                    )
                except StorageError as se:
                    self._log_status_write_failure(record.record_id, se)
                    continue
                if status is RecordStatus.ABANDONED:
                    result.abandoned += 1
                continue

            try:
                await self.dead_letters.mark_delivered(record.record_id)
            except StorageError as e:
                # Stays pending; the replay reuses the event id so consumers dedupe it
                result.failed += 1
                self._log_status_write_failure(record.record_id, e)
                continue
            result.delivered += 1
            self.logger.info(
                "Reconciliation record delivered",
                record_id=record.record_id,
                event_type=record.event_type,
                book_id=record.book_id,
            )

        result.duration_seconds = (utc_now() - result.started_at).total_seconds()
        if result.checked:
            self.logger.info(
                "Reconciliation pass completed",
                checked=result.checked,
                delivered=result.delivered,
                failed=result.failed,
                abandoned=result.abandoned,
                duration=result.duration_seconds,
            )
        return result

    def _log_status_write_failure(self, record_id: str, error: StorageError) -> None:
        self.logger.error(
            "Failed to update reconciliation record status",
            record_id=record_id,
            error=error.message,
        )
