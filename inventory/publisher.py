"""
Outbound event delivery over Redis Streams with bounded retry.
"""

import asyncio
from typing import Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import PublishError
from .models import BookEvent
from utilities.logger import MutationLogger

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError, ConnectionError)


class RedisStreamChannel:
    """
    Send-only channel backed by a Redis Stream. Entries accepted by ``XADD``
    are retained for consumer groups, which read them at least once.
    """

    def __init__(self, redis_url: str, stream: str, max_stream_length: int = 100_000):
        self.redis_url = redis_url
        self.stream = stream
        self.max_stream_length = max_stream_length
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        """Open the Redis connection."""
        self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("Redis event channel connected", stream=self.stream)

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis event channel disconnected")

    async def send(self, fields: Dict[str, str]) -> str:
        """Append one entry to the stream and return its entry id."""
        if self._redis is None:
            raise RedisConnectionError("Redis event channel is not connected")
        return await self._redis.xadd(
            self.stream, fields, maxlen=self.max_stream_length, approximate=True
        )

    async def health_check(self) -> str:
        try:
            if self._redis is None:
                return "disconnected"
            await self._redis.ping()
            return "healthy"
        except RedisError as e:
            logger.error("Redis health check failed", error=str(e))
            return "unhealthy"


class EventPublisher:
    """
    Serializes events and hands them to the channel.

    Transient transport failures are retried with exponential backoff up to
    ``retry_attempts`` extra attempts; after that a PublishError is raised.
    The event is never modified.
    """

    def __init__(
        self,
        channel: RedisStreamChannel,
        retry_attempts: int = 3,
        retry_delay: float = 0.5,
        send_timeout: float = 5.0,
    ):
        self.channel = channel
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.send_timeout = send_timeout
        self.mutation_logger = MutationLogger("inventory.publisher")

    @staticmethod
    def serialize(event: BookEvent) -> Dict[str, str]:
        """Stream entry fields for an event."""
        return {
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "payload": event.to_json(),
        }

    async def publish(self, event: BookEvent) -> str:
        """
        Deliver ``event`` to the channel.

        Returns:
            The channel's entry id

        Raises:
            PublishError: delivery failed and retries are exhausted, or the
                failure was not transient
        """
        fields = self.serialize(event)
        last_exception: Optional[BaseException] = None

        for attempt in range(self.retry_attempts + 1):
            try:
                entry_id = await asyncio.wait_for(self.channel.send(fields), timeout=self.send_timeout)
                logger.debug(
                    "Event published",
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                    entry_id=entry_id,
                    attempt=attempt + 1,
                )
                return entry_id

            except TRANSIENT_ERRORS as e:
                last_exception = e
                if attempt < self.retry_attempts:
                    delay = self.retry_delay * (2 ** attempt)  # Exponential backoff
                    self.mutation_logger.log_retry(
                        f"publish:{event.event_id}", attempt + 1, self.retry_attempts, delay, str(e)
                    )
                    await asyncio.sleep(delay)

            except RedisError as e:
                raise PublishError(
                    "Event delivery failed",
                    {"event_id": event.event_id, "error": str(e), "attempts": attempt + 1},
                ) from e

        raise PublishError(
            f"Event delivery failed after {self.retry_attempts} retries",
            {"event_id": event.event_id, "error": str(last_exception), "attempts": self.retry_attempts + 1},
        ) from last_exception
