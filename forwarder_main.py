"""
Entry point for the reconciliation forwarder.

Replays book events that could not be delivered when their mutation committed.
Pass --once to forward a single batch and exit.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

import structlog
from utilities.logger import setup_logging
from utilities.config import config
from inventory.database import MongoDBManager
from inventory.publisher import EventPublisher, RedisStreamChannel
from inventory.reconciliation import DeadLetterStore
from reconciler.forwarder import ReconciliationForwarder
from reconciler.forwarder_service import ForwarderService


async def main(run_once: bool = False) -> None:
    """Main function to start the forwarder service."""
    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=config.get_log_file_path(),
        debug=config.debug
    )
    logger = structlog.get_logger(__name__)
    logger.info("Starting reconciliation forwarder", run_once=run_once)

    db_manager = MongoDBManager(
        connection_url=config.mongodb_url,
        database_name=config.mongodb_database,
        authors_collection=config.authors_collection,
        genres_collection=config.genres_collection,
        books_collection=config.books_collection,
        dead_letters_collection=config.dead_letters_collection,
        timeout_ms=config.mongodb_timeout_ms,
    )
    channel = RedisStreamChannel(
        redis_url=config.redis_url,
        stream=config.event_stream,
        max_stream_length=config.stream_max_length,
    )

    try:
        await db_manager.connect()
        await channel.connect()

        publisher = EventPublisher(
            channel,
            retry_attempts=config.publish_retry_attempts,
            retry_delay=config.publish_retry_delay,
            send_timeout=config.publish_timeout,
        )
        forwarder = ReconciliationForwarder(
            DeadLetterStore(db_manager.dead_letters),
            publisher,
            batch_size=config.forwarder_batch_size,
            max_attempts=config.forwarder_max_attempts,
        )
        service = ForwarderService(forwarder, interval_seconds=config.forwarder_interval_seconds)

        result = await service.start(run_once=run_once)
        if result is not None:
            logger.info("Run once mode completed", **result.model_dump(mode="json"))

    except Exception as e:
        logger.error("Fatal error occurred", error=str(e))
        sys.exit(1)

    finally:
        await channel.disconnect()
        await db_manager.disconnect()


if __name__ == "__main__":
    asyncio.run(main(run_once="--once" in sys.argv[1:]))
