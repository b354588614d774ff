"""
MongoDB connection management for the inventory service.
Handles connection, indexing and collection handles for books and reference data.
"""

from typing import Any, Dict, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from .errors import StorageError

logger = structlog.get_logger(__name__)


class MongoDBManager:
    """
    Async MongoDB manager. One instance per process, built at startup and
    passed to the components that need its collections.
    """

    def __init__(
        self,
        connection_url: str,
        database_name: str,
        authors_collection: str = "authors",
        genres_collection: str = "genres",
        books_collection: str = "books",
        dead_letters_collection: str = "dead_letters",
        timeout_ms: int = 5000,
    ):
        """
        Initialize MongoDB manager.

        Args:
            connection_url: MongoDB connection URL
            database_name: Name of the database
            authors_collection: Collection holding normalized authors
            genres_collection: Collection holding normalized genres
            books_collection: Collection holding book rows
            dead_letters_collection: Collection holding undelivered events
            timeout_ms: Server selection and socket timeout
        """
        self.connection_url = connection_url
        self.database_name = database_name
        self.collection_names = {
            "authors": authors_collection,
            "genres": genres_collection,
            "books": books_collection,
            "dead_letters": dead_letters_collection,
        }
        self.timeout_ms = timeout_ms
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None

    async def connect(self) -> None:
        """Establish connection to MongoDB and ensure indexes."""
        try:
            self.client = AsyncIOMotorClient(
                self.connection_url,
                tz_aware=True,
                serverSelectionTimeoutMS=self.timeout_ms,
                socketTimeoutMS=self.timeout_ms,
            )
            self.database = self.client[self.database_name]

            # Test connection
            await self.client.admin.command('ping')
            logger.info("Successfully connected to MongoDB", database=self.database_name)

            await self._create_indexes()

        except ConnectionFailure as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise StorageError("Failed to connect to MongoDB", {"error": str(e)}) from e

    async def disconnect(self) -> None:
        """Close MongoDB connection."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    def _collection(self, key: str) -> AsyncIOMotorCollection:
        if self.database is None:
            raise StorageError("MongoDB manager is not connected")
        return self.database[self.collection_names[key]]

    @property
    def authors(self) -> AsyncIOMotorCollection:
        return self._collection("authors")

    @property
    def genres(self) -> AsyncIOMotorCollection:
        return self._collection("genres")

    @property
    def books(self) -> AsyncIOMotorCollection:
        return self._collection("books")

    @property
    def dead_letters(self) -> AsyncIOMotorCollection:
        return self._collection("dead_letters")

    async def _create_indexes(self) -> None:
        """
        Create indexes. The unique name indexes on authors and genres are what
        make concurrent first use of a name converge on a single row.
        """
        try:
            await self.authors.create_index("name", unique=True)
            await self.genres.create_index("name", unique=True)

            # Owner lookups
            await self.books.create_index("user_id")

            # Forwarder scans pending records oldest first
            await self.dead_letters.create_index([("status", ASCENDING), ("created_at", ASCENDING)])

            logger.info("Successfully created MongoDB indexes")

        except PyMongoError as e:
            logger.error("Failed to create indexes", error=str(e))
            raise StorageError("Failed to create indexes", {"error": str(e)}) from e

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform database health check.

        Returns:
            Dictionary with health status
        """
        try:
            await self.database.command("ping")
            return {
                "status": "healthy",
                "books_count": await self.books.estimated_document_count(),
                "pending_dead_letters": await self.dead_letters.count_documents({"status": "pending"}),
            }
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {
                "status": "unhealthy",
                "error": str(e)
            }
