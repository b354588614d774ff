"""
Reference normalization: maps author and genre names to stable identifiers.
"""

import uuid
from typing import Dict

import structlog
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import StorageError, ValidationError
from .models import ReferenceKind, ReferenceRef, utc_now

logger = structlog.get_logger(__name__)


class ReferenceNormalizer:
    """
    Find-or-create for author and genre rows.

    Rows are keyed by exact, case-sensitive name and backed by a unique index,
    so two callers resolving the same unseen name converge on one row.
    """

    def __init__(self, authors: AsyncIOMotorCollection, genres: AsyncIOMotorCollection):
        """
        Args:
            authors: Collection of author rows (unique index on ``name``)
            genres: Collection of genre rows (unique index on ``name``)
        """
        self.collections: Dict[ReferenceKind, AsyncIOMotorCollection] = {
            ReferenceKind.AUTHOR: authors,
            ReferenceKind.GENRE: genres,
        }

    async def resolve(self, kind: ReferenceKind, name: str) -> str:
        """
        Return the identifier of the row named ``name``, creating it if absent.

        Raises:
            ValidationError: name is empty or blank
            StorageError: underlying persistence fault
        """
        ref = await self.resolve_ref(kind, name)
        return ref.id

    async def resolve_ref(self, kind: ReferenceKind, name: str) -> ReferenceRef:
        """Like :meth:`resolve` but returns identifier and name together."""
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"{kind.value} name must be a non-empty string", {"kind": kind.value})

        collection = self.collections[kind]
        try:
            doc = await collection.find_one_and_update(
                {"name": name},
                {"$setOnInsert": {"_id": str(uuid.uuid4()), "name": name, "created_at": utc_now()}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # A concurrent upsert inserted the same name first
            logger.debug("Concurrent reference insert, re-reading", kind=kind.value, name=name)
            doc = await self._find_by_name(collection, kind, name)
        except PyMongoError as e:
            logger.error("Failed to resolve reference", kind=kind.value, name=name, error=str(e))
            raise StorageError(f"Failed to resolve {kind.value}", {"name": name, "error": str(e)}) from e

        if doc is None:
            raise StorageError(f"{kind.value} row vanished during resolve", {"name": name})

        return ReferenceRef(id=doc["_id"], name=doc["name"])

    async def get_ref(self, kind: ReferenceKind, reference_id: str) -> ReferenceRef:
        """Load a reference row by identifier."""
        try:
            doc = await self.collections[kind].find_one({"_id": reference_id})
        except PyMongoError as e:
            logger.error("Failed to load reference", kind=kind.value, reference_id=reference_id, error=str(e))
            raise StorageError(f"Failed to load {kind.value}", {"id": reference_id, "error": str(e)}) from e

        if doc is None:
            # A book always references a valid row, so a miss is a storage fault
            raise StorageError(f"{kind.value} {reference_id} is missing", {"id": reference_id})
        return ReferenceRef(id=doc["_id"], name=doc["name"])

    async def _find_by_name(self, collection: AsyncIOMotorCollection, kind: ReferenceKind, name: str):
        try:
            return await collection.find_one({"name": name})
        except PyMongoError as e:
            logger.error("Failed to re-read reference", kind=kind.value, name=name, error=str(e))
            raise StorageError(f"Failed to resolve {kind.value}", {"name": name, "error": str(e)}) from e
