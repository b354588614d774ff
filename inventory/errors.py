"""
Error taxonomy for book mutations.

Client errors (ValidationError, NotFound, Forbidden) are caller-fixable.
StorageError is retryable a bounded number of times. PublishError only ever
happens after a mutation committed and never undoes it.
"""

from typing import Any, Dict, Optional


class InventoryError(Exception):
    """Base class for all inventory errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(InventoryError):
    """Bad input: missing, blank or malformed fields."""


class NotFound(InventoryError):
    """Referenced book does not exist."""


class Forbidden(InventoryError):
    """Caller is not the owner of the book."""


class StorageError(InventoryError):
    """Persistence fault."""


class PublishError(InventoryError):
    """Event delivery exhausted its retries."""
