"""
API models and schemas for the FastAPI application.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from inventory.models import BookView


class CreateBookRequest(BaseModel):
    """Create request. The owner comes from the verified token, never the body."""
    title: Optional[str] = Field(None, description="Book title")
    author: Optional[str] = Field(None, description="Author name")
    genre: Optional[str] = Field(None, description="Genre name")

    model_config = {"extra": "ignore"}


class UpdateBookRequest(BaseModel):
    """Partial update request; omitted fields keep their value."""
    title: Optional[str] = Field(None, description="New title")
    author: Optional[str] = Field(None, description="New author name")
    genre: Optional[str] = Field(None, description="New genre name")

    model_config = {"extra": "ignore"}


class BookEnvelope(BaseModel):
    """Response for create and update."""
    success: bool = Field(True)
    message: str = Field(..., description="Outcome message")
    book: BookView = Field(..., description="Stored book")


class BookDataResponse(BaseModel):
    """Response for read."""
    success: bool = Field(True)
    data: BookView = Field(..., description="Book with author and genre")


class MessageResponse(BaseModel):
    """Response without a body, also used for errors."""
    success: bool = Field(..., description="Whether the request succeeded")
    message: str = Field(..., description="Outcome message")
    detail: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(..., description="Current timestamp")
    version: str = Field(..., description="API version")
    database_status: str = Field(..., description="Database connection status")
    channel_status: str = Field(..., description="Event channel status")
