"""
FastAPI main application for the NovelNest inventory service.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.auth import verify_token
from api.config import config as api_config
from api.models import (
    BookDataResponse, BookEnvelope, CreateBookRequest, HealthResponse,
    MessageResponse, UpdateBookRequest
)
from inventory.book_store import BookStore
from inventory.database import MongoDBManager
from inventory.errors import Forbidden, InventoryError, NotFound, StorageError, ValidationError
from inventory.normalizer import ReferenceNormalizer
from inventory.orchestrator import MutationOrchestrator
from inventory.publisher import EventPublisher, RedisStreamChannel
from inventory.reconciliation import DeadLetterStore
from utilities.config import config

# Setup logging
logger = structlog.get_logger(__name__)

# Process-wide handles, built once in the lifespan
db_manager: Optional[MongoDBManager] = None
channel: Optional[RedisStreamChannel] = None
orchestrator: Optional[MutationOrchestrator] = None


def build_orchestrator(manager: MongoDBManager, event_channel: RedisStreamChannel) -> MutationOrchestrator:
    """Wire the mutation core from connected handles."""
    return MutationOrchestrator(
        normalizer=ReferenceNormalizer(manager.authors, manager.genres),
        store=BookStore(manager.books, max_update_conflicts=config.update_conflict_retries),
        publisher=EventPublisher(
            event_channel,
            retry_attempts=config.publish_retry_attempts,
            retry_delay=config.publish_retry_delay,
            send_timeout=config.publish_timeout,
        ),
        dead_letters=DeadLetterStore(manager.dead_letters),
        storage_retry_attempts=config.storage_retry_attempts,
        storage_retry_delay=config.storage_retry_delay,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global db_manager, channel, orchestrator
    logger.info("Starting NovelNest Inventory API")

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
        orchestrator = build_orchestrator(db_manager, channel)
    except Exception as e:
        logger.error("Failed to initialize inventory service", error=str(e))
        raise

    yield

    logger.info("Shutting down NovelNest Inventory API")
    await channel.disconnect()
    await db_manager.disconnect()
    orchestrator = None


# Create FastAPI application
app = FastAPI(
    title=api_config.api_title,
    description=api_config.api_description,
    version=api_config.api_version,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=api_config.cors_origins,
    allow_credentials=api_config.cors_allow_credentials,
    allow_methods=api_config.cors_allow_methods,
    allow_headers=api_config.cors_allow_headers,
)


def _error(status_code: int, message: str, detail: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=MessageResponse(success=False, message=message, detail=detail).model_dump(),
    )


# Exception handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=MessageResponse(success=False, message=str(exc.detail)).model_dump(),
        headers=exc.headers
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(status.HTTP_400_BAD_REQUEST, exc.message)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _error(status.HTTP_404_NOT_FOUND, "Book not found")


@app.exception_handler(Forbidden)
async def forbidden_handler(request: Request, exc: Forbidden):
    """Non-owners get the not-found response unless disclosure is enabled."""
    if api_config.disclose_forbidden:
        return _error(status.HTTP_403_FORBIDDEN, exc.message)
    return _error(status.HTTP_404_NOT_FOUND, "Book not found")


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure", error=exc.message, path=request.url.path, context=exc.context)
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Storage temporarily unavailable",
        exc.context if api_config.debug else None,
    )


@app.exception_handler(InventoryError)
async def inventory_error_handler(request: Request, exc: InventoryError):
    logger.error("Unhandled inventory error", error=exc.message, path=request.url.path)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        {"error": str(exc)} if api_config.debug else None,
    )


def get_orchestrator() -> MutationOrchestrator:
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inventory service not available"
        )
    return orchestrator


@app.get("/", tags=["Health"])
async def root():
    return {"message": "NovelNest Inventory Service is running!"}


# Health check endpoint (no authentication required)
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    db_status = "unavailable"
    channel_status = "unavailable"
    if db_manager:
        health_info = await db_manager.health_check()
        db_status = health_info.get("status", "unknown")
    if channel:
        channel_status = await channel.health_check()

    healthy = db_status == "healthy" and channel_status == "healthy"
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=api_config.api_version,
        database_status=db_status,
        channel_status=channel_status
    )


@app.post("/api/books", response_model=BookEnvelope, status_code=status.HTTP_201_CREATED, tags=["Books"])
async def create_book(
    payload: CreateBookRequest,
    user_id: str = Depends(verify_token),
    core: MutationOrchestrator = Depends(get_orchestrator),
):
    """
    Create a book owned by the authenticated user.

    - **title**: Book title
    - **author**: Author name, created on first use
    - **genre**: Genre name, created on first use
    """
    if not payload.title or not payload.author or not payload.genre:
        raise ValidationError("All fields are required")

    result = await core.create_book(user_id, payload.title, payload.author, payload.genre)
    logger.info("Successfully created book", book_id=result.book.id)
    return BookEnvelope(message="Book created successfully", book=result.view())


@app.get("/api/books/{book_id}", response_model=BookDataResponse, tags=["Books"])
async def get_book(
    book_id: str,
    user_id: str = Depends(verify_token),
    core: MutationOrchestrator = Depends(get_orchestrator),
):
    """Get a book with its author and genre."""
    book = await core.get_book(book_id)
    return BookDataResponse(data=book)


@app.put("/api/books/{book_id}", response_model=BookEnvelope, tags=["Books"])
async def update_book(
    book_id: str,
    payload: UpdateBookRequest,
    user_id: str = Depends(verify_token),
    core: MutationOrchestrator = Depends(get_orchestrator),
):
    """
    Update a book owned by the authenticated user. Omitted fields are unchanged.
    """
    result = await core.update_book(
        user_id, book_id, title=payload.title, author=payload.author, genre=payload.genre
    )
    logger.info("Successfully updated book", book_id=result.book.id)
    # Built from the committed row; a reference name that could not be re-read is null
    return BookEnvelope(message="Book updated successfully", book=result.view())


@app.delete("/api/books/{book_id}", response_model=MessageResponse, tags=["Books"])
async def delete_book(
    book_id: str,
    user_id: str = Depends(verify_token),
    core: MutationOrchestrator = Depends(get_orchestrator),
):
    """Delete a book owned by the authenticated user."""
    result = await core.delete_book(user_id, book_id)
    logger.info("Successfully deleted book", book_id=result.book.id)
    return MessageResponse(success=True, message="Book deleted successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=api_config.host,
        port=api_config.port,
        reload=api_config.debug,
        log_level="info"
    )
