"""
Configuration management using environment variables.
Handles storage, event channel, retry and logging settings with validation and defaults.
"""

from typing import Optional
from pathlib import Path

from pydantic import Field, validator
from pydantic_settings import BaseSettings


class InventoryConfig(BaseSettings):
    """
    Configuration class for the inventory service.
    Uses pydantic BaseSettings for environment variable management.
    """

    # MongoDB Configuration
    mongodb_url: str = Field(default="mongodb://localhost:27017", env="MONGODB_URL")
    mongodb_database: str = Field(default="novelnest_inventory", env="MONGODB_DATABASE")
    authors_collection: str = Field(default="authors", env="AUTHORS_COLLECTION")
    genres_collection: str = Field(default="genres", env="GENRES_COLLECTION")
    books_collection: str = Field(default="books", env="BOOKS_COLLECTION")
    dead_letters_collection: str = Field(default="dead_letters", env="DEAD_LETTERS_COLLECTION")
    mongodb_timeout_ms: int = Field(default=5000, env="MONGODB_TIMEOUT_MS")

    # Event channel (Redis Streams)
    redis_url: str = Field(default="redis://localhost:6379/0", env="REDIS_URL")
    event_stream: str = Field(default="book_events", env="EVENT_STREAM")
    stream_max_length: int = Field(default=100_000, env="STREAM_MAX_LENGTH")

    # Publisher retry policy
    publish_retry_attempts: int = Field(default=3, env="PUBLISH_RETRY_ATTEMPTS")
    publish_retry_delay: float = Field(default=0.5, env="PUBLISH_RETRY_DELAY")
    publish_timeout: float = Field(default=5.0, env="PUBLISH_TIMEOUT")

    # Storage retry policy (reference normalization)
    storage_retry_attempts: int = Field(default=2, env="STORAGE_RETRY_ATTEMPTS")
    storage_retry_delay: float = Field(default=0.2, env="STORAGE_RETRY_DELAY")
    update_conflict_retries: int = Field(default=5, env="UPDATE_CONFLICT_RETRIES")

    # Reconciliation forwarder
    forwarder_interval_seconds: int = Field(default=60, env="FORWARDER_INTERVAL_SECONDS")
    forwarder_batch_size: int = Field(default=100, env="FORWARDER_BATCH_SIZE")
    forwarder_max_attempts: int = Field(default=10, env="FORWARDER_MAX_ATTEMPTS")

    # Logging Configuration
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    # Development/Testing
    debug: bool = Field(default=False, env="DEBUG")

    @validator('publish_retry_attempts', 'storage_retry_attempts')
    def validate_retry_attempts(cls, v):
        """Ensure retry attempts is reasonable."""
        if v < 0 or v > 10:
            raise ValueError('retry attempts must be between 0 and 10')
        return v

    @validator('publish_retry_delay', 'storage_retry_delay')
    def validate_retry_delay(cls, v):
        """Ensure retry delay is non-negative."""
        if v < 0:
            raise ValueError('retry delay cannot be negative')
        return v

    @validator('update_conflict_retries', 'forwarder_batch_size', 'forwarder_max_attempts')
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('value must be at least 1')
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Ensure log level is valid."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'log_level must be one of: {valid_levels}')
        return v.upper()

    @validator('log_format')
    def validate_log_format(cls, v):
        """Ensure log format is valid."""
        valid_formats = ['json', 'console']
        if v.lower() not in valid_formats:
            raise ValueError(f'log_format must be one of: {valid_formats}')
        return v.lower()

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields from .env

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path as Path object."""
        if self.log_file:
            return Path(self.log_file)
        return None


# Global configuration instance, read by process entry points only
config = InventoryConfig()
