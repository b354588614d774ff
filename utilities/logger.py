"""
Comprehensive logging system using structlog.
Provides structured logging with different output formats and levels.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[Union[str, Path]] = None,
    debug: bool = False
) -> None:
    """
    Set up structured logging with configurable output formats.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or console)
        log_file: Optional log file path
        debug: Enable debug mode for more verbose logging
    """

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Configure structlog processors
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if debug:
        processors.append(structlog.processors.CallsiteParameterAdder())

    # Add format-specific processors
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    # Set up file logging if specified
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(logging.Formatter('%(message)s'))

        logging.getLogger().addHandler(file_handler)

    logger = structlog.get_logger(__name__)
    logger.info(
        "Logging system initialized",
        level=log_level,
        format=log_format,
        file=str(log_file) if log_file else None,
        debug=debug
    )


class MutationLogger:
    """
    Specialized logger for book mutations with context management.
    """

    def __init__(self, name: str = "mutations"):
        self.logger = structlog.get_logger(name)
        self.context: Dict[str, Any] = {}

    def bind_context(self, **kwargs) -> 'MutationLogger':
        """
        Bind context variables to the logger.

        Args:
            **kwargs: Context variables to bind

        Returns:
            Self for method chaining
        """
        self.context.update(kwargs)
        return self

    def _fields(self, **kwargs) -> Dict[str, Any]:
        # Explicit fields win over bound context
        return {**self.context, **kwargs}

    def log_mutation_start(self, operation: str, user_id: str, book_id: Optional[str] = None) -> None:
        self.logger.debug(
            "Mutation started",
            **self._fields(operation=operation, user_id=user_id, book_id=book_id)
        )

    def log_mutation_committed(self, operation: str, book_id: str, user_id: str) -> None:
        self.logger.info(
            "Mutation committed",
            **self._fields(operation=operation, book_id=book_id, user_id=user_id)
        )

    def log_mutation_failed(
        self,
        operation: str,
        error: str,
        state: str,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a mutation that aborted before an event was built."""
        self.logger.warning(
            "Mutation failed",
            **self._fields(operation=operation, error=error, state=state, error_context=context or {})
        )

    def log_retry(self, target: str, attempt: int, max_attempts: int, delay: float, error: str) -> None:
        """Log retry attempt."""
        self.logger.warning(
            "Retrying operation",
            **self._fields(
                target=target,
                attempt=attempt,
                max_attempts=max_attempts,
                delay_seconds=delay,
                error=error
            )
        )

    def log_publish_failure(self, event_id: str, event_type: str, book_id: str, error: str) -> None:
        """Log an event that could not be delivered after its mutation committed."""
        self.logger.error(
            "Event delivery failed after commit",
            **self._fields(event_id=event_id, event_type=event_type, book_id=book_id, error=error)
        )
