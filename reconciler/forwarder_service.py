"""
Scheduled reconciliation service.

This module provides:
- Interval scheduling of the reconciliation forwarder with APScheduler
- Job event logging
- Run-once mode for operators
"""

import asyncio
import signal
from typing import Dict, Optional

import structlog
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from reconciler.forwarder import ForwardResult, ReconciliationForwarder

logger = structlog.get_logger(__name__)


class ForwarderService:
    """Runs the reconciliation forwarder on a fixed interval."""

    def __init__(self, forwarder: ReconciliationForwarder, interval_seconds: int = 60):
        """
        Initialize forwarder service.

        Args:
            forwarder: Forwarder bound to the dead-letter store and publisher
            interval_seconds: Seconds between forwarding passes
        """
        self.forwarder = forwarder
        self.interval_seconds = interval_seconds
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.logger = logger.bind(component="forwarder_service")
        self._stop_event: Optional[asyncio.Event] = None

        self._setup_scheduler_listeners()

    def _setup_scheduler_listeners(self) -> None:
        """Setup scheduler event listeners."""
        def job_executed_listener(event):
            self.logger.debug(
                "Job executed successfully",
                job_id=event.job_id,
                delivered=event.retval.get('delivered', 0) if event.retval else 0
            )

        def job_error_listener(event):
            self.logger.error(
                "Job execution failed",
                job_id=event.job_id,
                error=str(event.exception)
            )

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_stop)

    async def start(self, run_once: bool = False) -> Optional[ForwardResult]:
        """
        Start the forwarder service. Blocks until a stop is requested.

        Args:
            run_once: Forward a single batch and return its result
        """
        if run_once:
            self.logger.info("Starting forwarder service in RUN ONCE MODE")
            return await self.forwarder.run_once()

        self.scheduler.add_job(
            func=self._forward_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id='reconciliation_forwarder',
            name='Reconciliation Forwarder',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.start()
        self.logger.info("Forwarder service started", interval_seconds=self.interval_seconds)

        self._stop_event = asyncio.Event()
        self._setup_signal_handlers()
        try:
            await self._stop_event.wait()
        finally:
            self.stop()
        return None

    def request_stop(self) -> None:
        self.logger.info("Shutdown requested")
        if self._stop_event is not None:
            self._stop_event.set()

    def stop(self) -> None:
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.logger.info("Forwarder service stopped")

    async def _forward_job(self) -> Dict:
        """Scheduled job wrapper around one forwarding pass."""
        result = await self.forwarder.run_once()
        return result.model_dump(mode="json")
