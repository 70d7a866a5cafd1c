"""
PrintQueueOrchestrator, the class that wires all services together

Builds the job store, printer registry, status reporter and services from a
Settings object and owns their start/stop lifecycle. The HTTP application
and the CLI only talk to this class.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..models.job import PrintJob, JobStatus, JobLogEntry, TransitionResult
from ..store.base import JobStore, Clock
from ..store.memory import InMemoryJobStore
from ..store.postgres import PostgresJobStore
from ..services.printer_registry import PrinterRegistry, InMemoryPrinterRegistry
from ..services.retry_policy import RetryPolicy
from ..services.status_reporter import StatusReporter
from ..services.enqueue_service import EnqueueService, EnqueueResult
from ..services.poll_dispatcher import PollDispatcher
from ..services.retry_scheduler import RetryScheduler, SweepResult
from ..utils.config import Settings
from ..utils.logger import get_logger, set_log_context
from .exceptions import OrchestratorError, JobNotFoundError, InvalidTransitionError, PrintQueueError


class PrintQueueOrchestrator:
    """
    Composition root for the print queue.

    Provides a unified interface for:
    - Job enqueueing, reprints and cancellation
    - The CloudPRNT poll cycle (through ``dispatcher``)
    - Retry sweeps and terminal failure reporting
    - Health checks and metrics
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[JobStore] = None,
        printers: Optional[PrinterRegistry] = None,
        clock: Optional[Clock] = None,
        run_scheduler: bool = True
    ):
        """
        Initialize the PrintQueueOrchestrator.

        Args:
            settings: Runtime settings, defaults to Settings()
            store: Job store; built from settings.database_url when omitted
                (PostgreSQL if set, in-memory otherwise)
            printers: Printer registry; loaded from settings.printers when omitted
            clock: Optional time source shared by the in-memory components
            run_scheduler: Whether start() launches the background retry task
        """
        self.settings = settings or Settings()

        if store is None:
            if self.settings.database_url:
                store = PostgresJobStore(self.settings.database_url, clock=clock)
            else:
                store = InMemoryJobStore(clock=clock)
        self.store = store
        self.printers = printers or InMemoryPrinterRegistry(self.settings.printers, clock=clock)

        self.retry_policy = RetryPolicy(
            backoff_seconds=self.settings.retry_backoff_seconds,
            strategy=self.settings.backoff_strategy,
            max_backoff_seconds=self.settings.max_backoff_seconds
        )
        self.reporter = StatusReporter(self.store, self.retry_policy)
        self.enqueue_service = EnqueueService(
            self.store, self.printers, self.reporter,
            default_max_retries=self.settings.default_max_retries
        )
        self.dispatcher = PollDispatcher(self.store, self.printers, self.reporter)
        self.scheduler = RetryScheduler(
            self.store, self.reporter,
            delivery_timeout_seconds=self.settings.delivery_timeout_seconds,
            sweep_interval_seconds=self.settings.sweep_interval_seconds
        )
        self.run_scheduler = run_scheduler

        self._is_running = False

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="orchestrator")

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self):
        """Start the store and the retry scheduler."""
        if self._is_running:
            return
        self.logger.info("Starting PrintQueueOrchestrator", extra={
            "store": self.store.__class__.__name__,
            "printers": len(self.printers.list()),
            "scheduler_enabled": self.run_scheduler
        })

        try:
            await self.store.initialize()
            if self.run_scheduler:
                await self.scheduler.start()
            self._is_running = True
            self.logger.info("PrintQueueOrchestrator started successfully")

        except PrintQueueError as e:
            self.logger.error("Failed to start PrintQueueOrchestrator", exc_info=True)
            await self.stop()
            raise OrchestratorError(f"Failed to start orchestrator: {e.message}")

    async def stop(self):
        """Stop the retry scheduler and release the store."""
        self.logger.info("Stopping PrintQueueOrchestrator")

        await self.scheduler.stop()
        try:
            await self.store.close()
        except PrintQueueError:
            self.logger.error("Error closing job store", exc_info=True)

        self._is_running = False
        self.logger.info("PrintQueueOrchestrator stopped")

    async def __aenter__(self) -> "PrintQueueOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # Job management interface

    async def enqueue(self, **kwargs) -> EnqueueResult:
        """Enqueue a job; see EnqueueService.enqueue for the arguments."""
        return await self.enqueue_service.enqueue(**kwargs)

    async def enqueue_receipt(self, printer_id: str, items, **kwargs) -> EnqueueResult:
        return await self.enqueue_service.enqueue_receipt(printer_id, items, **kwargs)

    async def reprint(self, job_id: str, reason: Optional[str] = None) -> EnqueueResult:
        return await self.enqueue_service.reprint(job_id, reason)

    async def cancel_job(self, job_id: str, reason: Optional[str] = None,
                         strict: bool = False) -> TransitionResult:
        """
        Cancel a QUEUED or DELIVERED job.

        A job that already reached another status is left alone and the
        result reports applied=False. With strict=True that case raises
        InvalidTransitionError instead.
        """
        result = await self.store.cancel(job_id, reason)
        if strict and not result.applied:
            raise InvalidTransitionError(job_id, result.status.value, JobStatus.CANCELLED.value)
        if result.applied:
            self.logger.info("Job cancelled", extra={
                "job_id": job_id,
                "printer_id": result.job.printer_id,
                "previous_status": result.previous_status.value
            })
        return result

    async def get_job(self, job_id: str) -> PrintJob:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_job_logs(self, job_id: str) -> List[JobLogEntry]:
        await self.get_job(job_id)
        return await self.store.get_logs(job_id)

    async def list_jobs(self, printer_id: Optional[str] = None,
                        statuses: Optional[Iterable[JobStatus]] = None,
                        limit: int = 100) -> List[PrintJob]:
        return await self.store.list_jobs(printer_id, statuses, limit)

    async def list_failures(self, limit: int = 100) -> List[PrintJob]:
        return await self.reporter.list_failures(limit)

    async def sweep(self) -> SweepResult:
        """Run one retry sweep now."""
        return await self.scheduler.sweep()

    # Printers

    def list_printers(self) -> List[Dict[str, Any]]:
        printers = []
        for printer in self.printers.list():
            data = printer.to_dict()
            last_poll: Optional[datetime] = self.printers.last_poll(printer.id)
            data["last_poll"] = last_poll.isoformat() if last_poll else None
            printers.append(data)
        return printers

    # Health and metrics

    async def get_health(self) -> Dict[str, Any]:
        store_healthy = await self.store.is_healthy()
        return {
            "status": "healthy" if store_healthy else "degraded",
            "store": self.store.__class__.__name__,
            "store_healthy": store_healthy,
            "scheduler_running": self.scheduler.is_running,
            "cloudprnt_enabled": self.settings.cloudprnt_enabled,
            "jobs": await self.store.statistics() if store_healthy else {}
        }

    async def render_metrics(self) -> bytes:
        return await self.reporter.render_metrics()
