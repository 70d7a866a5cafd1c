"""
RetryScheduler service

Background sweep that fails deliveries the printer never confirmed and puts
failed jobs back in the queue once their backoff has passed.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..models.job import JobStatus
from ..store.base import JobStore
from ..core.exceptions import DeliveryTimeout, error_registry
from ..utils.logger import get_logger, set_log_context
from .status_reporter import StatusReporter


DELIVERY_TIMEOUT_ERROR = "delivery timeout"


@dataclass
class SweepResult:
    """Job ids touched by one sweep."""
    timed_out: List[str] = field(default_factory=list)
    requeued: List[str] = field(default_factory=list)
    exhausted: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timed_out": list(self.timed_out),
            "requeued": list(self.requeued),
            "exhausted": list(self.exhausted)
        }


class RetryScheduler:
    """
    Owns the single retry task.

    Every change it makes goes through the store's guarded transitions, so
    it can run alongside polls and operator cancels.
    """

    def __init__(self,
                 store: JobStore,
                 reporter: StatusReporter,
                 delivery_timeout_seconds: float = 45.0,
                 sweep_interval_seconds: float = 10.0):
        """
        Initialize RetryScheduler.

        Args:
            store: Job storage
            reporter: Status reporter; its retry policy sets next_retry_at
            delivery_timeout_seconds: How long a DELIVERED job may wait for
                its confirmation
            sweep_interval_seconds: Seconds between sweeps
        """
        self.store = store
        self.reporter = reporter
        self.delivery_timeout_seconds = delivery_timeout_seconds
        self.sweep_interval_seconds = sweep_interval_seconds

        self._sweep_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="retry_scheduler")

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self):
        """Start the sweep task."""
        if self.is_running:
            return
        self.logger.info("Starting RetryScheduler", extra={
            "delivery_timeout_seconds": self.delivery_timeout_seconds,
            "sweep_interval_seconds": self.sweep_interval_seconds
        })
        self._shutdown_event.clear()
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        """Stop the sweep task."""
        self.logger.info("Stopping RetryScheduler")
        self._shutdown_event.set()

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self.logger.info("RetryScheduler stopped")

    async def sweep(self) -> SweepResult:
        """
        Run one pass.

        Stale deliveries are failed first, so a job whose backoff is already
        over is requeued in the same pass.
        """
        result = SweepResult()
        now = self.store.clock()
        cutoff = now - timedelta(seconds=self.delivery_timeout_seconds)

        for job in await self.store.list_stale_deliveries(cutoff):
            error_registry.record_error(DeliveryTimeout(job.id, self.delivery_timeout_seconds))
            transition = await self.reporter.record_failed(job.id, DELIVERY_TIMEOUT_ERROR, reason="timeout")
            if not transition.applied:
                continue
            result.timed_out.append(job.id)
            if not transition.job.has_retry_budget():
                result.exhausted.append(job.id)

        for job in await self.store.list_retry_ready(self.store.clock()):
            transition = await self.store.requeue(job.id)
            if transition.applied:
                self.reporter.record_requeued(transition.job)
                result.requeued.append(job.id)
                self.logger.info("Job requeued", extra={
                    "job_id": job.id,
                    "printer_id": job.printer_id,
                    "retry_count": transition.job.retry_count,
                    "max_retries": transition.job.max_retries
                })
            elif transition.job.status == JobStatus.FAILED and not transition.job.has_retry_budget():
                await self.reporter.report_terminal_failure(transition.job)
                result.exhausted.append(job.id)

        if result.timed_out or result.requeued or result.exhausted:
            self.logger.info("Retry sweep finished", extra=result.to_dict())
        return result

    async def _sweep_loop(self):
        """Main sweep loop."""
        while not self._shutdown_event.is_set():
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                self.logger.error("Error in retry sweep", exc_info=True)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass
