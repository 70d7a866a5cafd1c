"""
StatusReporter service

Applies delivery outcomes reported by printers, keeps the Prometheus
counters for the queue and tracks jobs that failed for good.
"""

from collections import OrderedDict
from typing import Optional, List

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST

from ..models.job import PrintJob, JobStatus, TransitionResult
from ..models.printer import PrinterStatusReport, JobOutcome
from ..store.base import JobStore
from ..core.exceptions import TerminalFailure, JobNotFoundError, error_registry
from ..utils.logger import get_logger, set_log_context
from .retry_policy import RetryPolicy


# Ids of recently reported terminal failures kept for de-duplication
REPORTED_TERMINAL_LIMIT = 10000


class StatusReporter:
    """
    Records delivery, print and failure events.

    Every instance owns its own CollectorRegistry so several queues (or
    test cases) can live in one process.
    """

    metrics_content_type = CONTENT_TYPE_LATEST

    def __init__(self,
                 store: JobStore,
                 retry_policy: Optional[RetryPolicy] = None,
                 registry: Optional[CollectorRegistry] = None):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.registry = registry or CollectorRegistry()
        self._reported_terminal: "OrderedDict[str, None]" = OrderedDict()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="status_reporter")

        self.jobs_enqueued = Counter(
            "cloudprnt_jobs_enqueued", "Print jobs accepted into the queue",
            ["printer_id"], registry=self.registry
        )
        self.jobs_delivered = Counter(
            "cloudprnt_jobs_delivered", "Print jobs handed to a polling printer",
            ["printer_id"], registry=self.registry
        )
        self.jobs_printed = Counter(
            "cloudprnt_jobs_printed", "Print jobs confirmed printed",
            ["printer_id"], registry=self.registry
        )
        self.jobs_failed = Counter(
            "cloudprnt_jobs_failed", "Failed print deliveries",
            ["printer_id", "reason"], registry=self.registry
        )
        self.jobs_requeued = Counter(
            "cloudprnt_jobs_requeued", "Failed print jobs put back in the queue",
            ["printer_id"], registry=self.registry
        )
        self.terminal_failures = Counter(
            "cloudprnt_jobs_terminal_failures", "Print jobs that exhausted their retries",
            ["printer_id"], registry=self.registry
        )
        self.protocol_errors = Counter(
            "cloudprnt_protocol_errors", "Malformed printer polls",
            ["printer_id"], registry=self.registry
        )
        self.jobs_by_status = Gauge(
            "cloudprnt_jobs", "Print jobs by status",
            ["status"], registry=self.registry
        )

    # Event recording

    def record_enqueued(self, job: PrintJob):
        self.jobs_enqueued.labels(printer_id=job.printer_id).inc()

    def record_delivered(self, job: PrintJob):
        self.jobs_delivered.labels(printer_id=job.printer_id).inc()

    def record_requeued(self, job: PrintJob):
        self.jobs_requeued.labels(printer_id=job.printer_id).inc()

    def record_protocol_error(self, printer_id: str):
        self.protocol_errors.labels(printer_id=printer_id).inc()

    async def record_printed(self, job_id: str) -> TransitionResult:
        result = await self.store.mark_printed(job_id)
        if result.applied:
            self.jobs_printed.labels(printer_id=result.job.printer_id).inc()
            self.logger.info("Job printed", extra={
                "job_id": job_id,
                "printer_id": result.job.printer_id
            })
        return result

    async def record_failed(self, job_id: str, error: str, reason: str = "printer") -> TransitionResult:
        """
        Mark a delivered job FAILED and schedule its retry.

        Jobs without retry budget stay FAILED and are reported as terminal
        failures.
        """
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        next_retry_at = self.retry_policy.next_retry_at(job, self.store.clock())
        result = await self.store.mark_failed(job_id, error, next_retry_at)

        if result.applied:
            self.jobs_failed.labels(printer_id=result.job.printer_id, reason=reason).inc()
            self.logger.warning("Job delivery failed", extra={
                "job_id": job_id,
                "printer_id": result.job.printer_id,
                "error": error,
                "retry_count": result.job.retry_count,
                "next_retry_at": next_retry_at.isoformat() if next_retry_at else None
            })
            if not result.job.has_retry_budget():
                await self.report_terminal_failure(result.job)
        return result

    async def apply_report(self, printer_id: str, report: PrinterStatusReport) -> Optional[TransitionResult]:
        """
        Apply the outcome a printer reported for its last job.

        Returns None when the report carries no outcome or names a job that
        does not belong to this printer.
        """
        if not report.has_outcome:
            return None

        job = await self.store.get(report.job_token)
        if job is None or job.printer_id != printer_id:
            self.logger.warning("Printer reported outcome for unknown job", extra={
                "printer_id": printer_id,
                "job_token": report.job_token,
                "job_outcome": report.job_outcome
            })
            return None

        if report.job_outcome == JobOutcome.PRINTED:
            return await self.record_printed(job.id)
        return await self.record_failed(
            job.id, report.error_message or f"Printer reported status {report.status_code}"
        )

    # Terminal failures

    async def report_terminal_failure(self, job: PrintJob) -> bool:
        """Surface a job that will not be retried again. Each job is reported once."""
        if job.id in self._reported_terminal:
            return False
        self._reported_terminal[job.id] = None
        if len(self._reported_terminal) > REPORTED_TERMINAL_LIMIT:
            self._reported_terminal.popitem(last=False)

        failure = TerminalFailure(job.id, job.retry_count, job.last_error)
        error_registry.record_error(failure)
        self.terminal_failures.labels(printer_id=job.printer_id).inc()
        self.logger.error(failure.message, extra={
            "job_id": job.id,
            "printer_id": job.printer_id,
            "order_id": job.order_id,
            "last_error": job.last_error
        })
        return True

    async def list_failures(self, limit: int = 100) -> List[PrintJob]:
        """Jobs that are permanently FAILED, newest first."""
        return await self.store.list_terminal_failures(limit)

    # Metrics

    async def render_metrics(self) -> bytes:
        stats = await self.store.statistics()
        for status in JobStatus:
            self.jobs_by_status.labels(status=status.value).set(stats.get(status.value, 0))
        return generate_latest(self.registry)
