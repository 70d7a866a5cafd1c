"""
JobStore interface

Persistence for print jobs and their audit logs. Every status change goes
through ``_compare_and_set``: a backend applies a change only if the job is
still in one of the expected statuses, so two workers racing on the same job
can never both win. The state machine itself lives here, backends only have
to provide storage primitives.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..models.job import (
    PrintJob,
    JobStatus,
    JobLogEntry,
    LogLevel,
    TransitionResult,
    can_transition_to,
    sources_for,
    utcnow,
)
from ..core.exceptions import JobNotFoundError
from ..utils.logger import get_logger


Clock = Callable[[], datetime]


class JobStore(ABC):
    """Abstract print job storage with guarded status transitions."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock: Clock = clock or utcnow
        self.logger = get_logger(__name__)

    async def initialize(self) -> None:
        """Prepare the backend (connections, schema)."""

    async def close(self) -> None:
        """Release backend resources."""

    async def is_healthy(self) -> bool:
        return True

    # Storage primitives implemented by backends

    @abstractmethod
    async def create(self, job: PrintJob) -> Tuple[PrintJob, bool]:
        """
        Store a new job unless its idempotency key is already taken.

        Returns:
            (job, created): the stored job, or the existing job for the key
            with created=False. An existing job is returned unchanged.
        """

    @abstractmethod
    async def get(self, job_id: str) -> Optional[PrintJob]:
        """Get a job by id."""

    @abstractmethod
    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PrintJob]:
        """Get a job by its idempotency key."""

    @abstractmethod
    async def claim_next(self, printer_id: str) -> Optional[PrintJob]:
        """
        Atomically hand the next ready job for a printer to one caller.

        Picks the highest priority, then oldest, QUEUED job whose
        next_retry_at is unset or has passed, moves it to DELIVERED and
        stamps delivered_at. Concurrent callers never receive the same job.
        """

    @abstractmethod
    async def peek_next(self, printer_id: str) -> Optional[PrintJob]:
        """Return the job claim_next would pick, without changing anything."""

    @abstractmethod
    async def list_jobs(
        self,
        printer_id: Optional[str] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
        limit: int = 100
    ) -> List[PrintJob]:
        """List jobs, newest first."""

    @abstractmethod
    async def list_stale_deliveries(self, delivered_before: datetime) -> List[PrintJob]:
        """DELIVERED jobs handed out before the given time."""

    @abstractmethod
    async def list_retry_ready(self, now: datetime) -> List[PrintJob]:
        """FAILED jobs with retry budget whose next_retry_at has passed."""

    @abstractmethod
    async def list_terminal_failures(self, limit: int = 100) -> List[PrintJob]:
        """FAILED jobs with no retry budget left."""

    @abstractmethod
    async def append_log(self, entry: JobLogEntry) -> None:
        """Append an audit entry. Entries are never changed afterwards."""

    @abstractmethod
    async def get_logs(self, job_id: str) -> List[JobLogEntry]:
        """Audit entries for a job, oldest first."""

    @abstractmethod
    async def statistics(self) -> Dict[str, int]:
        """Job counts by status plus a "total" key."""

    @abstractmethod
    async def _compare_and_set(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        changes: Dict[str, Any],
        require_retry_budget: bool = False
    ) -> Tuple[Optional[PrintJob], bool]:
        """
        Apply changes if the job's status is one of expected.

        With require_retry_budget the change also needs
        retry_count < max_retries. ``changes`` may contain the special key
        "retry_count_increment".

        Returns:
            (job, applied): the job after the call (None if it does not
            exist) and whether the change was written.
        """

    # State machine

    async def mark_printed(self, job_id: str) -> TransitionResult:
        now = self.clock()
        return await self._transition(
            job_id, JobStatus.PRINTED,
            {"printed_at": now, "next_retry_at": None},
            "Printer confirmed job printed"
        )

    async def mark_failed(self, job_id: str, error: str,
                          next_retry_at: Optional[datetime] = None) -> TransitionResult:
        """
        Record a failed delivery.

        next_retry_at is the earliest time the retry scheduler may requeue
        the job; it is dropped when the job has no retry budget left.
        """
        current = await self._require(job_id)
        if not current.has_retry_budget():
            next_retry_at = None
        return await self._transition(
            job_id, JobStatus.FAILED,
            {"last_error": error, "next_retry_at": next_retry_at},
            f"Job failed: {error}",
            level=LogLevel.ERROR,
            details={"next_retry_at": next_retry_at.isoformat() if next_retry_at else None}
        )

    async def requeue(self, job_id: str) -> TransitionResult:
        """FAILED -> QUEUED, only while retry_count < max_retries."""
        return await self._transition(
            job_id, JobStatus.QUEUED,
            {"retry_count_increment": 1, "next_retry_at": None},
            "Job requeued for retry",
            require_retry_budget=True
        )

    async def cancel(self, job_id: str, reason: Optional[str] = None) -> TransitionResult:
        now = self.clock()
        reason = reason or "Job cancelled by operator"
        return await self._transition(
            job_id, JobStatus.CANCELLED,
            {"cancelled_at": now, "last_error": reason, "next_retry_at": None},
            reason,
            level=LogLevel.WARNING
        )

    async def log(self, job: PrintJob, level: LogLevel, message: str, **details) -> None:
        await self.append_log(JobLogEntry(
            job_id=job.id,
            level=level,
            message=message,
            printer_id=job.printer_id,
            details=details,
            timestamp=self.clock(),
        ))

    async def _require(self, job_id: str) -> PrintJob:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _transition(
        self,
        job_id: str,
        target: JobStatus,
        changes: Dict[str, Any],
        message: str,
        level: LogLevel = LogLevel.INFO,
        require_retry_budget: bool = False,
        details: Optional[Dict[str, Any]] = None
    ) -> TransitionResult:
        before = await self._require(job_id)
        expected = sources_for(target)

        changes = dict(changes)
        changes["status"] = target
        changes["updated_at"] = self.clock()

        job, applied = await self._compare_and_set(
            job_id, expected, changes, require_retry_budget=require_retry_budget
        )
        if job is None:
            raise JobNotFoundError(job_id)

        if applied:
            await self.log(job, level, message, previous_status=before.status.value, **(details or {}))
            return TransitionResult(job=job, applied=True, previous_status=before.status)

        reason = self._rejection_reason(job, target, require_retry_budget)
        self.logger.warning("Rejected job status transition", extra={
            "job_id": job_id,
            "printer_id": job.printer_id,
            "current_status": job.status.value,
            "target_status": target.value,
            "reason": reason
        })
        await self.log(
            job, LogLevel.WARNING,
            f"Rejected transition {job.status.value} -> {target.value}: {reason}",
            current_status=job.status.value,
            target_status=target.value
        )
        return TransitionResult(job=job, applied=False, previous_status=job.status)

    @staticmethod
    def _rejection_reason(job: PrintJob, target: JobStatus, require_retry_budget: bool) -> str:
        if not can_transition_to(job.status, target):
            return "invalid transition"
        if require_retry_budget and not job.has_retry_budget():
            return "retry budget exhausted"
        return "status changed concurrently"
