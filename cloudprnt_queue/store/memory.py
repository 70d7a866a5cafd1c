"""
In-memory JobStore

Single-process backend used by tests, the development server and
deployments that can live without persistence. All mutations run under one
asyncio lock; callers only ever see copies of the stored jobs.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from itertools import count
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.job import PrintJob, JobStatus, JobLogEntry, LogLevel
from .base import JobStore, Clock


class InMemoryJobStore(JobStore):
    """JobStore backed by dictionaries."""

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._jobs: Dict[str, PrintJob] = {}
        self._by_key: Dict[str, str] = {}
        self._sequence: Dict[str, int] = {}
        self._logs: Dict[str, List[JobLogEntry]] = defaultdict(list)
        self._counter = count()
        self._lock = asyncio.Lock()

    async def create(self, job: PrintJob) -> Tuple[PrintJob, bool]:
        async with self._lock:
            existing_id = self._by_key.get(job.idempotency_key)
            if existing_id is not None:
                return self._jobs[existing_id].copy(), False

            stored = job.copy(status=JobStatus.QUEUED)
            self._jobs[stored.id] = stored
            self._by_key[stored.idempotency_key] = stored.id
            self._sequence[stored.id] = next(self._counter)
            return stored.copy(), True

    async def get(self, job_id: str) -> Optional[PrintJob]:
        job = self._jobs.get(job_id)
        return job.copy() if job else None

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PrintJob]:
        job_id = self._by_key.get(idempotency_key)
        return self._jobs[job_id].copy() if job_id else None

    async def claim_next(self, printer_id: str) -> Optional[PrintJob]:
        async with self._lock:
            job = self._next_ready(printer_id, self.clock())
            if job is None:
                return None
            now = self.clock()
            job.status = JobStatus.DELIVERED
            job.delivered_at = now
            job.updated_at = now
            claimed = job.copy()
        await self.log(claimed, LogLevel.INFO, "Job delivered to printer",
                       previous_status=JobStatus.QUEUED.value)
        return claimed

    async def peek_next(self, printer_id: str) -> Optional[PrintJob]:
        job = self._next_ready(printer_id, self.clock())
        return job.copy() if job else None

    async def list_jobs(
        self,
        printer_id: Optional[str] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
        limit: int = 100
    ) -> List[PrintJob]:
        wanted = set(statuses) if statuses else None
        jobs = [
            job for job in self._jobs.values()
            if (printer_id is None or job.printer_id == printer_id)
            and (wanted is None or job.status in wanted)
        ]
        jobs.sort(key=lambda j: (j.created_at, self._sequence[j.id]), reverse=True)
        return [job.copy() for job in jobs[:limit]]

    async def list_stale_deliveries(self, delivered_before: datetime) -> List[PrintJob]:
        return [
            job.copy() for job in self._ordered()
            if job.status == JobStatus.DELIVERED
            and job.delivered_at is not None
            and job.delivered_at <= delivered_before
        ]

    async def list_retry_ready(self, now: datetime) -> List[PrintJob]:
        return [
            job.copy() for job in self._ordered()
            if job.status == JobStatus.FAILED
            and job.has_retry_budget()
            and (job.next_retry_at is None or job.next_retry_at <= now)
        ]

    async def list_terminal_failures(self, limit: int = 100) -> List[PrintJob]:
        failed = [
            job for job in self._ordered()
            if job.status == JobStatus.FAILED and not job.has_retry_budget()
        ]
        failed.reverse()
        return [job.copy() for job in failed[:limit]]

    async def append_log(self, entry: JobLogEntry) -> None:
        self._logs[entry.job_id].append(entry)

    async def get_logs(self, job_id: str) -> List[JobLogEntry]:
        return list(self._logs.get(job_id, []))

    async def statistics(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        stats["total"] = len(self._jobs)
        return stats

    async def _compare_and_set(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        changes: Dict[str, Any],
        require_retry_budget: bool = False
    ) -> Tuple[Optional[PrintJob], bool]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None, False
            if job.status not in set(expected):
                return job.copy(), False
            if require_retry_budget and not job.has_retry_budget():
                return job.copy(), False

            changes = dict(changes)
            job.retry_count += changes.pop("retry_count_increment", 0)
            for name, value in changes.items():
                setattr(job, name, value)
            return job.copy(), True

    def _ordered(self) -> List[PrintJob]:
        return sorted(self._jobs.values(), key=lambda j: self._sequence[j.id])

    def _next_ready(self, printer_id: str, now: datetime) -> Optional[PrintJob]:
        ready = [
            job for job in self._jobs.values()
            if job.printer_id == printer_id
            and job.status == JobStatus.QUEUED
            and (job.next_retry_at is None or job.next_retry_at <= now)
        ]
        if not ready:
            return None
        return min(ready, key=lambda j: (-j.priority, j.created_at, self._sequence[j.id]))
