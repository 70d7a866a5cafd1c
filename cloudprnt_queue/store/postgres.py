"""
PostgreSQL JobStore

asyncpg-backed storage for print jobs. Claims use ``FOR UPDATE SKIP LOCKED``
so several server processes can share one queue, and every status change is
a single conditional UPDATE.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import asyncpg

from ..models.job import PrintJob, JobStatus, JobLogEntry, LogLevel
from ..core.exceptions import DatabaseError
from .base import JobStore, Clock


JOB_COLUMNS = (
    "id", "idempotency_key", "printer_id", "payload", "job_type", "content_type",
    "status", "priority", "retry_count", "max_retries", "next_retry_at", "last_error",
    "created_at", "updated_at", "delivered_at", "printed_at", "cancelled_at",
    "order_id", "table_id", "metadata",
)

_UPDATABLE = {
    "status", "priority", "next_retry_at", "last_error", "updated_at",
    "delivered_at", "printed_at", "cancelled_at", "metadata",
}

_SELECT = ", ".join(JOB_COLUMNS)

# Connection loss surfaces as InterfaceError or OSError, not PostgresError.
_DB_ERRORS = (OSError, asyncpg.PostgresError, asyncpg.InterfaceError)

SCHEMA = """
CREATE TABLE IF NOT EXISTS print_jobs (
    seq             BIGSERIAL,
    id              TEXT PRIMARY KEY,
    idempotency_key TEXT NOT NULL UNIQUE,
    printer_id      TEXT NOT NULL,
    payload         BYTEA NOT NULL,
    job_type        TEXT NOT NULL,
    content_type    TEXT NOT NULL,
    status          TEXT NOT NULL,
    priority        INTEGER NOT NULL DEFAULT 0,
    retry_count     INTEGER NOT NULL DEFAULT 0,
    max_retries     INTEGER NOT NULL DEFAULT 3,
    next_retry_at   TIMESTAMPTZ,
    last_error      TEXT,
    created_at      TIMESTAMPTZ NOT NULL,
    updated_at      TIMESTAMPTZ NOT NULL,
    delivered_at    TIMESTAMPTZ,
    printed_at      TIMESTAMPTZ,
    cancelled_at    TIMESTAMPTZ,
    order_id        TEXT,
    table_id        TEXT,
    metadata        JSONB NOT NULL DEFAULT '{}'::jsonb
);

CREATE INDEX IF NOT EXISTS idx_print_jobs_claim
    ON print_jobs (printer_id, status, priority DESC, created_at, seq);

CREATE TABLE IF NOT EXISTS print_job_logs (
    seq        BIGSERIAL PRIMARY KEY,
    job_id     TEXT NOT NULL REFERENCES print_jobs (id),
    level      TEXT NOT NULL,
    message    TEXT NOT NULL,
    printer_id TEXT,
    details    JSONB NOT NULL DEFAULT '{}'::jsonb,
    timestamp  TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_print_job_logs_job ON print_job_logs (job_id, seq);
"""


async def _init_connection(conn) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


class PostgresJobStore(JobStore):
    """
    JobStore backed by PostgreSQL.

    Args:
        connection_string: PostgreSQL connection string
        pool_size: Maximum connections in the pool
        clock: Optional time source, used for all timestamps written
    """

    def __init__(self, connection_string: str, pool_size: int = 10,
                 clock: Optional[Clock] = None):
        super().__init__(clock)
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Create the connection pool and the schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=60,
                init=_init_connection
            )
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except _DB_ERRORS as e:
            raise DatabaseError("initialization", f"Failed to set up job store: {e}")

        self.logger.info("PostgreSQL job store initialized", extra={"pool_size": self.pool_size})

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("SELECT 1")
                return True
        except _DB_ERRORS:
            return False

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    async def create(self, job: PrintJob) -> Tuple[PrintJob, bool]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(f"""
                    INSERT INTO print_jobs ({_SELECT})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                            $11, $12, $13, $14, $15, $16, $17, $18, $19, $20)
                    ON CONFLICT (idempotency_key) DO NOTHING
                    RETURNING {_SELECT}
                """,
                job.id, job.idempotency_key, job.printer_id, job.payload,
                job.job_type.value, job.content_type, JobStatus.QUEUED.value,
                job.priority, job.retry_count, job.max_retries, job.next_retry_at,
                job.last_error, job.created_at, job.updated_at, job.delivered_at,
                job.printed_at, job.cancelled_at, job.order_id, job.table_id,
                job.metadata)
                if row:
                    return PrintJob.from_row(row), True

                existing = await conn.fetchrow(
                    f"SELECT {_SELECT} FROM print_jobs WHERE idempotency_key = $1",
                    job.idempotency_key
                )
                return PrintJob.from_row(existing), False
        except _DB_ERRORS as e:
            raise DatabaseError("create", str(e), table="print_jobs")

    async def get(self, job_id: str) -> Optional[PrintJob]:
        return await self._fetch_one(
            "get", f"SELECT {_SELECT} FROM print_jobs WHERE id = $1", job_id
        )

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PrintJob]:
        return await self._fetch_one(
            "get_by_idempotency_key",
            f"SELECT {_SELECT} FROM print_jobs WHERE idempotency_key = $1",
            idempotency_key
        )

    async def claim_next(self, printer_id: str) -> Optional[PrintJob]:
        now = self.clock()
        job = await self._fetch_one("claim_next", f"""
            UPDATE print_jobs
            SET status = 'DELIVERED', delivered_at = $2, updated_at = $2
            WHERE status = 'QUEUED' AND id = (
                SELECT id FROM print_jobs
                WHERE printer_id = $1
                  AND status = 'QUEUED'
                  AND (next_retry_at IS NULL OR next_retry_at <= $2)
                ORDER BY priority DESC, created_at ASC, seq ASC
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {_SELECT}
        """, printer_id, now)
        if job:
            await self.log(job, LogLevel.INFO, "Job delivered to printer",
                           previous_status=JobStatus.QUEUED.value)
        return job

    async def peek_next(self, printer_id: str) -> Optional[PrintJob]:
        return await self._fetch_one("peek_next", f"""
            SELECT {_SELECT} FROM print_jobs
            WHERE printer_id = $1
              AND status = 'QUEUED'
              AND (next_retry_at IS NULL OR next_retry_at <= $2)
            ORDER BY priority DESC, created_at ASC, seq ASC
            LIMIT 1
        """, printer_id, self.clock())

    async def list_jobs(
        self,
        printer_id: Optional[str] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
        limit: int = 100
    ) -> List[PrintJob]:
        status_values = [s.value for s in statuses] if statuses else None
        return await self._fetch_many("list_jobs", f"""
            SELECT {_SELECT} FROM print_jobs
            WHERE ($1::text IS NULL OR printer_id = $1)
              AND ($2::text[] IS NULL OR status = ANY($2::text[]))
            ORDER BY created_at DESC, seq DESC
            LIMIT $3
        """, printer_id, status_values, limit)

    async def list_stale_deliveries(self, delivered_before: datetime) -> List[PrintJob]:
        return await self._fetch_many("list_stale_deliveries", f"""
            SELECT {_SELECT} FROM print_jobs
            WHERE status = 'DELIVERED' AND delivered_at <= $1
            ORDER BY seq
        """, delivered_before)

    async def list_retry_ready(self, now: datetime) -> List[PrintJob]:
        return await self._fetch_many("list_retry_ready", f"""
            SELECT {_SELECT} FROM print_jobs
            WHERE status = 'FAILED'
              AND retry_count < max_retries
              AND (next_retry_at IS NULL OR next_retry_at <= $1)
            ORDER BY seq
        """, now)

    async def list_terminal_failures(self, limit: int = 100) -> List[PrintJob]:
        return await self._fetch_many("list_terminal_failures", f"""
            SELECT {_SELECT} FROM print_jobs
            WHERE status = 'FAILED' AND retry_count >= max_retries
            ORDER BY seq DESC
            LIMIT $1
        """, limit)

    async def append_log(self, entry: JobLogEntry) -> None:
        try:
            async with self.get_connection() as conn:
                await conn.execute("""
                    INSERT INTO print_job_logs (job_id, level, message, printer_id, details, timestamp)
                    VALUES ($1, $2, $3, $4, $5, $6)
                """,
                entry.job_id, entry.level.value, entry.message, entry.printer_id,
                entry.details, entry.timestamp)
        except _DB_ERRORS as e:
            raise DatabaseError("append_log", str(e), table="print_job_logs")

    async def get_logs(self, job_id: str) -> List[JobLogEntry]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch("""
                    SELECT job_id, level, message, printer_id, details, timestamp
                    FROM print_job_logs WHERE job_id = $1 ORDER BY seq
                """, job_id)
        except _DB_ERRORS as e:
            raise DatabaseError("get_logs", str(e), table="print_job_logs")

        return [
            JobLogEntry(
                job_id=row["job_id"],
                level=LogLevel(row["level"]),
                message=row["message"],
                printer_id=row["printer_id"],
                details=row["details"] or {},
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    async def statistics(self) -> Dict[str, int]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS count FROM print_jobs GROUP BY status"
                )
        except _DB_ERRORS as e:
            raise DatabaseError("statistics", str(e), table="print_jobs")

        stats = {status.value: 0 for status in JobStatus}
        for row in rows:
            stats[row["status"]] = row["count"]
        stats["total"] = sum(stats.values())
        return stats

    async def _compare_and_set(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        changes: Dict[str, Any],
        require_retry_budget: bool = False
    ) -> Tuple[Optional[PrintJob], bool]:
        changes = dict(changes)
        increment = changes.pop("retry_count_increment", 0)

        assignments = []
        args: List[Any] = [job_id, [s.value for s in expected]]
        for name, value in changes.items():
            if name not in _UPDATABLE:
                raise DatabaseError("compare_and_set", f"column {name} cannot be updated",
                                    table="print_jobs")
            if isinstance(value, JobStatus):
                value = value.value
            args.append(value)
            assignments.append(f"{name} = ${len(args)}")
        if increment:
            args.append(increment)
            assignments.append(f"retry_count = retry_count + ${len(args)}")

        budget_clause = " AND retry_count < max_retries" if require_retry_budget else ""
        query = f"""
            UPDATE print_jobs SET {', '.join(assignments)}
            WHERE id = $1 AND status = ANY($2::text[]){budget_clause}
            RETURNING {_SELECT}
        """

        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(query, *args)
                if row:
                    return PrintJob.from_row(row), True
                current = await conn.fetchrow(
                    f"SELECT {_SELECT} FROM print_jobs WHERE id = $1", job_id
                )
        except _DB_ERRORS as e:
            raise DatabaseError("compare_and_set", str(e), table="print_jobs")

        return (PrintJob.from_row(current) if current else None), False

    async def _fetch_one(self, operation: str, query: str, *args) -> Optional[PrintJob]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(query, *args)
        except _DB_ERRORS as e:
            raise DatabaseError(operation, str(e), table="print_jobs")
        return PrintJob.from_row(row) if row else None

    async def _fetch_many(self, operation: str, query: str, *args) -> List[PrintJob]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(query, *args)
        except _DB_ERRORS as e:
            raise DatabaseError(operation, str(e), table="print_jobs")
        return [PrintJob.from_row(row) for row in rows]
