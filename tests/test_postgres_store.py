import asyncio
import os
from contextlib import asynccontextmanager
from datetime import timedelta

import asyncpg
import pytest

from cloudprnt_queue.core.exceptions import DatabaseError
from cloudprnt_queue.models.job import JobStatus, LogLevel
from cloudprnt_queue.store.postgres import PostgresJobStore, JOB_COLUMNS

from conftest import make_job


TEST_DATABASE_URL = os.environ.get("CLOUDPRNT_TEST_DATABASE_URL")

needs_database = pytest.mark.skipif(
    not TEST_DATABASE_URL, reason="CLOUDPRNT_TEST_DATABASE_URL is not set"
)


class FakeConnection:
    """Records queries and answers fetchrow from a list of prepared rows."""

    def __init__(self, rows=None, error=None):
        self.rows = list(rows or [])
        self.error = error
        self.calls = []

    async def fetchrow(self, query, *args):
        self.calls.append((query, args))
        if self.error:
            raise self.error
        return self.rows.pop(0) if self.rows else None

    async def fetch(self, query, *args):
        self.calls.append((query, args))
        if self.error:
            raise self.error
        return []

    async def execute(self, query, *args):
        self.calls.append((query, args))
        if self.error:
            raise self.error


class FakePool:
    def __init__(self, connection):
        self.connection = connection

    @asynccontextmanager
    async def acquire(self):
        yield self.connection


def _row(job, **changes):
    row = {name: getattr(job, name) for name in JOB_COLUMNS}
    row["job_type"] = job.job_type.value
    row["status"] = job.status.value
    row.update(changes)
    return row


def _fake_store(clock, connection):
    store = PostgresJobStore("postgresql://queue@localhost/prints", clock=clock)
    store.pool = FakePool(connection)
    return store


@pytest.mark.asyncio
async def test_compare_and_set_builds_guarded_update(clock):
    job = make_job(max_retries=2)
    connection = FakeConnection(rows=[_row(job, status="QUEUED", retry_count=1)])
    store = _fake_store(clock, connection)

    updated, applied = await store._compare_and_set(
        job.id,
        [JobStatus.FAILED],
        {"status": JobStatus.QUEUED, "next_retry_at": None, "updated_at": clock(),
         "retry_count_increment": 1},
        require_retry_budget=True
    )

    assert applied is True
    assert updated.status == JobStatus.QUEUED
    assert updated.retry_count == 1

    query, args = connection.calls[0]
    assert args == (job.id, ["FAILED"], "QUEUED", None, clock(), 1)
    assert "SET status = $3, next_retry_at = $4, updated_at = $5, retry_count = retry_count + $6" in query
    assert "WHERE id = $1 AND status = ANY($2::text[]) AND retry_count < max_retries" in query


@pytest.mark.asyncio
async def test_compare_and_set_returns_current_row_when_rejected(clock):
    job = make_job()
    connection = FakeConnection(rows=[None, _row(job, status="PRINTED")])
    store = _fake_store(clock, connection)

    current, applied = await store._compare_and_set(
        job.id, [JobStatus.DELIVERED], {"status": JobStatus.FAILED, "last_error": "jam"}
    )

    assert applied is False
    assert current.status == JobStatus.PRINTED
    update, select = connection.calls
    assert "retry_count < max_retries" not in update[0]
    assert update[1] == (job.id, ["DELIVERED"], "FAILED", "jam")
    assert select[1] == (job.id,)


@pytest.mark.asyncio
async def test_compare_and_set_refuses_unknown_columns(clock):
    connection = FakeConnection()
    store = _fake_store(clock, connection)

    with pytest.raises(DatabaseError):
        await store._compare_and_set("job-1", [JobStatus.QUEUED], {"payload": b"new"})
    assert connection.calls == []


@pytest.mark.asyncio
async def test_list_jobs_passes_null_filters(clock):
    connection = FakeConnection()
    store = _fake_store(clock, connection)

    await store.list_jobs()
    await store.list_jobs("kitchen-1", [JobStatus.QUEUED, JobStatus.FAILED], limit=5)

    assert connection.calls[0][1] == (None, None, 100)
    assert connection.calls[1][1] == ("kitchen-1", ["QUEUED", "FAILED"], 5)


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    asyncpg.exceptions.ConnectionDoesNotExistError("connection was closed in the middle of operation"),
    ConnectionResetError("db connection lost"),
])
async def test_connection_loss_becomes_database_error(clock, error):
    store = _fake_store(clock, FakeConnection(error=error))

    with pytest.raises(DatabaseError) as excinfo:
        await store.list_stale_deliveries(clock())
    assert excinfo.value.details["operation"] == "list_stale_deliveries"

    with pytest.raises(DatabaseError):
        await store.get_logs("job-1")


@pytest.mark.asyncio
async def test_uninitialized_pool_raises(clock):
    store = PostgresJobStore("postgresql://queue@localhost/prints", clock=clock)

    with pytest.raises(DatabaseError):
        await store.get("job-1")
    assert await store.is_healthy() is False


# Store contract against a real database

@asynccontextmanager
async def postgres_store(clock):
    store = PostgresJobStore(TEST_DATABASE_URL, pool_size=4, clock=clock)
    await store.initialize()
    try:
        async with store.get_connection() as conn:
            await conn.execute("TRUNCATE print_job_logs, print_jobs")
        yield store
    finally:
        await store.close()


@needs_database
@pytest.mark.asyncio
async def test_pg_create_is_idempotent(clock):
    async with postgres_store(clock) as store:
        first, created = await store.create(make_job(payload=b"first", metadata={"order_id": "7"}))
        second, created_again = await store.create(make_job(payload=b"second"))

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert second.payload == b"first"
        assert second.metadata == {"order_id": "7"}
        assert (await store.statistics())["total"] == 1


@needs_database
@pytest.mark.asyncio
async def test_pg_claim_order_and_readiness(clock):
    async with postgres_store(clock) as store:
        for n in range(3):
            await store.create(make_job(key=f"k{n}", payload=f"job {n}".encode()))
        reprint, _ = await store.create(make_job(key="reprint", priority=10))
        waiting, _ = await store.create(make_job(key="later", next_retry_at=clock.now + timedelta(seconds=30)))
        await store.create(make_job(key="other", printer_id="bar-1"))

        claimed = [await store.claim_next("kitchen-1") for _ in range(5)]

        assert claimed[0].id == reprint.id
        assert [job.payload for job in claimed[1:4]] == [b"job 0", b"job 1", b"job 2"]
        assert claimed[4] is None
        assert claimed[0].delivered_at == clock()

        clock.advance(31)
        assert (await store.peek_next("kitchen-1")).id == waiting.id
        assert (await store.claim_next("kitchen-1")).id == waiting.id


@needs_database
@pytest.mark.asyncio
async def test_pg_concurrent_claims_hand_out_each_job_once(clock):
    async with postgres_store(clock) as store:
        for n in range(5):
            await store.create(make_job(key=f"k{n}"))

        results = await asyncio.gather(*[store.claim_next("kitchen-1") for _ in range(12)])
        claimed_ids = [job.id for job in results if job is not None]

        assert len(claimed_ids) == 5
        assert len(set(claimed_ids)) == 5


@needs_database
@pytest.mark.asyncio
async def test_pg_rejected_transition_is_logged(clock):
    async with postgres_store(clock) as store:
        job, _ = await store.create(make_job())

        result = await store.mark_printed(job.id)

        assert result.applied is False
        assert result.status == JobStatus.QUEUED
        logs = await store.get_logs(job.id)
        assert logs[-1].level == LogLevel.WARNING
        assert "QUEUED -> PRINTED" in logs[-1].message


@needs_database
@pytest.mark.asyncio
async def test_pg_retry_budget(clock):
    async with postgres_store(clock) as store:
        job, _ = await store.create(make_job(max_retries=1))

        await store.claim_next("kitchen-1")
        await store.mark_failed(job.id, "attempt 0", clock.now)
        assert [j.id for j in await store.list_retry_ready(clock())] == [job.id]
        assert (await store.requeue(job.id)).applied

        await store.claim_next("kitchen-1")
        clock.advance(60)
        assert [j.id for j in await store.list_stale_deliveries(clock.now)] == [job.id]
        await store.mark_failed(job.id, "final", clock.now)
        result = await store.requeue(job.id)

        assert result.applied is False
        assert result.job.retry_count == 1
        assert result.job.next_retry_at is None
        assert [j.id for j in await store.list_terminal_failures()] == [job.id]
        assert await store.list_retry_ready(clock()) == []


@needs_database
@pytest.mark.asyncio
async def test_pg_list_jobs_filters(clock):
    async with postgres_store(clock) as store:
        await store.create(make_job(key="a"))
        await store.create(make_job(key="b"))
        await store.create(make_job(key="c", printer_id="bar-1"))
        await store.claim_next("kitchen-1")

        everything = await store.list_jobs()
        kitchen = await store.list_jobs("kitchen-1")
        queued = await store.list_jobs("kitchen-1", [JobStatus.QUEUED])

        assert len(everything) == 3
        assert len(kitchen) == 2
        assert [j.idempotency_key for j in queued] == ["b"]
        assert await store.is_healthy() is True
