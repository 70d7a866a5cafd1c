import asyncio

import pytest

from cloudprnt_queue.core.exceptions import ConfigurationError
from cloudprnt_queue.models.job import JobStatus
from cloudprnt_queue.services.retry_policy import RetryPolicy
from cloudprnt_queue.services.retry_scheduler import RetryScheduler, DELIVERY_TIMEOUT_ERROR
from cloudprnt_queue.services import status_reporter
from cloudprnt_queue.services.status_reporter import StatusReporter
from conftest import make_job


@pytest.mark.asyncio
async def test_unconfirmed_delivery_is_redelivered(enqueue_service, dispatcher, scheduler, store, clock):
    queued = await enqueue_service.enqueue("kitchen-1", "order-1", b"\x1b@ticket\x1dVB\x00")
    first = await dispatcher.fetch_content("kitchen-1")

    clock.advance(30)
    assert (await scheduler.sweep()).timed_out == []

    clock.advance(16)
    result = await scheduler.sweep()
    assert result.timed_out == [queued.job_id]
    assert result.requeued == []

    failed = await store.get(queued.job_id)
    assert failed.status == JobStatus.FAILED
    assert failed.last_error == DELIVERY_TIMEOUT_ERROR

    clock.advance(10)
    result = await scheduler.sweep()
    assert result.requeued == [queued.job_id]

    requeued = await store.get(queued.job_id)
    assert requeued.status == JobStatus.QUEUED
    assert requeued.retry_count == 1
    assert requeued.next_retry_at is None

    second = await dispatcher.fetch_content("kitchen-1")
    assert second.id == first.id
    assert second.payload == first.payload


@pytest.mark.asyncio
async def test_zero_backoff_requeues_in_same_sweep(store, enqueue_service, dispatcher, clock):
    reporter = StatusReporter(store, RetryPolicy(backoff_seconds=0))
    scheduler = RetryScheduler(store, reporter, delivery_timeout_seconds=45)
    queued = await enqueue_service.enqueue("kitchen-1", "order-1", b"ticket")
    await dispatcher.fetch_content("kitchen-1")

    clock.advance(45)
    result = await scheduler.sweep()

    assert result.timed_out == [queued.job_id]
    assert result.requeued == [queued.job_id]
    job = await store.get(queued.job_id)
    assert job.status == JobStatus.QUEUED
    assert job.retry_count == 1


@pytest.mark.asyncio
async def test_retries_are_bounded(enqueue_service, dispatcher, scheduler, reporter, store, clock):
    queued = await enqueue_service.enqueue("kitchen-1", "order-1", b"ticket", max_retries=2)

    for _ in range(3):
        assert await dispatcher.fetch_content("kitchen-1") is not None
        clock.advance(46)
        await scheduler.sweep()
        clock.advance(10)
        await scheduler.sweep()

    job = await store.get(queued.job_id)
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 2
    assert job.is_terminal()
    assert await dispatcher.fetch_content("kitchen-1") is None

    failures = await reporter.list_failures()
    assert [j.id for j in failures] == [queued.job_id]
    assert reporter.terminal_failures.labels(printer_id="kitchen-1")._value.get() == 1


@pytest.mark.asyncio
async def test_terminal_failure_memory_is_bounded(reporter, store, monkeypatch):
    monkeypatch.setattr(status_reporter, "REPORTED_TERMINAL_LIMIT", 2)
    jobs = [make_job(key=f"order-{n}", max_retries=0) for n in range(3)]

    for job in jobs:
        assert await reporter.report_terminal_failure(job) is True

    assert list(reporter._reported_terminal) == [jobs[1].id, jobs[2].id]
    assert await reporter.report_terminal_failure(jobs[2]) is False


@pytest.mark.asyncio
async def test_terminal_failure_is_reported_once(reporter, enqueue_service, dispatcher, store):
    queued = await enqueue_service.enqueue("kitchen-1", "order-1", b"ticket", max_retries=0)
    await dispatcher.fetch_content("kitchen-1")
    await reporter.record_failed(queued.job_id, "cutter jam")

    job = await store.get(queued.job_id)
    assert await reporter.report_terminal_failure(job) is False
    assert reporter.terminal_failures.labels(printer_id="kitchen-1")._value.get() == 1


@pytest.mark.asyncio
async def test_cancelled_job_is_not_requeued(enqueue_service, dispatcher, scheduler, store, clock):
    queued = await enqueue_service.enqueue("kitchen-1", "order-1", b"ticket")
    await dispatcher.fetch_content("kitchen-1")
    await store.cancel(queued.job_id, "order voided")

    clock.advance(120)
    result = await scheduler.sweep()

    assert result.timed_out == []
    assert (await store.get(queued.job_id)).status == JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_start_and_stop(scheduler):
    await scheduler.start()
    assert scheduler.is_running
    await asyncio.sleep(0)

    await scheduler.stop()
    assert not scheduler.is_running


@pytest.mark.asyncio
async def test_sweep_loop_survives_lost_connection(store, reporter, monkeypatch):
    scheduler = RetryScheduler(store, reporter, sweep_interval_seconds=0.01)
    calls = []
    original = store.list_stale_deliveries

    async def flaky(cutoff):
        calls.append(cutoff)
        if len(calls) == 1:
            raise ConnectionResetError("db connection lost")
        return await original(cutoff)

    monkeypatch.setattr(store, "list_stale_deliveries", flaky)

    await scheduler.start()
    for _ in range(200):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)

    assert len(calls) >= 2
    assert scheduler.is_running
    await scheduler.stop()
    assert not scheduler.is_running


def test_backoff_strategies():
    fixed = RetryPolicy(backoff_seconds=10)
    assert [fixed.delay_for(n) for n in range(3)] == [10, 10, 10]

    exponential = RetryPolicy(backoff_seconds=5, strategy="exponential", max_backoff_seconds=30)
    assert [exponential.delay_for(n) for n in range(4)] == [5, 10, 20, 30]

    with pytest.raises(ConfigurationError):
        RetryPolicy(strategy="random")
