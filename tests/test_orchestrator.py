import pytest

from cloudprnt_queue import quick_start
from cloudprnt_queue.core.exceptions import (
    JobNotFoundError, OrchestratorError, DatabaseError, InvalidTransitionError
)
from cloudprnt_queue.core.orchestrator import PrintQueueOrchestrator
from cloudprnt_queue.models.job import JobStatus
from cloudprnt_queue.store.memory import InMemoryJobStore
from cloudprnt_queue.store.postgres import PostgresJobStore
from cloudprnt_queue.utils.config import Settings


def test_store_follows_database_url(settings):
    assert isinstance(PrintQueueOrchestrator(settings).store, InMemoryJobStore)

    settings.database_url = "postgresql://queue@localhost/prints"
    assert isinstance(PrintQueueOrchestrator(settings).store, PostgresJobStore)


def test_retry_policy_follows_settings():
    settings = Settings(retry_backoff_seconds=3, backoff_strategy="exponential", max_backoff_seconds=20)
    orchestrator = PrintQueueOrchestrator(settings)

    assert orchestrator.retry_policy.delay_for(0) == 3
    assert orchestrator.retry_policy.delay_for(5) == 20


@pytest.mark.asyncio
async def test_lifecycle_and_health(orchestrator):
    async with orchestrator:
        assert orchestrator.is_running
        health = await orchestrator.get_health()

    assert not orchestrator.is_running
    assert health["status"] == "healthy"
    assert health["scheduler_running"] is False
    assert health["jobs"]["total"] == 0


@pytest.mark.asyncio
async def test_scheduler_runs_with_orchestrator(settings, clock):
    orchestrator = PrintQueueOrchestrator(settings, clock=clock)

    await orchestrator.start()
    assert orchestrator.scheduler.is_running
    await orchestrator.stop()
    assert not orchestrator.scheduler.is_running


@pytest.mark.asyncio
async def test_end_to_end_receipt(orchestrator, clock):
    items = [{"name": "Pasta", "quantity": 1, "unit_price": 1400, "category_name": "Mains"}]

    result = await orchestrator.enqueue_receipt("kitchen-1", items, order_id="77", job_type="kitchen")
    answer = await orchestrator.dispatcher.handle_status_report("kitchen-1", b"{}")
    assert answer.job_token == result.job_id

    job = await orchestrator.dispatcher.fetch_content("kitchen-1")
    clock.advance(1)
    await orchestrator.dispatcher.confirm("kitchen-1", job.id, "200 OK")

    printed = await orchestrator.get_job(result.job_id)
    assert printed.status == JobStatus.PRINTED
    assert b"KITCHEN ORDER" in printed.payload
    assert b"$" not in printed.payload

    messages = [entry.message for entry in await orchestrator.get_job_logs(result.job_id)]
    assert messages[0] == "Job created"


@pytest.mark.asyncio
async def test_cancel_and_lookup(orchestrator):
    result = await orchestrator.enqueue(printer_id="kitchen-1", idempotency_key="k", payload=b"x")

    cancelled = await orchestrator.cancel_job(result.job_id, "voided")
    assert cancelled.applied
    assert cancelled.previous_status == JobStatus.QUEUED

    with pytest.raises(InvalidTransitionError) as excinfo:
        await orchestrator.cancel_job(result.job_id, strict=True)
    assert excinfo.value.details["target_status"] == "CANCELLED"

    with pytest.raises(JobNotFoundError):
        await orchestrator.get_job("missing")
    with pytest.raises(JobNotFoundError):
        await orchestrator.get_job_logs("missing")


def test_list_printers(orchestrator):
    printers = orchestrator.list_printers()
    assert [p["id"] for p in printers] == ["kitchen-1", "old-1"]
    assert printers[0]["last_poll"] is None


@pytest.mark.asyncio
async def test_start_failure_is_wrapped():
    class BrokenStore(InMemoryJobStore):
        async def initialize(self):
            raise DatabaseError("initialize", "connection refused")

    orchestrator = PrintQueueOrchestrator(Settings(), store=BrokenStore(), run_scheduler=False)

    with pytest.raises(OrchestratorError):
        await orchestrator.start()
    assert not orchestrator.is_running


def test_quick_start(monkeypatch, tmp_path):
    monkeypatch.delenv("CLOUDPRNT_DATABASE_URL", raising=False)
    config = tmp_path / "cloudprnt.yaml"
    config.write_text("printers:\n  - id: front-1\n")

    orchestrator = quick_start(config_path=str(config))
    assert isinstance(orchestrator.store, InMemoryJobStore)
    assert orchestrator.printers.is_active("front-1")

    orchestrator = quick_start("postgresql://queue@localhost/prints", str(config))
    assert isinstance(orchestrator.store, PostgresJobStore)
