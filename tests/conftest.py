import logging
from datetime import datetime, timedelta, timezone

import pytest

from cloudprnt_queue.core.orchestrator import PrintQueueOrchestrator
from cloudprnt_queue.models.job import PrintJob, ContentType
from cloudprnt_queue.models.printer import PrinterEndpoint
from cloudprnt_queue.services.enqueue_service import EnqueueService
from cloudprnt_queue.services.poll_dispatcher import PollDispatcher
from cloudprnt_queue.services.printer_registry import InMemoryPrinterRegistry
from cloudprnt_queue.services.retry_policy import RetryPolicy
from cloudprnt_queue.services.retry_scheduler import RetryScheduler
from cloudprnt_queue.services.status_reporter import StatusReporter
from cloudprnt_queue.store.memory import InMemoryJobStore
from cloudprnt_queue.utils.config import Settings


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 17, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """CLI tests attach handlers bound to captured streams; drop them afterwards."""
    yield
    logger = logging.getLogger("cloudprnt_queue")
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(clock):
    return InMemoryJobStore(clock=clock)


@pytest.fixture()
def printers(clock):
    return InMemoryPrinterRegistry([
        PrinterEndpoint("kitchen-1", "Kitchen"),
        PrinterEndpoint("bar-1", "Bar", paper_width=32),
        PrinterEndpoint("old-1", "Retired printer", active=False),
    ], clock=clock)


@pytest.fixture()
def reporter(store):
    return StatusReporter(store, RetryPolicy(backoff_seconds=10))


@pytest.fixture()
def enqueue_service(store, printers, reporter):
    return EnqueueService(store, printers, reporter)


@pytest.fixture()
def dispatcher(store, printers, reporter):
    return PollDispatcher(store, printers, reporter)


@pytest.fixture()
def scheduler(store, reporter):
    return RetryScheduler(store, reporter, delivery_timeout_seconds=45, sweep_interval_seconds=10)


@pytest.fixture()
def settings():
    return Settings(printers=[
        PrinterEndpoint("kitchen-1", "Kitchen"),
        PrinterEndpoint("old-1", "Retired printer", active=False),
    ])


@pytest.fixture()
def orchestrator(settings, clock):
    return PrintQueueOrchestrator(settings, clock=clock, run_scheduler=False)


def make_job(key="order-1", printer_id="kitchen-1", payload=b"hello", **kwargs):
    kwargs.setdefault("content_type", ContentType.TEXT_PLAIN)
    return PrintJob(idempotency_key=key, printer_id=printer_id, payload=payload, **kwargs)
