"""
Services package for the CloudPRNT print queue

Enqueueing, poll dispatch, retry scheduling, status reporting and the
printer registry.
"""

from .printer_registry import PrinterRegistry, InMemoryPrinterRegistry
from .retry_policy import RetryPolicy
from .status_reporter import StatusReporter
from .enqueue_service import EnqueueService, EnqueueResult, generate_idempotency_key
from .poll_dispatcher import PollDispatcher, PollResponse
from .retry_scheduler import RetryScheduler, SweepResult

__all__ = [
    "PrinterRegistry",
    "InMemoryPrinterRegistry",
    "RetryPolicy",
    "StatusReporter",
    "EnqueueService",
    "EnqueueResult",
    "generate_idempotency_key",
    "PollDispatcher",
    "PollResponse",
    "RetryScheduler",
    "SweepResult"
]
