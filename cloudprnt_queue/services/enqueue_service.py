"""
EnqueueService for the CloudPRNT print queue

Accepts rendered content for a printer and turns it into exactly one print
job per idempotency key.
"""

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Union

from ..models.job import (
    PrintJob,
    JobStatus,
    JobType,
    ContentType,
    LogLevel,
    DEFAULT_MAX_RETRIES,
    REPRINT_PRIORITY,
)
from ..encoding.escpos import ReceiptOptions, KITCHEN, CUSTOMER, build_receipt
from ..store.base import JobStore
from ..core.exceptions import ValidationError, JobNotFoundError, error_registry
from ..utils.logger import get_logger, set_log_context
from .printer_registry import PrinterRegistry
from .status_reporter import StatusReporter


@dataclass
class EnqueueResult:
    """Answer to an enqueue request."""
    job_id: str
    status: JobStatus
    created: bool
    job: Optional[PrintJob] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"jobId": self.job_id, "status": self.status.value, "created": self.created}


def generate_idempotency_key(job_type: Union[JobType, str], printer_id: str,
                             order_id: Optional[str] = None,
                             payload: Optional[bytes] = None) -> str:
    """
    Derive a deterministic idempotency key.

    The same job type, printer, order and content always give the same key,
    so re-submitting an identical receipt is a replay rather than a duplicate.
    """
    job_type = job_type.value if isinstance(job_type, JobType) else str(job_type)
    components = [job_type, printer_id]
    if order_id:
        components.append(str(order_id))
    if payload is not None:
        components.append(hashlib.sha256(payload).hexdigest()[:16])
    return "_".join(components)


class EnqueueService:
    """
    Creates print jobs.

    Args:
        store: Job storage
        printers: Printer registry used to validate the target printer
        reporter: Status reporter, receives the enqueue events
        default_max_retries: max_retries used when a request leaves it out
    """

    def __init__(self,
                 store: JobStore,
                 printers: PrinterRegistry,
                 reporter: Optional[StatusReporter] = None,
                 default_max_retries: int = DEFAULT_MAX_RETRIES):
        self.store = store
        self.printers = printers
        self.reporter = reporter
        self.default_max_retries = default_max_retries

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="enqueue_service")

    async def enqueue(self,
                      printer_id: str,
                      idempotency_key: str,
                      payload: Union[bytes, str],
                      content_type: str = ContentType.TEXT_PLAIN,
                      job_type: Union[JobType, str] = JobType.RECEIPT,
                      priority: int = 0,
                      max_retries: Optional[int] = None,
                      order_id: Optional[str] = None,
                      table_id: Optional[str] = None,
                      metadata: Optional[Dict[str, Any]] = None) -> EnqueueResult:
        """
        Store a new job, or return the job already stored under the key.

        A replayed key returns the first job unchanged, even when the new
        request carries a different payload.

        Raises:
            ValidationError: If the input is malformed or the printer is
                unknown or inactive
        """
        if not isinstance(idempotency_key, str) or not idempotency_key.strip():
            raise self._reject("idempotency_key", "must be a non-empty string", idempotency_key)

        existing = await self.store.get_by_idempotency_key(idempotency_key)
        if existing is not None:
            self.logger.info("Idempotent replay of existing job", extra={
                "job_id": existing.id,
                "printer_id": existing.printer_id,
                "idempotency_key": idempotency_key
            })
            return EnqueueResult(existing.id, existing.status, created=False, job=existing)

        job = self._build_job(
            printer_id, idempotency_key, payload, content_type, job_type,
            priority, max_retries, order_id, table_id, metadata
        )

        stored, created = await self.store.create(job)
        if created:
            await self.store.log(stored, LogLevel.INFO, "Job created",
                                 content_type=stored.content_type, payload_size=len(stored.payload))
            if self.reporter:
                self.reporter.record_enqueued(stored)
            self.logger.info("Job enqueued", extra={
                "job_id": stored.id,
                "printer_id": stored.printer_id,
                "job_type": stored.job_type.value,
                "priority": stored.priority
            })
        return EnqueueResult(stored.id, stored.status, created=created, job=stored)

    async def reprint(self, job_id: str, reason: Optional[str] = None) -> EnqueueResult:
        """
        Queue the payload of an existing job again under a fresh key.

        Reprints jump the queue (priority 10) and record the job they copy
        in their metadata.
        """
        original = await self.store.get(job_id)
        if original is None:
            raise JobNotFoundError(job_id)

        stamp = int(self.store.clock().timestamp() * 1000)
        key = f"{original.idempotency_key}_reprint_{stamp}"
        while await self.store.get_by_idempotency_key(key) is not None:
            stamp += 1
            key = f"{original.idempotency_key}_reprint_{stamp}"

        metadata = dict(original.metadata)
        metadata.update({"reprint_of": original.id, "reprint_reason": reason or "Manual reprint"})

        result = await self.enqueue(
            printer_id=original.printer_id,
            idempotency_key=key,
            payload=original.payload,
            content_type=original.content_type,
            job_type=original.job_type,
            priority=REPRINT_PRIORITY,
            max_retries=original.max_retries,
            order_id=original.order_id,
            table_id=original.table_id,
            metadata=metadata
        )
        await self.store.log(original, LogLevel.INFO, "Reprint requested",
                             reprint_job_id=result.job_id, reason=metadata["reprint_reason"])
        return result

    async def enqueue_receipt(self,
                              printer_id: str,
                              items: Sequence[Any],
                              options: Optional[ReceiptOptions] = None,
                              idempotency_key: Optional[str] = None,
                              job_type: Union[JobType, str] = JobType.RECEIPT,
                              order_id: Optional[str] = None,
                              table_id: Optional[str] = None,
                              priority: int = 0) -> EnqueueResult:
        """Render order items to ESC/POS bytes and enqueue them."""
        if options is None:
            printer = self.printers.get(printer_id)
            options = ReceiptOptions(
                kind=KITCHEN if _job_type_value(job_type) == JobType.KITCHEN.value else CUSTOMER,
                order_reference=order_id,
                paper_width=printer.paper_width if printer else 48
            )

        payload = build_receipt(items, options)
        key = idempotency_key or generate_idempotency_key(job_type, printer_id, order_id, payload)
        return await self.enqueue(
            printer_id=printer_id,
            idempotency_key=key,
            payload=payload,
            content_type=ContentType.ESCPOS,
            job_type=job_type,
            priority=priority,
            order_id=order_id,
            table_id=table_id
        )

    def _build_job(self, printer_id, idempotency_key, payload, content_type, job_type,
                   priority, max_retries, order_id, table_id, metadata) -> PrintJob:
        if not isinstance(printer_id, str) or not printer_id:
            raise self._reject("printer_id", "must be a non-empty string", printer_id)

        printer = self.printers.get(printer_id)
        if printer is None:
            raise self._reject("printer_id", "unknown printer", printer_id)
        if not printer.active:
            raise self._reject("printer_id", "printer is inactive", printer_id)

        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        if not isinstance(payload, (bytes, bytearray)) or not payload:
            raise self._reject("payload", "must be non-empty content")

        if not isinstance(content_type, str) or not content_type.strip():
            raise self._reject("content_type", "must be a non-empty string", content_type)

        try:
            job_type = job_type if isinstance(job_type, JobType) else JobType(job_type)
        except ValueError:
            raise self._reject("job_type", f"must be one of {', '.join(t.value for t in JobType)}", job_type)

        if isinstance(priority, bool) or not isinstance(priority, int):
            raise self._reject("priority", "must be an integer", priority)

        if max_retries is None:
            max_retries = self.default_max_retries
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise self._reject("max_retries", "must be a non-negative integer", max_retries)

        now = self.store.clock()
        return PrintJob(
            idempotency_key=idempotency_key,
            printer_id=printer_id,
            payload=bytes(payload),
            job_type=job_type,
            content_type=content_type,
            priority=priority,
            max_retries=max_retries,
            created_at=now,
            updated_at=now,
            order_id=order_id,
            table_id=table_id,
            metadata=dict(metadata or {})
        )

    def _reject(self, field: str, message: str, value: Any = None) -> ValidationError:
        error = ValidationError(field, message, value)
        error_registry.record_error(error)
        self.logger.warning("Enqueue rejected", extra={"field": field, "reason": message})
        return error


def _job_type_value(job_type: Union[JobType, str]) -> str:
    return job_type.value if isinstance(job_type, JobType) else str(job_type)
