"""
PollDispatcher service

Serves the CloudPRNT poll cycle. A printer first POSTs its status (and the
outcome of its last job), then GETs the content of the job it was told
about, and finally confirms the print with a DELETE.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ..models.job import PrintJob, TransitionResult
from ..models.printer import PrinterEndpoint, PrinterStatusReport
from ..store.base import JobStore
from ..core.exceptions import ProtocolError, error_registry
from ..utils.logger import get_logger, set_log_context
from .printer_registry import PrinterRegistry
from .status_reporter import StatusReporter


@dataclass
class PollResponse:
    """Answer to a status poll."""
    job_ready: bool = False
    media_types: List[str] = field(default_factory=list)
    job_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"jobReady": self.job_ready}
        if self.job_ready:
            data["mediaTypes"] = list(self.media_types)
            data["jobToken"] = self.job_token
        return data


class PollDispatcher:
    """
    Handles printer polls against the shared job store.

    claim_next in the store is the only place a job is handed out, so
    overlapping polls from the same printer never receive the same job.
    """

    def __init__(self, store: JobStore, printers: PrinterRegistry, reporter: StatusReporter):
        self.store = store
        self.printers = printers
        self.reporter = reporter

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="poll_dispatcher")

    async def handle_status_report(self, printer_id: str,
                                   body: Union[bytes, str, Dict[str, Any], None]) -> PollResponse:
        """
        Process a status poll.

        Any job outcome in the report is applied before looking for new
        work. A malformed body is logged and answered with "no work".
        """
        printer = self._polling_printer(printer_id)
        if printer is None:
            return PollResponse()

        try:
            report = self._parse_report(printer_id, body)
        except ProtocolError as e:
            error_registry.record_error(e)
            self.reporter.record_protocol_error(printer_id)
            self.logger.warning("Ignoring malformed status poll", extra={
                "printer_id": printer_id,
                "error": e.message
            })
            return PollResponse()

        if report.has_outcome:
            await self.reporter.apply_report(printer_id, report)

        next_job = await self.store.peek_next(printer_id)
        if next_job is None:
            return PollResponse()

        self.logger.debug("Job ready for printer", extra={
            "printer_id": printer_id,
            "job_id": next_job.id
        })
        return PollResponse(
            job_ready=True,
            media_types=[next_job.content_type],
            job_token=next_job.id
        )

    async def fetch_content(self, printer_id: str, requested_type: Optional[str] = None) -> Optional[PrintJob]:
        """
        Claim the next job for a printer.

        Returns the DELIVERED job, or None when there is no work. The job is
        always served in its own content type.
        """
        printer = self._polling_printer(printer_id)
        if printer is None:
            return None

        job = await self.store.claim_next(printer_id)
        if job is None:
            return None

        self.reporter.record_delivered(job)
        if requested_type and requested_type != job.content_type:
            self.logger.warning("Printer requested a different media type", extra={
                "printer_id": printer_id,
                "job_id": job.id,
                "requested_type": requested_type,
                "content_type": job.content_type
            })
        if not printer.accepts(job.content_type):
            self.logger.warning("Job content type is not in the printer's media types", extra={
                "printer_id": printer_id,
                "job_id": job.id,
                "content_type": job.content_type,
                "media_types": list(printer.media_types)
            })
        self.logger.info("Job delivered", extra={
            "printer_id": printer_id,
            "job_id": job.id,
            "retry_count": job.retry_count,
            "payload_size": len(job.payload)
        })
        return job

    async def confirm(self, printer_id: str, token: str, code: Optional[str] = None,
                      mac: Optional[str] = None) -> Optional[TransitionResult]:
        """Apply a CloudPRNT DELETE confirmation for a delivered job."""
        self.printers.record_poll(printer_id)
        if not token:
            self.reporter.record_protocol_error(printer_id)
            self.logger.warning("Confirmation without job token", extra={"printer_id": printer_id})
            return None
        report = PrinterStatusReport.from_confirmation(token, code, mac)
        return await self.reporter.apply_report(printer_id, report)

    def _polling_printer(self, printer_id: str) -> Optional[PrinterEndpoint]:
        self.printers.record_poll(printer_id)
        printer = self.printers.get(printer_id)
        if printer is None:
            self.logger.warning("Poll from unknown printer", extra={"printer_id": printer_id})
            return None
        if not printer.active:
            self.logger.warning("Poll from inactive printer", extra={"printer_id": printer_id})
            return None
        return printer

    @staticmethod
    def _parse_report(printer_id: str, body: Union[bytes, str, Dict[str, Any], None]) -> PrinterStatusReport:
        if isinstance(body, (bytes, bytearray)):
            try:
                body = body.decode("utf-8")
            except UnicodeDecodeError:
                raise ProtocolError(printer_id, "status body is not UTF-8")
        if isinstance(body, str):
            if not body.strip():
                body = None
            else:
                try:
                    body = json.loads(body)
                except json.JSONDecodeError as e:
                    raise ProtocolError(printer_id, f"invalid JSON: {e.msg}")
        try:
            return PrinterStatusReport.from_body(body)
        except ValueError as e:
            raise ProtocolError(printer_id, str(e))
