"""
Printer models

Defines printer endpoint configuration and the status report a printer sends
on every CloudPRNT poll.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Mapping

from .job import ContentType


DEFAULT_MEDIA_TYPES = [ContentType.TEXT_PLAIN, ContentType.ESCPOS]

_TRUE_WORDS = ("1", "true", "yes", "on")
_FALSE_WORDS = ("0", "false", "no", "off")


def parse_bool(value: Any, default: bool = False) -> bool:
    """Read a flag from YAML or an environment variable; "false" and "off" are False."""
    if value is None:
        return default
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
        raise ValueError(f"not a boolean: {value!r}")
    return bool(value)


@dataclass
class PrinterEndpoint:
    """A printer that polls this server for work."""

    id: str
    display_name: str
    poll_interval_hint: float = 10.0
    active: bool = True
    media_types: List[str] = field(default_factory=lambda: list(DEFAULT_MEDIA_TYPES))
    paper_width: int = 48
    mac_address: Optional[str] = None

    def accepts(self, content_type: str) -> bool:
        return not self.media_types or content_type in self.media_types

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "poll_interval_hint": self.poll_interval_hint,
            "active": self.active,
            "media_types": list(self.media_types),
            "paper_width": self.paper_width,
            "mac_address": self.mac_address,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PrinterEndpoint":
        return cls(
            id=str(data["id"]),
            display_name=str(data.get("display_name") or data.get("name") or data["id"]),
            poll_interval_hint=float(data.get("poll_interval_hint", 10.0)),
            active=parse_bool(data.get("active"), default=True),
            media_types=list(data.get("media_types") or DEFAULT_MEDIA_TYPES),
            paper_width=int(data.get("paper_width", 48)),
            mac_address=data.get("mac_address"),
        )


class JobOutcome:
    PRINTED = "printed"
    FAILED = "failed"


_PRINTED_WORDS = {"printed", "success", "completed", "done", "ok"}
_FAILED_WORDS = {"failed", "failure", "error"}


@dataclass
class PrinterStatusReport:
    """Parsed body of a CloudPRNT status poll."""

    printer_mac: Optional[str] = None
    status_code: Optional[str] = None
    printing_in_progress: bool = False
    job_token: Optional[str] = None
    job_outcome: Optional[str] = None
    error_message: Optional[str] = None
    device_status: Optional[str] = None
    client_type: Optional[str] = None
    client_version: Optional[str] = None

    @property
    def has_outcome(self) -> bool:
        return bool(self.job_token) and self.job_outcome is not None

    @classmethod
    def from_body(cls, body: Any) -> "PrinterStatusReport":
        """
        Parse a poll body.

        Accepts the field names Star printers send (printerMAC, statusCode,
        printingInProgress, jobToken) plus jobStatus/jobOutcome for the last
        job. Raises ValueError when the body is not a JSON object or a field
        has the wrong shape.
        """
        if body is None:
            return cls()
        if not isinstance(body, Mapping):
            raise ValueError("status body must be a JSON object")

        token = body.get("jobToken", body.get("lastJobToken"))
        if token is not None and not isinstance(token, (str, int)):
            raise ValueError("jobToken must be a string")

        outcome = _parse_outcome(body.get("jobStatus", body.get("jobOutcome")))

        in_progress = body.get("printingInProgress", False)
        if not isinstance(in_progress, bool):
            raise ValueError("printingInProgress must be a boolean")

        status_code = body.get("statusCode")
        return cls(
            printer_mac=_optional_str(body.get("printerMAC")),
            status_code=_optional_str(status_code),
            printing_in_progress=in_progress,
            job_token=str(token) if token not in (None, "") else None,
            job_outcome=outcome,
            error_message=_optional_str(body.get("errorMessage")),
            device_status=_optional_str(body.get("status")),
            client_type=_optional_str(body.get("clientType")),
            client_version=_optional_str(body.get("clientVersion")),
        )

    @classmethod
    def from_confirmation(cls, token: str, code: Optional[str], mac: Optional[str] = None) -> "PrinterStatusReport":
        """Build a report from a CloudPRNT DELETE confirmation (?token=&code=)."""
        code = (code or "200 OK").strip()
        printed = code.startswith("2")
        return cls(
            printer_mac=mac,
            status_code=code,
            job_token=token,
            job_outcome=JobOutcome.PRINTED if printed else JobOutcome.FAILED,
            error_message=None if printed else f"Printer reported {code}",
        )


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        raise ValueError(f"expected a scalar value, got {type(value).__name__}")
    return str(value)


def _parse_outcome(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValueError("jobStatus must be a string")
    word = value.strip().lower()
    if word in _PRINTED_WORDS:
        return JobOutcome.PRINTED
    if word in _FAILED_WORDS:
        return JobOutcome.FAILED
    raise ValueError(f"unknown job status {value!r}")
