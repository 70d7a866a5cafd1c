"""
Print job data models

Defines print jobs, their status state machine and the append-only job log.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field, replace
from uuid import uuid4
import base64


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class JobStatus(Enum):
    """Print job status enumeration."""
    QUEUED = "QUEUED"
    DELIVERED = "DELIVERED"
    PRINTED = "PRINTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class JobType(Enum):
    """Print job type enumeration."""
    RECEIPT = "receipt"
    KITCHEN = "kitchen"
    LABEL = "label"
    CUSTOM = "custom"


class LogLevel(Enum):
    """Job log entry severity."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ContentType:
    """Media types understood by CloudPRNT printers."""
    TEXT_PLAIN = "text/plain"
    ESCPOS = "application/octet-stream"
    STAR_LINE = "application/vnd.star.line"
    STAR_PRNT = "application/vnd.star.starprnt"
    STAR_MARKUP = "text/vnd.star.markup"


DEFAULT_MAX_RETRIES = 3
REPRINT_PRIORITY = 10


@dataclass
class PrintJob:
    """Core print job data model."""

    idempotency_key: str
    printer_id: str
    payload: bytes

    job_type: JobType = JobType.RECEIPT
    content_type: str = ContentType.TEXT_PLAIN
    id: str = field(default_factory=lambda: uuid4().hex)

    status: JobStatus = JobStatus.QUEUED
    priority: int = 0

    # Retry bookkeeping
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    printed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    # Correlation, opaque to the queue
    order_id: Optional[str] = None
    table_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def copy(self, **changes) -> "PrintJob":
        """Return a detached copy, optionally with changed fields."""
        changes.setdefault("metadata", dict(self.metadata))
        return replace(self, **changes)

    def is_terminal(self) -> bool:
        """Check if no further automatic transition can happen."""
        if self.status in (JobStatus.PRINTED, JobStatus.CANCELLED):
            return True
        return self.status == JobStatus.FAILED and not self.has_retry_budget()

    def has_retry_budget(self) -> bool:
        return self.retry_count < self.max_retries

    def to_dict(self, include_payload: bool = False) -> Dict[str, Any]:
        """Convert job to dictionary for serialization."""
        data = {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "printer_id": self.printer_id,
            "job_type": self.job_type.value,
            "content_type": self.content_type,
            "status": self.status.value,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "printed_at": self.printed_at.isoformat() if self.printed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "order_id": self.order_id,
            "table_id": self.table_id,
            "metadata": self.metadata,
            "payload_size": len(self.payload),
        }
        if include_payload:
            data["payload"] = base64.b64encode(self.payload).decode("ascii")
        return data

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PrintJob":
        """Create a job from a storage row (column names match field names)."""
        data = dict(row)
        data["job_type"] = JobType(data["job_type"])
        data["status"] = JobStatus(data["status"])
        data["payload"] = bytes(data["payload"])
        data["metadata"] = data.get("metadata") or {}
        return cls(**data)


@dataclass
class JobLogEntry:
    """Append-only audit entry for a print job."""

    job_id: str
    level: LogLevel
    message: str
    printer_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "level": self.level.value,
            "message": self.message,
            "printer_id": self.printer_id,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TransitionResult:
    """Outcome of a guarded status transition."""

    job: PrintJob
    applied: bool
    previous_status: JobStatus

    @property
    def status(self) -> JobStatus:
        return self.job.status


# Job status transition rules
JOB_STATUS_TRANSITIONS = {
    JobStatus.QUEUED: [JobStatus.DELIVERED, JobStatus.CANCELLED],
    JobStatus.DELIVERED: [JobStatus.PRINTED, JobStatus.FAILED, JobStatus.CANCELLED],
    JobStatus.PRINTED: [],  # Terminal state
    JobStatus.FAILED: [JobStatus.QUEUED],  # Gated by retry budget
    JobStatus.CANCELLED: [],  # Terminal state
}


def can_transition_to(current_status: JobStatus, target_status: JobStatus) -> bool:
    """Check if a job can transition from current status to target status."""
    return target_status in JOB_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: JobStatus) -> List[JobStatus]:
    """Get list of valid status transitions from current status."""
    return list(JOB_STATUS_TRANSITIONS.get(current_status, []))


def sources_for(target_status: JobStatus) -> List[JobStatus]:
    """Statuses from which target_status may be entered."""
    return [
        status for status, targets in JOB_STATUS_TRANSITIONS.items()
        if target_status in targets
    ]
