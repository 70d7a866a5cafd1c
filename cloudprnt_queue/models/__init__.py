"""
Data models for the CloudPRNT print queue

Print jobs, their status state machine, audit log entries and printer
configuration.
"""

from .job import (
    PrintJob,
    JobStatus,
    JobType,
    LogLevel,
    ContentType,
    JobLogEntry,
    TransitionResult,
    JOB_STATUS_TRANSITIONS,
    DEFAULT_MAX_RETRIES,
    REPRINT_PRIORITY,
    can_transition_to,
    get_valid_transitions,
    utcnow
)

from .printer import (
    PrinterEndpoint,
    PrinterStatusReport,
    JobOutcome
)

__all__ = [
    # Job models
    "PrintJob",
    "JobStatus",
    "JobType",
    "LogLevel",
    "ContentType",
    "JobLogEntry",
    "TransitionResult",
    "JOB_STATUS_TRANSITIONS",
    "DEFAULT_MAX_RETRIES",
    "REPRINT_PRIORITY",
    "can_transition_to",
    "get_valid_transitions",
    "utcnow",

    # Printer models
    "PrinterEndpoint",
    "PrinterStatusReport",
    "JobOutcome"
]
