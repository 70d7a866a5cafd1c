"""
Exception classes for the CloudPRNT print queue

Provides the error taxonomy shared by the enqueue path, the printer poll
channel, the retry scheduler and the storage backends.
"""

from typing import Optional, Dict, Any


class PrintQueueError(Exception):
    """Base exception for all print queue errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ValidationError(PrintQueueError):
    """Raised when enqueue input is rejected before anything is stored."""

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Validation error for {field}: {message}",
            error_code="VALIDATION_ERROR",
            details={"field": field, "value": str(value) if value is not None else None}
        )


class ProtocolError(PrintQueueError):
    """Raised when a printer poll carries a body we cannot understand."""

    def __init__(self, printer_id: str, message: str):
        super().__init__(
            f"Malformed poll from printer {printer_id}: {message}",
            error_code="PROTOCOL_ERROR",
            details={"printer_id": printer_id}
        )


class DeliveryTimeout(PrintQueueError):
    """A delivered job was never confirmed by the printer."""

    def __init__(self, job_id: str, timeout_seconds: float):
        super().__init__(
            f"Job {job_id} was not confirmed within {timeout_seconds:g} seconds",
            error_code="DELIVERY_TIMEOUT",
            details={"job_id": job_id, "timeout_seconds": timeout_seconds}
        )


class TerminalFailure(PrintQueueError):
    """A job has used up its retry budget and will not be retried again."""

    def __init__(self, job_id: str, retry_count: int, last_error: Optional[str] = None):
        super().__init__(
            f"Job {job_id} failed permanently after {retry_count} retries",
            error_code="TERMINAL_FAILURE",
            details={"job_id": job_id, "retry_count": retry_count, "last_error": last_error}
        )


class JobNotFoundError(PrintQueueError):
    """Raised when a requested job cannot be found."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Job {job_id} not found",
            error_code="JOB_NOT_FOUND",
            details={"job_id": job_id}
        )


class PrinterNotFoundError(PrintQueueError):
    """Raised when a printer id is not present in the registry."""

    def __init__(self, printer_id: str):
        super().__init__(
            f"Printer {printer_id} not found",
            error_code="PRINTER_NOT_FOUND",
            details={"printer_id": printer_id}
        )


class InvalidTransitionError(PrintQueueError):
    """Raised by callers that treat a rejected status transition as an error."""

    def __init__(self, job_id: str, current_status: str, target_status: str):
        super().__init__(
            f"Job {job_id} cannot move from {current_status} to {target_status}",
            error_code="INVALID_TRANSITION",
            details={"job_id": job_id, "current_status": current_status, "target_status": target_status}
        )


class ConfigurationError(PrintQueueError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class DatabaseError(PrintQueueError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


class OrchestratorError(PrintQueueError):
    """Raised when orchestrator-level operations fail."""

    def __init__(self, message: str):
        super().__init__(
            f"Orchestrator error: {message}",
            error_code="ORCHESTRATOR_ERROR"
        )


class ErrorRegistry:
    """Registry for tracking and analyzing errors."""

    def __init__(self):
        self.error_counts = {}

    def record_error(self, error: PrintQueueError):
        """Record an error for analysis."""
        error_type = error.__class__.__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": dict(self.error_counts),
            "most_common_error": max(self.error_counts.items(), key=lambda x: x[1])[0] if self.error_counts else None
        }

    def reset(self):
        self.error_counts.clear()


# Global error registry instance
error_registry = ErrorRegistry()
