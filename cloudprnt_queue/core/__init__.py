"""
Core package for the CloudPRNT print queue

Contains the orchestrator and the exception taxonomy.
"""

from .exceptions import (
    PrintQueueError,
    ValidationError,
    ProtocolError,
    DeliveryTimeout,
    TerminalFailure,
    JobNotFoundError,
    PrinterNotFoundError,
    InvalidTransitionError,
    ConfigurationError,
    DatabaseError,
    OrchestratorError,
    error_registry
)
from .orchestrator import PrintQueueOrchestrator

__all__ = [
    "PrintQueueOrchestrator",
    "PrintQueueError",
    "ValidationError",
    "ProtocolError",
    "DeliveryTimeout",
    "TerminalFailure",
    "JobNotFoundError",
    "PrinterNotFoundError",
    "InvalidTransitionError",
    "ConfigurationError",
    "DatabaseError",
    "OrchestratorError",
    "error_registry"
]
