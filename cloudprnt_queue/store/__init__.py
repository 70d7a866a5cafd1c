"""
Job storage backends

JobStore owns the print job state machine; InMemoryJobStore and
PostgresJobStore provide the storage.
"""

from .base import JobStore
from .memory import InMemoryJobStore
from .postgres import PostgresJobStore

__all__ = [
    "JobStore",
    "InMemoryJobStore",
    "PostgresJobStore"
]
