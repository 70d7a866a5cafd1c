"""
Retry backoff policy for failed print deliveries.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..models.job import PrintJob
from ..core.exceptions import ConfigurationError


FIXED = "fixed"
EXPONENTIAL = "exponential"


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    backoff_seconds: float = 10.0
    strategy: str = FIXED
    max_backoff_seconds: float = 300.0
    exponential_base: float = 2.0

    def __post_init__(self):
        if self.strategy not in (FIXED, EXPONENTIAL):
            raise ConfigurationError("backoff_strategy", f"unknown strategy {self.strategy!r}")

    def delay_for(self, retry_count: int) -> float:
        """Seconds to wait before the next attempt of a job retried retry_count times."""
        if self.strategy == FIXED:
            return self.backoff_seconds
        delay = self.backoff_seconds * (self.exponential_base ** retry_count)
        return min(delay, self.max_backoff_seconds)

    def next_retry_at(self, job: PrintJob, now: datetime) -> Optional[datetime]:
        """Earliest requeue time for a job that just failed, None once its budget is spent."""
        if not job.has_retry_budget():
            return None
        return now + timedelta(seconds=self.delay_for(job.retry_count))
