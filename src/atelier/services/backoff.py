"""Exponential backoff policy for requeued jobs."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from atelier.core.timezone import utc_now


@dataclass(frozen=True)
class BackoffPolicy:
    """delay(n) = min(max_seconds, base_seconds * multiplier ** (n - 1)) for attempt n >= 1."""

    base_seconds: float
    multiplier: float = 2.0
    max_seconds: float = 300.0

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retrying after the given (1-based) failed attempt."""
        if attempt < 1:
            return 0.0
        return min(self.max_seconds, self.base_seconds * self.multiplier ** (attempt - 1))

    def next_attempt_at(self, attempt: int, now: datetime | None = None) -> datetime:
        """Earliest time the next attempt may start."""
        now = now or utc_now()
        return now + timedelta(seconds=self.delay_for(attempt))
