"""Per (symbol, interval) fetch bookkeeping."""

import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FreshnessRecord:
    last_fetched_at: datetime | None = None
    last_successful_fetch_at: datetime | None = None
    fetch_count: int = 0
    error_count: int = 0
    last_error: str | None = None

    def record(self, success: bool, error: str | None = None, now: datetime | None = None) -> "FreshnessRecord":
        """Return the record after one more fetch attempt.

        A failed attempt keeps the previous successful-fetch timestamp.
        """
        now = now or utcnow()
        return replace(
            self,
            last_fetched_at=now,
            last_successful_fetch_at=now if success else self.last_successful_fetch_at,
            fetch_count=self.fetch_count + 1,
            error_count=self.error_count + (0 if success else 1),
            last_error=None if success else error,
        )

    def age_minutes(self, now: datetime | None = None) -> float:
        """Minutes since the last successful fetch; inf if there never was one."""
        if self.last_successful_fetch_at is None:
            return math.inf
        now = now or utcnow()
        return (now - self.last_successful_fetch_at).total_seconds() / 60


class FreshnessTracker:
    """Loads, updates and saves freshness records through the store."""

    def __init__(self, store, clock=utcnow):
        self.store = store
        self.clock = clock

    def get(self, symbol_id: int, interval) -> FreshnessRecord:
        return self.store.get_freshness(symbol_id, interval)

    def record(
        self,
        symbol_id: int,
        interval,
        success: bool,
        error: str | None = None,
        current: FreshnessRecord | None = None,
    ) -> FreshnessRecord:
        if current is None:
            current = self.get(symbol_id, interval)
        updated = current.record(success, error, now=self.clock())
        self.store.record_freshness(symbol_id, interval, updated)
        return updated

    def age_minutes(self, symbol_id: int, interval) -> float:
        return self.get(symbol_id, interval).age_minutes(self.clock())
