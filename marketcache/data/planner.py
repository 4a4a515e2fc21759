"""Decide whether and what to fetch for one (symbol, interval) unit."""

import enum
from dataclasses import dataclass
from datetime import datetime, timezone

from marketcache.data.freshness import FreshnessRecord
from marketcache.data.intervals import Interval, IntervalClass
from marketcache.data.normalize import market_day_start

# Earliest date a full daily/weekly fetch asks for
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class FetchAction(str, enum.Enum):
    FETCH_ALL = "fetch_all"
    INCREMENTAL = "incremental"
    UP_TO_DATE = "up_to_date"
    # Derived from daily data instead of fetched
    AGGREGATE = "aggregate"


@dataclass(frozen=True)
class FetchPlan:
    action: FetchAction
    start: datetime | None = None
    end: datetime | None = None
    reason: str = ""

    @property
    def fetches(self) -> bool:
        return self.action in (FetchAction.FETCH_ALL, FetchAction.INCREMENTAL)


def window_start(interval: Interval, now: datetime) -> datetime:
    """Oldest instant the source serves for ``interval``."""
    retention = interval.spec.retention
    if retention is None:
        return EPOCH
    return now - retention


def plan_fetch(
    interval,
    last_period_start: datetime | None,
    freshness: FreshnessRecord,
    now: datetime,
    force_full_refresh: bool = False,
    daily_changed: bool = False,
) -> FetchPlan:
    """Decide the next action for one (symbol, interval) unit.

    ``daily_changed`` is only consulted for monthly candles: when daily rows
    were written earlier in the same run, the monthly aggregate is rebuilt
    even if it is otherwise fresh.
    """
    interval = Interval.parse(interval)
    spec = interval.spec
    stale = freshness.age_minutes(now) * 60 > spec.staleness.total_seconds()

    if interval.interval_class is IntervalClass.MONTHLY:
        if force_full_refresh or last_period_start is None or stale:
            return FetchPlan(FetchAction.AGGREGATE, reason="monthly candles are derived from daily data")
        if daily_changed:
            return FetchPlan(FetchAction.AGGREGATE, reason="daily candles changed in this run")
        return FetchPlan(FetchAction.UP_TO_DATE, reason="monthly aggregate is fresh")

    if force_full_refresh:
        return FetchPlan(FetchAction.FETCH_ALL, window_start(interval, now), now, "forced full refresh")
    if last_period_start is None:
        return FetchPlan(FetchAction.FETCH_ALL, window_start(interval, now), now, "no stored data")
    if not stale:
        return FetchPlan(FetchAction.UP_TO_DATE, reason="last successful fetch is within the staleness threshold")

    # Weekly rows are replaced wholesale, so a partial fetch would drop history
    if interval.interval_class is IntervalClass.WEEKLY:
        return FetchPlan(FetchAction.FETCH_ALL, window_start(interval, now), now, "weekly data is always refetched in full")

    if interval.interval_class is IntervalClass.DAILY:
        # Daily bars can be stamped anywhere in their session day, including
        # local midnight; the last stored session is re-read and upserted again.
        start = market_day_start(last_period_start)
    else:
        start = last_period_start + spec.step
    start = max(start, window_start(interval, now))
    if start >= now:
        return FetchPlan(FetchAction.UP_TO_DATE, reason="no period after the last stored one has started")
    return FetchPlan(FetchAction.INCREMENTAL, start, now, f"stale, resuming from {start.isoformat()}")
