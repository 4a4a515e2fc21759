"""Map raw sample timestamps onto canonical period-start instants.

The period start is the dedup and storage key, so every function here must
be a pure function of (timestamp, interval).
"""

from datetime import date, datetime, time, timedelta, timezone

import pandas as pd

from marketcache.data.config import MARKET_OPEN, MARKET_TZ
from marketcache.data.intervals import Interval, IntervalClass


def market_open(day: date) -> datetime:
    """Market-open instant of a trading date, in UTC."""
    return datetime.combine(day, MARKET_OPEN, tzinfo=MARKET_TZ).astimezone(timezone.utc)


def market_day_start(ts: datetime) -> datetime:
    """Midnight, in the market time zone, of the trading date containing ``ts``, in UTC."""
    day = ts.astimezone(MARKET_TZ).date()
    return datetime.combine(day, time.min, tzinfo=MARKET_TZ).astimezone(timezone.utc)


def week_start(day: date) -> date:
    """Monday of the trading week containing ``day``.

    Sunday belongs to the week that starts the following day.
    """
    weekday = day.weekday()  # Monday=0 ... Sunday=6
    if weekday == 6:
        return day + timedelta(days=1)
    return day - timedelta(days=weekday)


def first_trading_day(year: int, month: int) -> date:
    """First weekday of the given month."""
    day = date(year, month, 1)
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


def normalize_timestamp(ts: datetime, interval) -> datetime:
    """Return the canonical period start for ``ts`` at ``interval``.

    Naive timestamps are taken to be UTC. Intraday instants are kept as is;
    daily, weekly and monthly buckets are anchored at market open on the
    day, the Monday, or the first weekday of the month respectively.
    """
    interval = Interval.parse(interval)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    if isinstance(ts, pd.Timestamp):
        ts = ts.to_pydatetime()

    kind = interval.interval_class
    if kind is IntervalClass.INTRADAY:
        return ts.astimezone(timezone.utc)

    day = ts.astimezone(MARKET_TZ).date()
    if kind is IntervalClass.WEEKLY:
        day = week_start(day)
    elif kind is IntervalClass.MONTHLY:
        day = first_trading_day(day.year, day.month)
    return market_open(day)


def normalize_frame(df: pd.DataFrame, interval) -> pd.DataFrame:
    """Add a ``period_start`` column computed from the ``timestamp`` column."""
    out = df.copy()
    starts = [normalize_timestamp(ts, interval) for ts in out["timestamp"]]
    out["period_start"] = pd.to_datetime(starts, utc=True)
    return out
