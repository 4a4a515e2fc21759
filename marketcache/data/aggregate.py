"""Derive monthly (and optionally weekly) candles from stored daily candles.

The source's own monthly bars carry inconsistent timestamps and partial
months, so monthly rows are only ever built here.
"""

import logging
from dataclasses import dataclass

import pandas as pd

from marketcache.data import config
from marketcache.data.freshness import utcnow
from marketcache.data.intervals import Interval, IntervalClass
from marketcache.data.normalize import first_trading_day, market_open, normalize_timestamp

logger = logging.getLogger(__name__)

AGGREGATABLE = (Interval.WEEK_1, Interval.MONTH_1)


@dataclass(slots=True, frozen=True)
class AggregationResult:
    interval: Interval
    periods: int = 0
    inserted: int = 0
    # No daily rows stored yet; nothing was written
    insufficient_data: bool = False


def aggregate_candles(daily: pd.DataFrame, interval) -> pd.DataFrame:
    """Roll daily candles up into weekly or monthly candles.

    ``daily`` has a UTC ``timestamp`` column and OHLCV columns, in any order.
    Returns one row per bucket with ``period_start`` set to the canonical
    bucket start, oldest first.
    """
    interval = Interval.parse(interval)
    if interval not in AGGREGATABLE:
        raise ValueError(f"Cannot aggregate daily candles into {interval.value}")
    if daily.empty:
        return pd.DataFrame(columns=["period_start", "open", "high", "low", "close", "volume"])

    df = daily.sort_values("timestamp", kind="stable").copy()
    df["period_start"] = pd.to_datetime(
        [normalize_timestamp(ts, interval) for ts in df["timestamp"]], utc=True
    )
    grouped = df.groupby("period_start", sort=True).agg(
        open=("open", "first"),
        high=("high", "max"),
        low=("low", "min"),
        close=("close", "last"),
        volume=("volume", "sum"),
        days=("timestamp", "size"),
    )
    return grouped.reset_index()


def aggregation_window_start(now, months: int):
    """Canonical start of the month ``months`` months before ``now``'s month."""
    local = pd.Timestamp(now).tz_convert(config.MARKET_TZ)
    anchor = pd.Timestamp(year=local.year, month=local.month, day=1) - pd.DateOffset(months=months)
    return market_open(first_trading_day(anchor.year, anchor.month))


class Aggregator:
    """Rebuilds derived candles for one symbol from its stored daily candles."""

    def __init__(self, store, clock=utcnow, window_months: int = config.AGGREGATION_WINDOW_MONTHS):
        self.store = store
        self.clock = clock
        self.window_months = window_months

    def run(self, symbol_id: int, interval=Interval.MONTH_1) -> AggregationResult:
        interval = Interval.parse(interval)
        daily = self.store.query_by_id(symbol_id, Interval.DAY_1, limit=None)
        if daily.empty:
            logger.warning(f"No daily candles for symbol_id={symbol_id}, skipping {interval.value} aggregation")
            return AggregationResult(interval=interval, insufficient_data=True)

        candles = aggregate_candles(daily, interval)
        logger.info(
            f"Aggregated {len(daily)} daily candles into {len(candles)} {interval.value} "
            f"candles for symbol_id={symbol_id}"
        )

        if interval.interval_class is IntervalClass.WEEKLY:
            result = self.store.upsert(symbol_id, interval, candles)
            return AggregationResult(interval=interval, periods=len(candles), inserted=result.inserted)

        # Recent months are rebuilt; older ones are only filled in when missing
        since = aggregation_window_start(self.clock(), self.window_months)
        established = pd.to_datetime(list(self.store.period_starts(symbol_id, interval, before=since)), utc=True)
        recent = candles["period_start"] >= since
        missing = ~recent & ~candles["period_start"].isin(established)
        selected = candles[recent | missing]
        if selected.empty:
            return AggregationResult(interval=interval)

        result = self.store.upsert(symbol_id, interval, selected, replace_since=since)
        return AggregationResult(interval=interval, periods=len(selected), inserted=result.inserted)
