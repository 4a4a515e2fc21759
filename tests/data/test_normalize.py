from datetime import date, datetime, timezone

import pandas as pd

from marketcache.data.intervals import Interval
from marketcache.data.normalize import (
    first_trading_day,
    market_day_start,
    market_open,
    normalize_frame,
    normalize_timestamp,
    week_start,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_market_open_follows_daylight_saving():
    assert market_open(date(2024, 1, 10)) == utc(2024, 1, 10, 14, 30)
    assert market_open(date(2024, 7, 10)) == utc(2024, 7, 10, 13, 30)


def test_intraday_keeps_the_instant():
    ts = utc(2024, 3, 6, 15, 5)
    assert normalize_timestamp(ts, Interval.MIN_5) == ts


def test_naive_timestamps_are_utc():
    assert normalize_timestamp(datetime(2024, 3, 6, 15, 5), "5min") == utc(2024, 3, 6, 15, 5)


def test_daily_jitter_maps_to_one_key():
    # Midnight New York and the 09:30 open of the same session
    a = normalize_timestamp(utc(2024, 3, 6, 5, 0), Interval.DAY_1)
    b = normalize_timestamp(utc(2024, 3, 6, 14, 30), Interval.DAY_1)
    c = normalize_timestamp(utc(2024, 3, 6, 20, 59), Interval.DAY_1)
    assert a == b == c == utc(2024, 3, 6, 14, 30)


def test_weekly_samples_in_one_week_share_a_key():
    wednesday = normalize_timestamp(utc(2024, 3, 6, 14, 0), Interval.WEEK_1)
    thursday = normalize_timestamp(utc(2024, 3, 7, 10, 0), Interval.WEEK_1)
    assert wednesday == thursday == utc(2024, 3, 4, 14, 30)


def test_sunday_belongs_to_the_following_week():
    assert week_start(date(2024, 3, 10)) == date(2024, 3, 11)
    assert week_start(date(2024, 3, 9)) == date(2024, 3, 4)
    assert normalize_timestamp(utc(2024, 3, 10, 18, 0), Interval.WEEK_1) == utc(2024, 3, 11, 13, 30)


def test_monthly_uses_first_weekday():
    # June 2024 starts on a Saturday
    assert first_trading_day(2024, 6) == date(2024, 6, 3)
    assert first_trading_day(2024, 5) == date(2024, 5, 1)
    assert normalize_timestamp(utc(2024, 6, 20, 14, 30), Interval.MONTH_1) == utc(2024, 6, 3, 13, 30)


def test_normalization_is_idempotent():
    for interval in Interval:
        once = normalize_timestamp(utc(2024, 11, 14, 16, 45), interval)
        assert normalize_timestamp(once, interval) == once


def test_normalize_frame_adds_period_start():
    df = pd.DataFrame({"timestamp": pd.to_datetime(["2024-03-06 05:00", "2024-03-07 14:30"], utc=True)})
    out = normalize_frame(df, Interval.DAY_1)
    assert "period_start" not in df.columns
    assert list(out["period_start"]) == [
        pd.Timestamp("2024-03-06 14:30", tz="UTC"),
        pd.Timestamp("2024-03-07 14:30", tz="UTC"),
    ]


def test_market_day_start_is_local_midnight():
    assert market_day_start(utc(2024, 3, 6, 14, 30)) == utc(2024, 3, 6, 5, 0)
    assert market_day_start(utc(2024, 7, 10, 13, 30)) == utc(2024, 7, 10, 4, 0)
    # 01:00 UTC is still the previous evening in New York
    assert market_day_start(utc(2024, 3, 7, 1, 0)) == utc(2024, 3, 6, 5, 0)
