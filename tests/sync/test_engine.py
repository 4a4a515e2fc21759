from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from marketcache.data import ingestion
from marketcache.data.errors import TransientSourceError
from marketcache.data.ingestion import RawSample, YahooQuoteSource
from marketcache.data.intervals import Interval
from marketcache.data.store import DataStore
from marketcache.sync.engine import SyncEngine, SyncStatus


def epoch(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


def bar(ts, close=100.0, high=101.0, low=99.0):
    return RawSample(timestamp=ts, open=100.0, high=high, low=low, close=close, volume=1000.0)


WEEK = [bar(epoch(2024, 3, day, 14, 30), close=100.0 + day) for day in range(4, 9)]


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class FakeSource:
    """Serves canned bars, honouring the requested window."""

    def __init__(self, bars=None, failing=()):
        self.bars = bars if bars is not None else list(WEEK)
        self.failing = set(failing)
        self.calls = []

    def fetch(self, symbol, interval_code, start, end):
        self.calls.append((symbol, interval_code, start, end))
        if symbol in self.failing:
            raise TransientSourceError(symbol, interval_code, "rate limited")
        lo, hi = start.timestamp(), end.timestamp()
        return [b for b in self.bars if lo <= b.timestamp <= hi]


@pytest.fixture
def store(tmp_path):
    store = DataStore(f"sqlite:///{tmp_path}/test.db")
    store.init_db()
    return store


@pytest.fixture
def clock():
    return Clock(datetime(2024, 3, 8, 22, 0, tzinfo=timezone.utc))


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def engine(store, source, clock):
    return SyncEngine(store, source, clock=clock, request_delay=0, sleep=lambda s: None)


def test_first_sync_fetches_everything(engine, source):
    result = engine.sync_one("aapl", "1day")

    assert result.status is SyncStatus.UPDATED
    assert result.new_points == 5
    assert result.symbol == "AAPL"
    assert source.calls[0][1] == "1d"
    assert len(engine.query("AAPL", "1day")) == 5


def test_second_sync_is_up_to_date(engine, source):
    engine.sync_one("AAPL", Interval.DAY_1)
    result = engine.sync_one("AAPL", Interval.DAY_1)

    assert result.status is SyncStatus.UP_TO_DATE
    assert len(source.calls) == 1


def test_force_refresh_refetches_without_duplicates(engine, store, source):
    engine.sync_one("AAPL", Interval.DAY_1)
    result = engine.sync_one("AAPL", Interval.DAY_1, force_full_refresh=True)

    assert len(source.calls) == 2
    # Rewriting existing rows is not an update
    assert result.status is SyncStatus.NO_NEW_DATA
    assert (result.new_points, result.replaced) == (0, 5)
    assert store.count_candles(store.symbol_id("AAPL"), Interval.DAY_1) == 5


def test_stale_sync_fetches_only_new_periods(engine, source, clock):
    engine.sync_one("AAPL", Interval.DAY_1)
    source.bars.append(bar(epoch(2024, 3, 11, 14, 30)))
    clock.now = datetime(2024, 3, 11, 22, 0, tzinfo=timezone.utc)

    result = engine.sync_one("AAPL", Interval.DAY_1)

    assert result.new_points == 1
    _, _, start, _ = source.calls[-1]
    # The last stored session is re-read from its local midnight
    assert start == datetime(2024, 3, 8, 5, 0, tzinfo=timezone.utc)


def test_failure_keeps_last_successful_fetch(engine, store, source, clock):
    engine.sync_one("AAPL", Interval.DAY_1)
    first_success = clock.now
    clock.now += timedelta(days=3)
    source.failing.add("AAPL")

    result = engine.sync_one("AAPL", Interval.DAY_1)

    assert result.status is SyncStatus.FAILED
    assert "rate limited" in result.error
    record = store.get_freshness(store.symbol_id("AAPL"), Interval.DAY_1)
    assert record.last_successful_fetch_at == first_success
    assert record.last_fetched_at == clock.now
    assert record.fetch_count == 2
    assert record.error_count == 1
    assert store.count_candles(store.symbol_id("AAPL"), Interval.DAY_1) == 5


def test_invalid_bars_are_rejected(store, clock):
    bars = list(WEEK)
    bars[2] = bar(bars[2].timestamp, high=90.0, low=95.0)
    engine = SyncEngine(store, FakeSource(bars), clock=clock, request_delay=0)

    result = engine.sync_one("AAPL", Interval.DAY_1)

    assert result.rejected == 1
    assert result.new_points == 4


def test_jittered_duplicates_are_filtered(store, clock):
    # Midnight New York and market open fall in the same daily period
    bars = [bar(epoch(2024, 3, 6, 5, 0), close=1.0), bar(epoch(2024, 3, 6, 14, 30), close=2.0)]
    engine = SyncEngine(store, FakeSource(bars), clock=clock, request_delay=0)

    result = engine.sync_one("AAPL", Interval.DAY_1)

    assert result.filtered == 1
    assert result.new_points == 1
    assert list(engine.query("AAPL", Interval.DAY_1)["close"]) == [1.0]


def test_sync_without_new_periods_counts_as_fresh(engine, source, clock):
    engine.sync_one("AAPL", Interval.DAY_1)
    clock.now += timedelta(days=3)

    assert engine.sync_one("AAPL", Interval.DAY_1).status is SyncStatus.NO_NEW_DATA
    assert engine.sync_one("AAPL", Interval.DAY_1).status is SyncStatus.UP_TO_DATE
    assert len(source.calls) == 2


def test_monthly_is_derived_from_daily(engine, store, source):
    batch = engine.sync_many(["AAPL"], ["1month"])

    assert [c[1] for c in source.calls] == ["1d"]
    assert [r.interval for r in batch.results] == [Interval.DAY_1, Interval.MONTH_1]
    monthly = engine.query("AAPL", Interval.MONTH_1)
    assert len(monthly) == 1
    assert monthly.iloc[0]["close"] == 108.0
    assert monthly.iloc[0]["volume"] == 5000.0


def test_monthly_aggregates_stored_data_when_daily_fails(engine, source, clock):
    engine.sync_one("AAPL", Interval.DAY_1)
    clock.now += timedelta(days=3)
    source.failing.add("AAPL")

    result = engine.sync_one("AAPL", Interval.MONTH_1)

    assert result.status is SyncStatus.UPDATED
    assert len(engine.query("AAPL", Interval.MONTH_1)) == 1


def test_batch_reports_partial_failure(store, source, clock):
    sleeps = []
    source.failing.add("BAD")
    engine = SyncEngine(store, source, clock=clock, request_delay=0.1, sleep=sleeps.append)

    batch = engine.sync_many(["AAPL", "BAD", "MSFT"], ["1day", "1d"])

    assert batch.updated == ["AAPL@1day (+5)", "MSFT@1day (+5)"]
    assert batch.failed == ["BAD@1day: BAD@1d: rate limited"]
    assert batch.total_new_points == 10
    assert sleeps == [0.1, 0.1]


def test_batch_second_run_is_up_to_date(engine):
    engine.sync_many(["AAPL"], ["1day", "1month"])
    batch = engine.sync_many(["AAPL"], ["1day", "1month"])

    assert batch.updated == []
    assert batch.up_to_date == ["AAPL@1day", "AAPL@1month"]


def test_purge_and_repair(engine):
    engine.sync_one("AAPL", Interval.DAY_1)

    assert engine.repair("AAPL", Interval.DAY_1) == 0
    assert engine.repair("NOPE", Interval.DAY_1) == 0
    assert engine.purge("AAPL") == 5
    assert engine.list_symbols().empty


def test_monthly_follows_same_day_daily_update(store, clock):
    source = FakeSource(bars=WEEK[:4])
    clock.now = datetime(2024, 3, 8, 13, 0, tzinfo=timezone.utc)
    engine = SyncEngine(store, source, clock=clock, request_delay=0)
    engine.sync_many(["AAPL"], ["1day", "1month"])

    source.bars.append(bar(epoch(2024, 3, 8, 14, 30), close=555.0, high=600.0))
    clock.now = datetime(2024, 3, 8, 21, 0, tzinfo=timezone.utc)
    batch = engine.sync_many(["AAPL"], ["1day", "1month"])

    assert [(r.interval, r.status) for r in batch.results] == [
        (Interval.DAY_1, SyncStatus.UPDATED),
        (Interval.MONTH_1, SyncStatus.NO_NEW_DATA),
    ]
    monthly = engine.query("AAPL", Interval.MONTH_1)
    assert len(monthly) == 1
    assert monthly.iloc[0]["close"] == 555.0
    assert monthly.iloc[0]["high"] == 600.0


def test_missing_timestamp_does_not_abort_batch(store, clock):
    class GappySource(FakeSource):
        def fetch(self, symbol, interval_code, start, end):
            bars = super().fetch(symbol, interval_code, start, end)
            if symbol == "AAPL":
                bars = bars + [RawSample(timestamp=None, open=1.0, high=2.0, low=0.5, close=1.5)]
            return bars

    engine = SyncEngine(store, GappySource(), clock=clock, request_delay=0, sleep=lambda s: None)

    batch = engine.sync_many(["AAPL", "MSFT"], ["1day"])

    aapl, msft = batch.results
    assert (aapl.status, aapl.new_points, aapl.rejected) == (SyncStatus.UPDATED, 5, 1)
    assert (msft.status, msft.new_points) == (SyncStatus.UPDATED, 5)
    assert store.get_freshness(store.symbol_id("AAPL"), Interval.DAY_1).fetch_count == 1


def test_malformed_yahoo_response_does_not_abort_batch(store, clock, monkeypatch):
    class Ticker:
        def __init__(self, symbol):
            self.symbol = symbol

        def history(self, **kwargs):
            index = pd.DatetimeIndex(["2024-03-06", "2024-03-07"], tz="America/New_York")
            if self.symbol == "AAPL":
                return pd.DataFrame({"Price": [1.0, 2.0]}, index=index)
            return pd.DataFrame(
                {"Open": [1.0, 2.0], "High": [2.0, 3.0], "Low": [0.5, 1.5], "Close": [1.5, 2.5], "Volume": [10.0, 20.0]},
                index=index,
            )

    monkeypatch.setattr(ingestion.yf, "Ticker", Ticker)
    engine = SyncEngine(store, YahooQuoteSource(), clock=clock, request_delay=0, sleep=lambda s: None)

    batch = engine.sync_many(["AAPL", "MSFT"], ["1day"])

    assert len(batch.failed) == 1
    assert batch.failed[0].startswith("AAPL@1day: AAPL@1d: Malformed history response")
    assert batch.updated == ["MSFT@1day (+2)"]
    record = store.get_freshness(store.symbol_id("AAPL"), Interval.DAY_1)
    assert (record.error_count, record.last_successful_fetch_at) == (1, None)
