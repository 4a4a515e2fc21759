"""Incremental synchronization of quote-source candles into the store.

One (symbol, interval) unit runs plan -> fetch -> validate -> normalize ->
dedup -> upsert -> freshness. Units run one after another; a failed unit is
reported and the batch moves on.
"""

import enum
import logging
import time
from dataclasses import dataclass, field

import pandas as pd

from marketcache.data import config
from marketcache.data.aggregate import Aggregator
from marketcache.data.dedup import deduplicate
from marketcache.data.errors import StorageError, TransientSourceError
from marketcache.data.freshness import FreshnessRecord, FreshnessTracker, utcnow
from marketcache.data.ingestion import QuoteSource, samples_to_frame
from marketcache.data.intervals import Interval, parse_intervals
from marketcache.data.normalize import normalize_frame
from marketcache.data.planner import FetchAction, plan_fetch
from marketcache.data.store import DataAge, DataStore, normalize_symbol
from marketcache.data.validation import validate_frame

logger = logging.getLogger(__name__)


class SyncStatus(str, enum.Enum):
    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    NO_NEW_DATA = "no_new_data"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class SyncResult:
    symbol: str
    interval: Interval
    status: SyncStatus
    new_points: int = 0
    # Existing rows rewritten with fresh values
    replaced: int = 0
    rejected: int = 0
    filtered: int = 0
    error: str | None = None

    @property
    def label(self) -> str:
        return f"{self.symbol}@{self.interval.value}"

    @property
    def changed(self) -> bool:
        return self.new_points + self.replaced > 0


@dataclass
class BatchResult:
    updated: list[str] = field(default_factory=list)
    up_to_date: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    total_new_points: int = 0
    results: list[SyncResult] = field(default_factory=list)

    def add(self, result: SyncResult):
        self.results.append(result)
        if result.status is SyncStatus.UPDATED:
            self.updated.append(f"{result.label} (+{result.new_points})")
            self.total_new_points += result.new_points
        elif result.status is SyncStatus.FAILED:
            self.failed.append(f"{result.label}: {result.error}")
        else:
            self.up_to_date.append(result.label)


class SyncEngine:
    """Keeps stored candles current against a quote source.

    Monthly candles (and weekly ones when ``derive_weekly`` is set) are
    never fetched; they are rebuilt from stored daily candles after the
    daily data has been synced.
    """

    def __init__(
        self,
        store: DataStore,
        source: QuoteSource,
        clock=utcnow,
        request_delay: float = config.REQUEST_DELAY_SECONDS,
        sleep=time.sleep,
        derive_weekly: bool = config.DERIVE_WEEKLY_FROM_DAILY,
        aggregation_window_months: int = config.AGGREGATION_WINDOW_MONTHS,
    ):
        self.store = store
        self.source = source
        self.clock = clock
        self.request_delay = request_delay
        self.sleep = sleep
        self.derive_weekly = derive_weekly
        self.freshness = FreshnessTracker(store, clock)
        self.aggregator = Aggregator(store, clock, window_months=aggregation_window_months)

    def is_derived(self, interval: Interval) -> bool:
        return interval is Interval.MONTH_1 or (self.derive_weekly and interval is Interval.WEEK_1)

    def sync_one(self, symbol: str, interval, force_full_refresh: bool = False) -> SyncResult:
        interval = Interval.parse(interval)
        symbol = normalize_symbol(symbol)
        if not self.is_derived(interval):
            return self._sync_unit(symbol, interval, force_full_refresh)

        daily = self._sync_unit(symbol, Interval.DAY_1, force_full_refresh)
        if daily.status is SyncStatus.FAILED:
            logger.warning(f"Daily sync failed for {symbol}, aggregating {interval.value} from stored data")
        return self._derive(symbol, interval, force_full_refresh, daily_changed=daily.changed)

    def sync_many(self, symbols: list[str], intervals, force_full_refresh: bool = False) -> BatchResult:
        intervals = parse_intervals(intervals)
        derived = [i for i in intervals if self.is_derived(i)]
        fetched = [i for i in intervals if not self.is_derived(i)]
        if derived and Interval.DAY_1 not in fetched:
            fetched.insert(0, Interval.DAY_1)

        mode = "FULL REFRESH" if force_full_refresh else "INCREMENTAL"
        logger.info(
            f"Syncing {len(symbols)} symbols, intervals={[i.value for i in fetched]}, "
            f"derived={[i.value for i in derived]}, mode={mode}"
        )

        batch = BatchResult()
        calls = 0
        for symbol in symbols:
            symbol = normalize_symbol(symbol)
            daily_changed = False
            for interval in fetched:
                if calls:
                    self.sleep(self.request_delay)
                result = self._sync_unit(symbol, interval, force_full_refresh)
                batch.add(result)
                calls += 1
                if interval is Interval.DAY_1 and result.changed:
                    daily_changed = True
            for interval in derived:
                batch.add(self._derive(symbol, interval, force_full_refresh, daily_changed))

        logger.info(
            f"Sync complete: {len(batch.updated)} updated, {len(batch.up_to_date)} up to date, "
            f"{len(batch.failed)} failed, {batch.total_new_points} new points"
        )
        for item in batch.failed:
            logger.warning(f"Failed: {item}")
        return batch

    def _sync_unit(self, symbol: str, interval: Interval, force_full_refresh: bool) -> SyncResult:
        try:
            symbol_id = self.store.get_or_create_symbol(symbol)
            freshness = self.freshness.get(symbol_id, interval)
            plan = plan_fetch(
                interval,
                self.store.last_period_start(symbol_id, interval),
                freshness,
                self.clock(),
                force_full_refresh=force_full_refresh,
            )
        except StorageError as exc:
            logger.error(f"Could not plan {symbol}@{interval.value}: {exc}")
            return SyncResult(symbol, interval, SyncStatus.FAILED, error=str(exc))

        logger.info(f"{symbol}@{interval.value}: {plan.action.value} ({plan.reason})")
        if not plan.fetches:
            return SyncResult(symbol, interval, SyncStatus.UP_TO_DATE)

        try:
            samples = self.source.fetch(symbol, interval.provider_code, plan.start, plan.end)
            result = self._store_samples(symbol, symbol_id, interval, samples)
            self.freshness.record(symbol_id, interval, True, current=freshness)
        except (TransientSourceError, StorageError) as exc:
            return self._fail(symbol, symbol_id, interval, exc, freshness)
        return result

    def _store_samples(self, symbol, symbol_id, interval, samples) -> SyncResult:
        frame = samples_to_frame(samples)
        if frame.empty:
            logger.info(f"No new data for {symbol}@{interval.value}")
            return SyncResult(symbol, interval, SyncStatus.NO_NEW_DATA)

        report = validate_frame(frame)
        unique, filtered = deduplicate(normalize_frame(report.valid, interval))
        if unique.empty:
            return SyncResult(
                symbol, interval, SyncStatus.NO_NEW_DATA, rejected=report.rejected, filtered=filtered
            )

        stored = self.store.upsert(symbol_id, interval, unique)
        status = SyncStatus.UPDATED if stored.inserted else SyncStatus.NO_NEW_DATA
        return SyncResult(
            symbol,
            interval,
            status,
            new_points=stored.inserted,
            replaced=stored.replaced,
            rejected=report.rejected + stored.errors,
            filtered=filtered,
        )

    def _derive(
        self, symbol: str, interval: Interval, force_full_refresh: bool, daily_changed: bool = False
    ) -> SyncResult:
        symbol_id = None
        freshness = FreshnessRecord()
        try:
            symbol_id = self.store.get_or_create_symbol(symbol)
            freshness = self.freshness.get(symbol_id, interval)
            plan = plan_fetch(
                interval,
                self.store.last_period_start(symbol_id, interval),
                freshness,
                self.clock(),
                force_full_refresh=force_full_refresh,
                daily_changed=daily_changed,
            )
            if plan.action is FetchAction.UP_TO_DATE and not daily_changed:
                logger.info(f"{symbol}@{interval.value}: up_to_date ({plan.reason})")
                return SyncResult(symbol, interval, SyncStatus.UP_TO_DATE)

            aggregation = self.aggregator.run(symbol_id, interval)
            if aggregation.insufficient_data:
                return SyncResult(symbol, interval, SyncStatus.NO_NEW_DATA)
            self.freshness.record(symbol_id, interval, True, current=freshness)
        except StorageError as exc:
            return self._fail(symbol, symbol_id, interval, exc, freshness)

        status = SyncStatus.UPDATED if aggregation.inserted else SyncStatus.NO_NEW_DATA
        return SyncResult(
            symbol,
            interval,
            status,
            new_points=aggregation.inserted,
            replaced=aggregation.periods - aggregation.inserted,
        )

    def _fail(self, symbol, symbol_id, interval, exc, freshness) -> SyncResult:
        logger.error(f"Sync failed for {symbol}@{interval.value}: {exc}")
        if symbol_id is not None:
            try:
                self.freshness.record(symbol_id, interval, False, str(exc), current=freshness)
            except StorageError as record_exc:
                logger.error(f"Could not record failure for {symbol}@{interval.value}: {record_exc}")
        return SyncResult(symbol, interval, SyncStatus.FAILED, error=str(exc))

    def query(self, symbol: str, interval, limit: int | None = 1000) -> pd.DataFrame:
        return self.store.query(symbol, interval, limit)

    def age(self, symbol: str, interval) -> DataAge:
        return self.store.age(symbol, interval, now=self.clock())

    def purge(self, symbol: str) -> int:
        return self.store.purge(symbol)

    def list_symbols(self) -> pd.DataFrame:
        return self.store.list_symbols()

    def repair(self, symbol: str, interval) -> int:
        """Collapse stored duplicates of one symbol/interval. Returns rows removed."""
        symbol_id = self.store.symbol_id(symbol)
        if symbol_id is None:
            return 0
        return self.store.renormalize(symbol_id, interval)
