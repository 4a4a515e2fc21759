"""Data storage layer. Uses PostgreSQL in production, SQLite for development and testing."""

import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
from sqlalchemy import create_engine, delete, func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketcache.data import config
from marketcache.data.dedup import deduplicate
from marketcache.data.errors import StorageError
from marketcache.data.freshness import FreshnessRecord, utcnow
from marketcache.data.intervals import Interval
from marketcache.data.models import Base, Candle, Freshness, Symbol
from marketcache.data.normalize import normalize_timestamp
from marketcache.data.validation import validate_frame

logger = logging.getLogger(__name__)

# Dialect name -> INSERT builder supporting ON CONFLICT
INSERT_BUILDERS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}

CANDLE_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]
PRICE_FIELDS = ["open", "high", "low", "close", "volume"]


@dataclass(slots=True, frozen=True)
class UpsertResult:
    inserted: int
    replaced: int = 0
    errors: int = 0

    @property
    def stored(self) -> int:
        return self.inserted + self.replaced


@dataclass(slots=True, frozen=True)
class DataAge:
    age_minutes: float
    last_successful_fetch_at: datetime | None
    data_point_count: int


def normalize_symbol(symbol: str) -> str:
    return symbol.strip().upper()


def _to_db(ts) -> datetime:
    """Aware (or naive UTC) timestamp -> naive UTC datetime for storage."""
    ts = pd.Timestamp(ts)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts.to_pydatetime()


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i : i + size]


def empty_candle_frame() -> pd.DataFrame:
    df = pd.DataFrame(columns=CANDLE_COLUMNS)
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return df.astype({col: float for col in PRICE_FIELDS})


class DataStore:
    """Candles, symbols and freshness records behind one SQLAlchemy engine.

    SQLite and PostgreSQL share this class; the only backend-specific piece
    is the ON CONFLICT insert builder, picked from the engine's dialect.
    Writes are serialized by a process-wide lock and each write runs in a
    single transaction.
    """

    def __init__(self, connection_string: str = config.SQLITE_URL, chunk_size: int = config.UPSERT_CHUNK_SIZE):
        self.engine = create_engine(connection_string)
        dialect = self.engine.dialect.name
        if dialect not in INSERT_BUILDERS:
            raise ValueError(f"Unsupported database dialect: {dialect}")
        self._insert = INSERT_BUILDERS[dialect]
        self._write_lock = threading.RLock()
        self.chunk_size = chunk_size

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def init_db(self):
        """Create tables if they don't exist."""
        if self.dialect == "sqlite" and self.engine.url.database not in (None, "", ":memory:"):
            Path(self.engine.url.database).parent.mkdir(parents=True, exist_ok=True)
        Base.metadata.create_all(self.engine)

    def health_check(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning(f"{self.dialect} health check failed: {exc}")
            return False
        return True

    @contextmanager
    def _write(self, operation: str):
        """One locked transaction; storage failures roll back and become StorageError."""
        with self._write_lock:
            try:
                with Session(self.engine) as session, session.begin():
                    yield session
            except SQLAlchemyError as exc:
                logger.error(f"Rolled back {operation}: {exc}")
                raise StorageError(f"{operation} failed: {exc}") from exc

    # --- symbols ---

    def get_or_create_symbol(
        self,
        symbol: str,
        name: str | None = None,
        exchange: str | None = None,
        instrument_type: str | None = None,
    ) -> int:
        symbol = normalize_symbol(symbol)
        with self._write(f"get_or_create_symbol {symbol}") as session:
            row = session.execute(select(Symbol).where(Symbol.symbol == symbol)).scalar_one_or_none()
            if row is None:
                row = Symbol(symbol=symbol, name=name, exchange=exchange, instrument_type=instrument_type)
                session.add(row)
                session.flush()
                logger.info(f"Registered symbol {symbol} (id={row.id})")
            return row.id

    def symbol_id(self, symbol: str) -> int | None:
        with Session(self.engine) as session:
            return session.execute(
                select(Symbol.id).where(Symbol.symbol == normalize_symbol(symbol))
            ).scalar_one_or_none()

    def list_symbols(self) -> pd.DataFrame:
        with Session(self.engine) as session:
            rows = session.execute(select(Symbol).order_by(Symbol.symbol)).scalars().all()
        return pd.DataFrame(
            [
                {"symbol": r.symbol, "name": r.name, "exchange": r.exchange, "type": r.instrument_type}
                for r in rows
            ],
            columns=["symbol", "name", "exchange", "type"],
        )

    # --- candles ---

    def upsert(
        self,
        symbol_id: int,
        interval,
        candles: pd.DataFrame,
        replace_since: datetime | None = None,
    ) -> UpsertResult:
        """Insert or replace candles keyed by (symbol_id, interval, period_start).

        Expects a ``period_start`` column plus OHLCV columns. Invalid rows are
        counted in ``errors`` and skipped. Weekly writes replace every weekly
        row of the symbol; monthly writes replace the month of the latest
        candle, or everything from ``replace_since`` when given.
        """
        interval = Interval.parse(interval)
        if candles.empty:
            return UpsertResult(inserted=0)

        report = validate_frame(candles)
        rows, _ = deduplicate(report.valid)
        if rows.empty:
            return UpsertResult(inserted=0, errors=report.rejected)

        records = [
            {
                "symbol_id": symbol_id,
                "interval": interval.value,
                "period_start": _to_db(row.period_start),
                "open": float(row.open),
                "high": float(row.high),
                "low": float(row.low),
                "close": float(row.close),
                "volume": float(row.volume),
            }
            for row in rows.itertuples(index=False)
        ]
        keys = [r["period_start"] for r in records]

        with self._write(f"upsert {interval.value} for symbol_id={symbol_id}") as session:
            existing = set(
                session.execute(
                    select(Candle.period_start).where(
                        Candle.symbol_id == symbol_id,
                        Candle.interval == interval.value,
                        Candle.period_start.between(min(keys), max(keys)),
                    )
                ).scalars()
            )
            self._clear_for_replace(session, symbol_id, interval, rows, replace_since)
            for chunk in _chunks(records, self.chunk_size):
                stmt = self._insert(Candle).values(chunk)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["symbol_id", "interval", "period_start"],
                    set_={col: stmt.excluded[col] for col in PRICE_FIELDS},
                )
                session.execute(stmt)

        inserted = sum(1 for key in keys if key not in existing)
        result = UpsertResult(inserted=inserted, replaced=len(keys) - inserted, errors=report.rejected)
        logger.info(
            f"Upserted {len(keys)} {interval.value} candles for symbol_id={symbol_id} "
            f"({result.inserted} new, {result.replaced} replaced, {result.errors} rejected)"
        )
        return result

    def _clear_for_replace(self, session, symbol_id, interval, rows, replace_since):
        if interval is Interval.WEEK_1:
            start, end = None, None
        elif interval is Interval.MONTH_1:
            if replace_since is not None:
                start, end = replace_since, None
            else:
                latest = rows["period_start"].max().tz_convert(config.MARKET_TZ)
                month = pd.Timestamp(year=latest.year, month=latest.month, day=1, tz="UTC")
                start, end = month, month + pd.offsets.MonthBegin(1)
        else:
            return 0

        deleted = self._delete(session, symbol_id, interval, start, end)
        if deleted:
            logger.info(f"Cleared {deleted} existing {interval.value} rows for symbol_id={symbol_id}")
        return deleted

    def _delete(self, session, symbol_id, interval, start=None, end=None) -> int:
        stmt = delete(Candle).where(Candle.symbol_id == symbol_id, Candle.interval == interval.value)
        if start is not None:
            stmt = stmt.where(Candle.period_start >= _to_db(start))
        if end is not None:
            stmt = stmt.where(Candle.period_start < _to_db(end))
        return session.execute(stmt).rowcount

    def delete_range(self, symbol_id: int, interval, start: datetime | None = None, end: datetime | None = None) -> int:
        """Delete candles with start <= period_start < end; open bounds when None."""
        interval = Interval.parse(interval)
        with self._write(f"delete_range {interval.value} for symbol_id={symbol_id}") as session:
            return self._delete(session, symbol_id, interval, start, end)

    def query(self, symbol: str, interval, limit: int | None = 1000) -> pd.DataFrame:
        """Most recent ``limit`` candles, oldest first. ``limit=None`` returns all."""
        symbol_id = self.symbol_id(symbol)
        if symbol_id is None:
            return empty_candle_frame()
        return self.query_by_id(symbol_id, interval, limit)

    def query_by_id(self, symbol_id: int, interval, limit: int | None = None) -> pd.DataFrame:
        interval = Interval.parse(interval)
        if limit is not None and limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        # Newest first so the limit keeps the most recent rows, then reverse
        stmt = (
            select(Candle)
            .where(Candle.symbol_id == symbol_id, Candle.interval == interval.value)
            .order_by(Candle.period_start.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with Session(self.engine) as session:
            rows = session.execute(stmt).scalars().all()

        if not rows:
            return empty_candle_frame()
        df = pd.DataFrame(
            [
                {
                    "timestamp": r.period_start,
                    "open": r.open,
                    "high": r.high,
                    "low": r.low,
                    "close": r.close,
                    "volume": r.volume,
                }
                for r in reversed(rows)
            ],
            columns=CANDLE_COLUMNS,
        )
        df["timestamp"] = pd.to_datetime(df["timestamp"]).dt.tz_localize("UTC")
        return df

    def last_period_start(self, symbol_id: int, interval) -> datetime | None:
        interval = Interval.parse(interval)
        with Session(self.engine) as session:
            value = session.execute(
                select(func.max(Candle.period_start)).where(
                    Candle.symbol_id == symbol_id, Candle.interval == interval.value
                )
            ).scalar_one_or_none()
        return _from_db(value)

    def period_starts(self, symbol_id: int, interval, before: datetime | None = None) -> set[datetime]:
        interval = Interval.parse(interval)
        stmt = select(Candle.period_start).where(
            Candle.symbol_id == symbol_id, Candle.interval == interval.value
        )
        if before is not None:
            stmt = stmt.where(Candle.period_start < _to_db(before))
        with Session(self.engine) as session:
            return {_from_db(value) for value in session.execute(stmt).scalars()}

    def count_candles(self, symbol_id: int, interval=None) -> int:
        stmt = select(func.count(Candle.id)).where(Candle.symbol_id == symbol_id)
        if interval is not None:
            stmt = stmt.where(Candle.interval == Interval.parse(interval).value)
        with Session(self.engine) as session:
            return session.execute(stmt).scalar_one()

    def renormalize(self, symbol_id: int, interval) -> int:
        """Collapse stored rows that share a canonical period start.

        The earliest-inserted row of each period is kept and rewritten to the
        canonical key. Returns the number of rows removed.
        """
        interval = Interval.parse(interval)
        with self._write(f"renormalize {interval.value} for symbol_id={symbol_id}") as session:
            rows = session.execute(
                select(Candle)
                .where(Candle.symbol_id == symbol_id, Candle.interval == interval.value)
                .order_by(Candle.id)
            ).scalars().all()

            kept = {}
            for row in rows:
                key = _to_db(normalize_timestamp(_from_db(row.period_start), interval))
                kept.setdefault(key, row)
            rewritten = sum(1 for key, row in kept.items() if row.period_start != key)
            removed = len(rows) - len(kept)
            if not removed and not rewritten:
                return 0

            records = [
                {
                    "symbol_id": symbol_id,
                    "interval": interval.value,
                    "period_start": key,
                    "open": row.open,
                    "high": row.high,
                    "low": row.low,
                    "close": row.close,
                    "volume": row.volume,
                }
                for key, row in kept.items()
            ]
            self._delete(session, symbol_id, interval)
            for chunk in _chunks(records, self.chunk_size):
                session.execute(self._insert(Candle).values(chunk))

        logger.info(
            f"Renormalized {interval.value} for symbol_id={symbol_id}: "
            f"{removed} duplicates removed, {rewritten} keys rewritten"
        )
        return removed

    # --- freshness ---

    def get_freshness(self, symbol_id: int, interval) -> FreshnessRecord:
        interval = Interval.parse(interval)
        with Session(self.engine) as session:
            row = session.execute(
                select(Freshness).where(Freshness.symbol_id == symbol_id, Freshness.interval == interval.value)
            ).scalar_one_or_none()
        if row is None:
            return FreshnessRecord()
        return FreshnessRecord(
            last_fetched_at=_from_db(row.last_fetched_at),
            last_successful_fetch_at=_from_db(row.last_successful_fetch_at),
            fetch_count=row.fetch_count,
            error_count=row.error_count,
            last_error=row.last_error,
        )

    def record_freshness(self, symbol_id: int, interval, record: FreshnessRecord):
        interval = Interval.parse(interval)
        values = {
            "last_fetched_at": _to_db(record.last_fetched_at) if record.last_fetched_at else None,
            "last_successful_fetch_at": (
                _to_db(record.last_successful_fetch_at) if record.last_successful_fetch_at else None
            ),
            "fetch_count": record.fetch_count,
            "error_count": record.error_count,
            "last_error": record.last_error,
        }
        stmt = self._insert(Freshness).values(symbol_id=symbol_id, interval=interval.value, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["symbol_id", "interval"], set_=values)
        with self._write(f"record_freshness {interval.value} for symbol_id={symbol_id}") as session:
            session.execute(stmt)

    def age(self, symbol: str, interval, now: datetime | None = None) -> DataAge:
        symbol_id = self.symbol_id(symbol)
        if symbol_id is None:
            return DataAge(age_minutes=math.inf, last_successful_fetch_at=None, data_point_count=0)
        record = self.get_freshness(symbol_id, interval)
        return DataAge(
            age_minutes=record.age_minutes(now or utcnow()),
            last_successful_fetch_at=record.last_successful_fetch_at,
            data_point_count=self.count_candles(symbol_id, interval),
        )

    def purge(self, symbol: str) -> int:
        """Delete a symbol with its candles and freshness records. Returns deleted candle rows."""
        symbol = normalize_symbol(symbol)
        with self._write(f"purge {symbol}") as session:
            symbol_id = session.execute(select(Symbol.id).where(Symbol.symbol == symbol)).scalar_one_or_none()
            if symbol_id is None:
                logger.info(f"Symbol {symbol} not found, nothing to purge")
                return 0
            deleted = session.execute(delete(Candle).where(Candle.symbol_id == symbol_id)).rowcount
            session.execute(delete(Freshness).where(Freshness.symbol_id == symbol_id))
            session.execute(delete(Symbol).where(Symbol.id == symbol_id))
        logger.info(f"Purged {symbol}: {deleted} candle rows deleted")
        return deleted


def resolve_database_url(connection_string: str | None = None, db_type: str | None = None) -> str:
    """Explicit URL, else MARKETCACHE_DATABASE_URL, else the URL for the configured backend type."""
    if connection_string:
        return connection_string
    if db_type is None and config.DATABASE_URL:
        return config.DATABASE_URL
    db_type = (db_type or config.DB_TYPE).lower()
    if db_type in ("postgres", "postgresql"):
        return config.POSTGRES_URL
    if db_type in ("sqlite", "sqlite3"):
        return config.SQLITE_URL
    raise ValueError(f"Unknown database type: {db_type}")


def create_store(connection_string: str | None = None, db_type: str | None = None, init: bool = True) -> DataStore:
    url = resolve_database_url(connection_string, db_type)
    store = DataStore(url)
    logger.info(f"Using {store.dialect} store")
    if init:
        store.init_db()
    return store
