"""Quote source contract and the yfinance-backed adapter."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import pandas as pd
import yfinance as yf

from marketcache.data.config import SOURCE_TIMEOUT_SECONDS
from marketcache.data.errors import TransientSourceError

logger = logging.getLogger(__name__)

SAMPLE_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


@dataclass(frozen=True)
class RawSample:
    """One bar as the source reports it. ``timestamp`` is in epoch seconds."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float | None = None


class QuoteSource(Protocol):
    def fetch(
        self,
        symbol: str,
        interval_code: str,
        start: datetime,
        end: datetime,
    ) -> list[RawSample]:
        """Return the bars in [start, end], oldest first.

        Raises TransientSourceError on network, rate-limit or response errors.
        """
        ...


class YahooQuoteSource:
    """Quote source backed by yfinance's per-ticker history endpoint."""

    def __init__(self, timeout: float = SOURCE_TIMEOUT_SECONDS):
        self.timeout = timeout

    def fetch(
        self,
        symbol: str,
        interval_code: str,
        start: datetime,
        end: datetime,
    ) -> list[RawSample]:
        logger.info(
            f"Fetching {symbol}@{interval_code} from Yahoo Finance, "
            f"{start.date().isoformat()} to {end.date().isoformat()}"
        )
        try:
            df = yf.Ticker(symbol).history(
                start=start,
                end=end,
                interval=interval_code,
                auto_adjust=False,
                actions=False,
                prepost=False,
                raise_errors=True,
                timeout=self.timeout,
            )
            samples = history_to_samples(df)
        except Exception as exc:
            raise TransientSourceError(symbol, interval_code, str(exc)) from exc

        logger.info(f"Retrieved {len(samples)} bars for {symbol}@{interval_code}")
        return samples


def history_to_samples(df: pd.DataFrame) -> list[RawSample]:
    """Convert a yfinance history frame to raw samples.

    Rows where every price is missing are dropped, as yfinance pads gaps
    with NaN rows. Anything else is passed through for the validator to
    judge.
    """
    if df is None or df.empty:
        return []

    # Newer yfinance releases may return (field, ticker) column pairs
    if isinstance(df.columns, pd.MultiIndex):
        df = df.droplevel(1, axis=1)
    df = df.rename(columns=str.lower)
    missing = [col for col in ("open", "high", "low", "close") if col not in df.columns]
    if missing:
        raise ValueError(f"Malformed history response, missing columns: {missing}")
    df = df.dropna(subset=["open", "high", "low", "close"], how="all")

    index = df.index
    if index.tz is None:
        index = index.tz_localize("UTC")

    samples = []
    for ts, row in zip(index, df.itertuples(index=False)):
        volume = getattr(row, "volume", None)
        samples.append(
            RawSample(
                timestamp=int(ts.timestamp()),
                open=row.open,
                high=row.high,
                low=row.low,
                close=row.close,
                volume=None if volume is None or pd.isna(volume) else float(volume),
            )
        )
    return samples


def samples_to_frame(samples: list[RawSample]) -> pd.DataFrame:
    """Build a sample frame with a UTC ``timestamp`` column, in source order."""
    df = pd.DataFrame(
        [
            {
                "timestamp": s.timestamp,
                "open": s.open,
                "high": s.high,
                "low": s.low,
                "close": s.close,
                "volume": s.volume,
            }
            for s in samples
        ],
        columns=SAMPLE_COLUMNS,
    )
    # Missing or non-numeric timestamps become NaT and are rejected by the validator
    df["timestamp"] = pd.to_datetime(pd.to_numeric(df["timestamp"], errors="coerce"), unit="s", utc=True)
    return df
