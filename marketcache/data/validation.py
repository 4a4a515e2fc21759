"""OHLC sample validation.

Bad rows are reported as issues and dropped; they never abort a batch.
"""

import logging
from collections import Counter
from dataclasses import dataclass

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

PRICE_COLUMNS = ["open", "high", "low", "close"]


@dataclass(slots=True, frozen=True)
class ValidationIssue:
    """One rejected row: its position in the batch and why it was rejected."""

    index: int
    code: str
    message: str


@dataclass(slots=True, frozen=True)
class ValidationReport:
    valid: pd.DataFrame
    issues: tuple[ValidationIssue, ...]

    @property
    def rejected(self) -> int:
        return len(self.issues)

    def reasons(self) -> Counter:
        return Counter(issue.code for issue in self.issues)


def coerce_prices(df: pd.DataFrame) -> pd.DataFrame:
    """Coerce OHLC columns to floats (non-numeric becomes NaN) and fill volume."""
    out = df.copy()
    for col in PRICE_COLUMNS:
        out[col] = pd.to_numeric(out[col], errors="coerce").astype(float)
    if "volume" not in out.columns:
        out["volume"] = 0.0
    out["volume"] = pd.to_numeric(out["volume"], errors="coerce").fillna(0.0).astype(float)
    return out


def rejection_codes(df: pd.DataFrame) -> pd.Series:
    """Per-row rejection code, or None for rows that pass.

    Checks run in order, so a row gets the first code that applies.
    """
    prices = df[PRICE_COLUMNS].to_numpy(dtype=float)
    if "timestamp" in df.columns:
        missing_ts = df["timestamp"].isna().to_numpy()
    else:
        missing_ts = np.zeros(len(df), dtype=bool)
    non_finite = ~np.isfinite(prices).all(axis=1)
    with np.errstate(invalid="ignore"):
        high_below_low = df["high"].to_numpy() < df["low"].to_numpy()
        negative = (prices < 0).any(axis=1)

    codes = np.select(
        [missing_ts, non_finite, high_below_low, negative],
        ["MISSING_TIMESTAMP", "NON_FINITE_PRICE", "HIGH_BELOW_LOW", "NEGATIVE_PRICE"],
        default="",
    )
    return pd.Series([code or None for code in codes], index=df.index, dtype=object)


_MESSAGES = {
    "MISSING_TIMESTAMP": "timestamp is missing or unparseable",
    "NON_FINITE_PRICE": "open/high/low/close must be finite numbers",
    "HIGH_BELOW_LOW": "high is below low",
    "NEGATIVE_PRICE": "prices must not be negative",
}


def validate_frame(df: pd.DataFrame) -> ValidationReport:
    """Split a sample frame into valid rows and rejection issues."""
    if df.empty:
        return ValidationReport(valid=coerce_prices(df), issues=())

    coerced = coerce_prices(df)
    codes = rejection_codes(coerced)
    rejected_mask = codes.notna().to_numpy()

    issues = tuple(
        ValidationIssue(index=int(pos), code=codes.iloc[pos], message=_MESSAGES[codes.iloc[pos]])
        for pos in np.flatnonzero(rejected_mask)
    )
    if issues:
        summary = ", ".join(f"{code}={count}" for code, count in Counter(i.code for i in issues).items())
        logger.warning(f"Rejected {len(issues)} of {len(df)} samples ({summary})")

    return ValidationReport(valid=coerced[~rejected_mask], issues=issues)
