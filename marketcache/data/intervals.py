"""Supported intervals and the rules attached to each of them."""

import enum
from dataclasses import dataclass
from datetime import timedelta


class IntervalClass(str, enum.Enum):
    INTRADAY = "intraday"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Interval(str, enum.Enum):
    MIN_1 = "1min"
    MIN_5 = "5min"
    MIN_15 = "15min"
    MIN_30 = "30min"
    MIN_60 = "60min"
    DAY_1 = "1day"
    WEEK_1 = "1week"
    MONTH_1 = "1month"

    @classmethod
    def parse(cls, value: "str | Interval") -> "Interval":
        """Accept canonical names ("1day") as well as provider codes ("1d")."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        try:
            return cls(key)
        except ValueError:
            pass
        for interval, spec in INTERVAL_CATALOG.items():
            if spec.provider_code == key:
                return interval
        raise ValueError(f"Unsupported interval: {value!r}")

    @property
    def spec(self) -> "IntervalSpec":
        return INTERVAL_CATALOG[self]

    @property
    def interval_class(self) -> IntervalClass:
        return INTERVAL_CATALOG[self].interval_class

    @property
    def provider_code(self) -> str:
        return INTERVAL_CATALOG[self].provider_code


@dataclass(frozen=True)
class IntervalSpec:
    interval_class: IntervalClass
    provider_code: str
    # Distance between consecutive periods; None where periods vary in length
    step: timedelta | None
    # How far back a full fetch reaches; None means everything the source has
    retention: timedelta | None
    # Maximum age of the last successful fetch before a refresh is due
    staleness: timedelta


_INTRADAY_STALENESS = timedelta(minutes=2)

INTERVAL_CATALOG: dict[Interval, IntervalSpec] = {
    Interval.MIN_1: IntervalSpec(
        IntervalClass.INTRADAY, "1m", timedelta(minutes=1), timedelta(days=7), _INTRADAY_STALENESS
    ),
    Interval.MIN_5: IntervalSpec(
        IntervalClass.INTRADAY, "5m", timedelta(minutes=5), timedelta(days=59), _INTRADAY_STALENESS
    ),
    Interval.MIN_15: IntervalSpec(
        IntervalClass.INTRADAY, "15m", timedelta(minutes=15), timedelta(days=59), _INTRADAY_STALENESS
    ),
    Interval.MIN_30: IntervalSpec(
        IntervalClass.INTRADAY, "30m", timedelta(minutes=30), timedelta(days=59), _INTRADAY_STALENESS
    ),
    Interval.MIN_60: IntervalSpec(
        IntervalClass.INTRADAY, "1h", timedelta(hours=1), timedelta(days=729), _INTRADAY_STALENESS
    ),
    Interval.DAY_1: IntervalSpec(
        IntervalClass.DAILY, "1d", timedelta(days=1), None, timedelta(hours=6)
    ),
    Interval.WEEK_1: IntervalSpec(
        IntervalClass.WEEKLY, "1wk", timedelta(weeks=1), None, timedelta(hours=24)
    ),
    Interval.MONTH_1: IntervalSpec(
        IntervalClass.MONTHLY, "1mo", None, None, timedelta(hours=24)
    ),
}


def parse_intervals(values) -> list[Interval]:
    """Parse a list of interval names, dropping repeats but keeping order."""
    parsed = []
    for value in values:
        interval = Interval.parse(value)
        if interval not in parsed:
            parsed.append(interval)
    return parsed
