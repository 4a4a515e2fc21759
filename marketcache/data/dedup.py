import logging

import pandas as pd

logger = logging.getLogger(__name__)


def deduplicate(df: pd.DataFrame, key: str = "period_start") -> tuple[pd.DataFrame, int]:
    """Keep the first row seen for each canonical period.

    Row order is the source order, so the result is deterministic for a
    given batch. Returns the filtered frame and the number of dropped rows.
    """
    if df.empty:
        return df, 0
    unique = df.drop_duplicates(subset=key, keep="first")
    dropped = len(df) - len(unique)
    if dropped:
        logger.info(f"Filtered {dropped} duplicate rows sharing a period start")
    return unique, dropped
