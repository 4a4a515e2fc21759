"""Exceptions raised by the ingestion and storage layers."""


class MarketCacheError(Exception):
    """Base class for engine errors."""


class TransientSourceError(MarketCacheError):
    """The quote source failed (network, rate limit, malformed response).

    Fails the current (symbol, interval) unit only; the caller decides
    whether to retry.
    """

    def __init__(self, symbol: str, interval_code: str, message: str):
        self.symbol = symbol
        self.interval_code = interval_code
        super().__init__(f"{symbol}@{interval_code}: {message}")


class StorageError(MarketCacheError):
    """A store transaction failed and was rolled back."""
