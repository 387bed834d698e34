from __future__ import annotations


class BaseKlineCacheException(Exception):
    """
    Base class for klinecache exceptions
    """


class ConfigError(BaseKlineCacheException):
    """
    Raised when a configuration file cannot be read or validated
    """


class StorageError(BaseKlineCacheException):
    """
    Disk read, write or serialization failure.

    The last good on-disk copy of the affected record stays authoritative.
    """

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path

    def __str__(self) -> str:
        msg = super().__str__()
        if self.path:
            return f"{msg} (path: {self.path})"
        return msg


class UpstreamError(BaseKlineCacheException):
    """
    The remote market-data source failed to deliver candles
    """

    retryable: bool = True

    def __init__(self, symbol: str, period: str, msg: str | None = None):
        super().__init__(symbol, period, msg)
        self.symbol = symbol
        self.period = period
        self.msg = msg

    def __str__(self) -> str:
        return f"{type(self).__name__} fetching {self.symbol} {self.period}: {self.msg}"


class RateLimited(UpstreamError):
    """
    The upstream rejected the request because of rate limiting
    """


class NetworkError(UpstreamError):
    """
    Transport failure or timeout talking to the upstream
    """


class InvalidSymbol(UpstreamError):
    """
    The upstream does not know the requested symbol
    """

    retryable = False


class DataIntegrityError(BaseKlineCacheException):
    """
    A fetched candle failed basic OHLC sanity checks
    """
