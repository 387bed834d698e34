"""
Upstream market-data collaborators.

The engine only depends on the :class:`CandleSource` protocol. The bundled
:class:`CCXTCandleSource` binds it to any ccxt async exchange, translating ccxt
exceptions into the :mod:`klinecache.exceptions` taxonomy, bounding every
request with a timeout and retrying transient failures with backoff.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Protocol

import ccxt.async_support as ccxt_async
import numpy as np

from klinecache.candles import candles_from_rows
from klinecache.candles import dedupe_sorted
from klinecache.candles import empty_candles
from klinecache.exceptions import InvalidSymbol
from klinecache.exceptions import NetworkError
from klinecache.exceptions import RateLimited
from klinecache.exceptions import UpstreamError
from klinecache.periods import normalize_period
from klinecache.periods import period_to_ms

log = logging.getLogger(__name__)


class CandleSource(Protocol):
    async def fetch_candles(
        self,
        symbol: str,
        period: str,
        since_ms: int,
        until_ms: int,
        limit: int,
    ) -> np.ndarray:
        """Return candles with ``since_ms <= ts <= until_ms``, ascending, at most ``limit``.

        Raises :class:`~klinecache.exceptions.UpstreamError` subclasses.
        """
        ...


class LastPriceSource(Protocol):
    async def fetch_last_price(self, symbol: str) -> float:
        ...


def translate_ccxt_error(exc: BaseException, symbol: str, period: str) -> UpstreamError:
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, (ccxt_async.RateLimitExceeded, ccxt_async.DDoSProtection)):
        return RateLimited(symbol, period, str(exc))
    if isinstance(exc, ccxt_async.BadSymbol):
        return InvalidSymbol(symbol, period, str(exc))
    if isinstance(exc, (ccxt_async.NetworkError, asyncio.TimeoutError, OSError)):
        return NetworkError(symbol, period, str(exc) or type(exc).__name__)
    return UpstreamError(symbol, period, f"{type(exc).__name__}: {exc}")


class CCXTCandleSource:
    """Fetch candles through a ccxt async exchange instance."""

    def __init__(
        self,
        exchange: Any,
        *,
        timeout: float = 10.0,
        max_retries: int = 3,
        page_limit: int = 1000,
        backoff_initial: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.exchange = exchange
        self.timeout = float(timeout)
        self.max_retries = max(0, int(max_retries))
        self.page_limit = max(1, int(page_limit))
        self.backoff_initial = float(backoff_initial)
        self._sleep = sleep

    @classmethod
    def from_exchange_id(cls, exchange_id: str, **kwargs) -> CCXTCandleSource:
        try:
            exchange_class = getattr(ccxt_async, exchange_id)
        except AttributeError:
            raise ValueError(f"Unknown ccxt exchange {exchange_id!r}") from None
        return cls(exchange_class({"enableRateLimit": True}), **kwargs)

    @property
    def exchange_id(self) -> str:
        return str(getattr(self.exchange, "id", "unknown"))

    async def close(self) -> None:
        close = getattr(self.exchange, "close", None)
        if close is not None:
            await close()

    async def _call(self, factory: Callable[[], Awaitable[Any]], symbol: str, period: str) -> Any:
        backoff = self.backoff_initial
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                err = translate_ccxt_error(exc, symbol, period)
                if not err.retryable or attempt > self.max_retries:
                    log.warning(
                        "event=ccxt_request_failed exchange=%s symbol=%s period=%s attempt=%d error=%s",
                        self.exchange_id,
                        symbol,
                        period,
                        attempt,
                        err,
                    )
                    raise err from exc
                log.debug(
                    "event=ccxt_request_retry exchange=%s symbol=%s period=%s attempt=%d backoff=%.2f error=%s",
                    self.exchange_id,
                    symbol,
                    period,
                    attempt,
                    backoff,
                    err,
                )
                await self._sleep(backoff)
                backoff *= 2

    async def fetch_candles(
        self,
        symbol: str,
        period: str,
        since_ms: int,
        until_ms: int,
        limit: int,
    ) -> np.ndarray:
        tf = normalize_period(period)
        step = period_to_ms(tf)
        since = int(since_ms)
        until = int(until_ms)
        remaining = int(limit)
        pages = []
        while since <= until and remaining > 0:
            page_size = min(self.page_limit, remaining)
            cursor = since
            rows = await self._call(
                lambda: self.exchange.fetch_ohlcv(symbol, timeframe=tf, since=cursor, limit=page_size),
                symbol,
                tf,
            )
            arr = candles_from_rows(rows or [])
            arr = arr[(arr["ts"] >= since) & (arr["ts"] <= until)]
            log.debug(
                "event=ccxt_fetch_ohlcv_ok exchange=%s symbol=%s period=%s since=%d rows=%d",
                self.exchange_id,
                symbol,
                tf,
                since,
                arr.shape[0],
            )
            if arr.size == 0:
                break
            pages.append(arr)
            remaining -= int(arr.shape[0])
            new_since = int(arr[-1]["ts"]) + step
            if new_since <= since or arr.shape[0] < page_size:
                break
            since = new_since
        if not pages:
            return empty_candles()
        out = dedupe_sorted(np.concatenate(pages))
        if out.shape[0] > limit:
            out = out[-limit:]
        return out

    async def fetch_last_price(self, symbol: str) -> float:
        ticker = await self._call(lambda: self.exchange.fetch_ticker(symbol), symbol, "ticker")
        try:
            return float(ticker["last"])
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamError(symbol, "ticker", f"malformed ticker: {exc}") from exc
