"""
Bring a stored candle series up to date with the upstream source.

``SyncCoordinator.ensure_fresh`` loads the stored series, decides how much
history to request, merges and persists the result. Storage and upstream
failures never escape: they come back in :class:`SyncResult` next to the best
series available locally.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable
from typing import NamedTuple
from typing import Optional

import numpy as np

from klinecache.candles import CandleSeries
from klinecache.candles import empty_candles
from klinecache.exceptions import BaseKlineCacheException
from klinecache.exceptions import NetworkError
from klinecache.exceptions import UpstreamError
from klinecache.merger import find_first_gap
from klinecache.merger import merge_candles
from klinecache.periods import normalize_period
from klinecache.periods import period_to_ms
from klinecache.store import CandleStore
from klinecache.upstream import CandleSource
from klinecache.upstream import LastPriceSource

log = logging.getLogger(__name__)


def _utc_now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SyncConfig:
    limit: int
    default_window: Optional[int] = None
    slack: int = 2

    def __post_init__(self) -> None:
        if self.limit < 0:
            raise ValueError(f"limit must be >= 0, got {self.limit}")
        if self.slack < 1:
            raise ValueError(f"slack must be >= 1, got {self.slack}")
        if self.default_window is not None and self.default_window < 1:
            raise ValueError(f"default_window must be >= 1, got {self.default_window}")

    @property
    def window(self) -> int:
        """Periods to pull when nothing is stored yet."""
        return max(self.default_window or 0, self.limit, 1)


class SyncResult(NamedTuple):
    series: CandleSeries
    error: Optional[BaseKlineCacheException] = None
    fetches: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncCoordinator:
    def __init__(
        self,
        store: CandleStore,
        source: CandleSource,
        *,
        price_source: Optional[LastPriceSource] = None,
        default_window: Optional[int] = None,
        slack: int = 2,
        request_timeout: Optional[float] = None,
        clock: Callable[[], int] = _utc_now_ms,
    ) -> None:
        self.store = store
        self.source = source
        self.price_source = price_source
        self.default_window = default_window
        self.slack = int(slack)
        self.request_timeout = request_timeout
        self.clock = clock

    def config_for(self, limit: int) -> SyncConfig:
        return SyncConfig(limit=int(limit), default_window=self.default_window, slack=self.slack)

    async def _fetch(
        self, symbol: str, period: str, since_ms: int, until_ms: int, limit: int
    ) -> np.ndarray:
        log.debug(
            "event=upstream_fetch symbol=%s period=%s since=%d until=%d limit=%d",
            symbol,
            period,
            since_ms,
            until_ms,
            limit,
        )
        call = self.source.fetch_candles(symbol, period, since_ms, until_ms, limit)
        try:
            if self.request_timeout is None:
                return await call
            return await asyncio.wait_for(call, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise NetworkError(
                symbol, period, f"timed out after {self.request_timeout}s"
            ) from None

    async def _save(self, series: CandleSeries) -> Optional[BaseKlineCacheException]:
        return await asyncio.to_thread(self.store.save, series.symbol, series.period, series.candles)

    def _window_start(self, now_ms: int, step: int, periods: int) -> int:
        return (now_ms // step) * step - (max(periods, 1) - 1) * step

    async def ensure_fresh(self, symbol: str, period: str, limit: int) -> SyncResult:
        period = normalize_period(period)
        config = self.config_for(limit)
        step = period_to_ms(period)
        now = int(self.clock())

        loaded = await asyncio.to_thread(self.store.load, symbol, period)
        error: Optional[BaseKlineCacheException] = loaded.error
        if error is not None:
            log.warning(
                "event=sync_load_failed symbol=%s period=%s error=%s; resyncing from upstream",
                symbol,
                period,
                error,
            )
        existing = CandleSeries(symbol, period, loaded.candles)

        if len(existing) == 0:
            since = self._window_start(now, step, config.window)
            try:
                fetched = await self._fetch(symbol, period, since, now, config.window)
            except UpstreamError as exc:
                log.warning("event=sync_initial_failed symbol=%s period=%s error=%s", symbol, period, exc)
                return SyncResult(existing, exc, 1)
            merged = merge_candles(empty_candles(), fetched, now_ms=now, symbol=symbol, period=period)
            series = CandleSeries(symbol, period, merged.candles)
            save_error = await self._save(series)
            log.info(
                "event=sync_initial symbol=%s period=%s rows=%d dropped=%d",
                symbol,
                period,
                len(series),
                merged.dropped,
            )
            return SyncResult(series, save_error or error, 1)

        last_ts = int(existing.last_ts)
        elapsed = max(0, math.ceil((now - last_ts) / step))
        gap = find_first_gap(existing.candles, period)

        if gap is None and now < last_ts + step and len(existing) >= config.limit:
            series = await self._refresh_open_bar(existing, now)
            if series is not None:
                log.debug(
                    "event=sync_fresh symbol=%s period=%s rows=%d last_ts=%d",
                    symbol,
                    period,
                    len(series),
                    last_ts,
                )
                return SyncResult(series, error, 0)

        if gap is not None:
            since = gap.start_ms - step
            periods_needed = math.ceil((now - since) / step) + config.slack
            log.info(
                "event=sync_gap symbol=%s period=%s after=%s before=%s missing_days=%d",
                symbol,
                period,
                gap.after_date,
                gap.before_date,
                gap.missing_days,
            )
        else:
            periods_needed = elapsed + config.slack
            since = min(self._window_start(now, step, periods_needed), last_ts)

        fetches = 1
        try:
            fetched = await self._fetch(symbol, period, since, now, periods_needed)
        except UpstreamError as exc:
            log.warning(
                "event=sync_fetch_failed symbol=%s period=%s error=%s; serving %d stored candles",
                symbol,
                period,
                exc,
                len(existing),
            )
            return SyncResult(existing, exc, fetches)

        merged = merge_candles(existing.candles, fetched, now_ms=now, symbol=symbol, period=period)
        series = CandleSeries(symbol, period, merged.candles)
        error = await self._save(series) or error
        log.info(
            "event=sync_incremental symbol=%s period=%s requested=%d inserted=%d overwritten=%d rows=%d",
            symbol,
            period,
            periods_needed,
            merged.inserted,
            merged.overwritten,
            len(series),
        )

        if len(series) < config.limit:
            fetches += 1
            since = self._window_start(now, step, config.limit)
            try:
                fetched = await self._fetch(symbol, period, since, now, config.limit)
            except UpstreamError as exc:
                log.warning(
                    "event=sync_backfill_failed symbol=%s period=%s error=%s", symbol, period, exc
                )
                return SyncResult(series, exc, fetches)
            merged = merge_candles(series.candles, fetched, now_ms=now, symbol=symbol, period=period)
            series = CandleSeries(symbol, period, merged.candles)
            error = await self._save(series) or error
            log.info(
                "event=sync_backfill symbol=%s period=%s limit=%d inserted=%d rows=%d",
                symbol,
                period,
                config.limit,
                merged.inserted,
                len(series),
            )
        return SyncResult(series, error, fetches)

    async def _refresh_open_bar(self, series: CandleSeries, now_ms: int) -> Optional[CandleSeries]:
        """Patch the still-open last bar with the latest traded price.

        Returns None when no live price is available; the caller then
        refetches the open bar from upstream instead of serving it frozen.
        """
        if self.price_source is None or len(series) == 0:
            return None
        try:
            price = float(await self.price_source.fetch_last_price(series.symbol))
        except UpstreamError as exc:
            log.warning(
                "event=last_price_failed symbol=%s error=%s; refetching open bar", series.symbol, exc
            )
            return None
        if not math.isfinite(price) or price <= 0:
            log.warning("event=last_price_invalid symbol=%s price=%s", series.symbol, price)
            return None
        candles = series.candles.copy()
        candles["c"][-1] = price
        candles["h"][-1] = max(float(candles["h"][-1]), price)
        candles["l"][-1] = min(float(candles["l"][-1]), price)
        updated = CandleSeries(series.symbol, series.period, candles)
        save_error = await self._save(updated)
        if save_error is not None:
            log.warning("event=last_price_persist_failed symbol=%s error=%s", series.symbol, save_error)
        log.debug("event=open_bar_refreshed symbol=%s period=%s close=%s", series.symbol, series.period, price)
        return updated
