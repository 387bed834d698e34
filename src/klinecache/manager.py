"""
Read API for candle consumers.

:class:`KlineCacheManager` wires a :class:`~klinecache.store.CandleStore`,
:class:`~klinecache.sync.SyncCoordinator`, :class:`~klinecache.cache.TTLCache`
and :class:`~klinecache.batch.BatchScheduler` together from a
:class:`~klinecache.config.KlineCacheConfig`. Everything a consumer receives
is an independent copy it may modify freely.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from klinecache.batch import BatchScheduler
from klinecache.batch import PeriodicRefresher
from klinecache.batch import ProgressCallback
from klinecache.cache import CacheStats
from klinecache.cache import TTLCache
from klinecache.candles import CandleSeries
from klinecache.config import KlineCacheConfig
from klinecache.store import CandleStore
from klinecache.store import RecordInfo
from klinecache.sync import SyncCoordinator
from klinecache.sync import SyncResult
from klinecache.upstream import CandleSource
from klinecache.upstream import CCXTCandleSource
from klinecache.upstream import LastPriceSource
from klinecache.utils.logs import setup_cli_logging
from klinecache.utils.logs import setup_logfile_logging

log = logging.getLogger(__name__)


def _utc_now_ms() -> int:
    return int(time.time() * 1000)


def setup_logging(config: KlineCacheConfig) -> None:
    """
    Configure console logging, and file logging when ``log_file`` is set
    """
    setup_cli_logging(config.log_level)
    if config.log_file is not None:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        setup_logfile_logging(str(config.log_file), config.log_level)


class KlineCacheManager:
    def __init__(
        self,
        source: CandleSource,
        *,
        config: Optional[KlineCacheConfig] = None,
        price_source: Optional[LastPriceSource] = None,
        clock: Callable[[], int] = _utc_now_ms,
    ) -> None:
        self.config = config or KlineCacheConfig()
        self.source = source
        self.store = CandleStore(self.config.storage_root, clock=clock)
        self.coordinator = SyncCoordinator(
            self.store,
            source,
            price_source=price_source,
            default_window=self.config.default_window,
            slack=self.config.slack,
            request_timeout=self._sync_timeout(source),
            clock=clock,
        )
        self.cache = TTLCache(self.coordinator, ttl_seconds=self.config.ttl_seconds, clock=clock)
        self.scheduler = BatchScheduler(self.cache, max_concurrency=self.config.max_concurrency)
        self._refreshers: List[PeriodicRefresher] = []

    def _sync_timeout(self, source: CandleSource) -> Optional[float]:
        """
        Outer deadline for one upstream fetch.

        A ccxt source already bounds every attempt with ``request_timeout`` and
        retries on its own, so it only gets an outer deadline when
        ``sync_timeout`` is set explicitly.
        """
        if self.config.sync_timeout is not None:
            return self.config.sync_timeout
        if isinstance(source, CCXTCandleSource):
            return None
        return self.config.request_timeout

    @classmethod
    def from_config(
        cls,
        config: KlineCacheConfig,
        *,
        source: Optional[CandleSource] = None,
        price_source: Optional[LastPriceSource] = None,
        clock: Callable[[], int] = _utc_now_ms,
    ) -> KlineCacheManager:
        """
        Build a manager, creating a ccxt-backed source from ``config.exchange``
        when no ``source`` is given. That source also serves last prices.
        """
        if source is None:
            if not config.exchange:
                raise ValueError("either a source or config.exchange is required")
            ccxt_source = CCXTCandleSource.from_exchange_id(
                config.exchange,
                timeout=config.request_timeout,
                max_retries=config.max_retries,
            )
            source = ccxt_source
            if price_source is None:
                price_source = ccxt_source
        return cls(source, config=config, price_source=price_source, clock=clock)

    async def get_candles(self, symbol: str, period: str, limit: int) -> SyncResult:
        """
        Return up to ``limit`` of the newest candles for ``(symbol, period)``.

        On upstream or storage failure the result carries the error next to
        whatever stale series is available.
        """
        result = await self.cache.get_or_sync(symbol, period, limit)
        return result._replace(series=result.series.tail(limit))

    async def get_candles_many(
        self,
        symbols: Iterable[str],
        period: str,
        limit: int,
        *,
        max_concurrency: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, CandleSeries]:
        results = await self.scheduler.run_batch(
            symbols, period, limit, max_concurrency=max_concurrency, progress=progress
        )
        return {sym: series.tail(limit) for sym, series in results.items()}

    def invalidate(self, symbol: str, period: str) -> bool:
        return self.cache.invalidate(symbol, period)

    def clear_cache(self, period: Optional[str] = None, *, delete_stored: bool = False) -> int:
        """
        Drop cached entries, optionally for one period only.

        With ``delete_stored`` the period's records are removed from disk as
        well; that requires a ``period``.
        """
        if delete_stored and period is None:
            raise ValueError("delete_stored requires a period")
        removed = self.cache.clear(period)
        if delete_stored:
            self.store.delete_period(period)
        return removed

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    async def storage_info(self, period: Optional[str] = None) -> List[RecordInfo]:
        return await asyncio.to_thread(self.store.list_records, period)

    async def cleanup(self, max_age_ms: int) -> int:
        """Delete stored records not updated within ``max_age_ms``."""
        return await asyncio.to_thread(self.store.cleanup_older_than, max_age_ms)

    def start_refresher(
        self,
        symbols: Callable[[], Iterable[str]],
        period: str,
        limit: int,
        *,
        interval: float,
        **kwargs,
    ) -> PeriodicRefresher:
        refresher = PeriodicRefresher(
            self.scheduler, symbols, period, limit, interval=interval, **kwargs
        )
        refresher.start()
        self._refreshers.append(refresher)
        return refresher

    async def close(self) -> None:
        refreshers, self._refreshers = self._refreshers, []
        for refresher in refreshers:
            await refresher.stop()
        close = getattr(self.source, "close", None)
        if close is not None:
            await close()
