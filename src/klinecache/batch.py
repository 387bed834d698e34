"""
Bounded-concurrency fan-out of cache refreshes across many symbols.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import NamedTuple
from typing import Optional

from klinecache.cache import TTLCache
from klinecache.candles import CandleSeries

log = logging.getLogger(__name__)


class BatchProgress(NamedTuple):
    total: int
    completed: int
    failed: int
    symbol: str

    @property
    def pct(self) -> float:
        return 100.0 * self.completed / self.total if self.total else 100.0


ProgressCallback = Callable[[BatchProgress], Any]


class BatchScheduler:
    def __init__(self, cache: TTLCache, *, max_concurrency: int = 10) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.cache = cache
        self.max_concurrency = int(max_concurrency)

    async def run_batch(
        self,
        symbols: Iterable[str],
        period: str,
        limit: int,
        max_concurrency: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, CandleSeries]:
        """Refresh every symbol through the cache; return the ones that succeeded.

        At most ``max_concurrency`` refreshes are in flight at once. A symbol
        whose refresh fails, or yields nothing, is left out of the result and
        never aborts the rest of the batch. When a refresh fails but stored
        candles exist, the stale series is still returned.
        """
        ordered: List[str] = list(dict.fromkeys(symbols))
        total = len(ordered)
        results: Dict[str, CandleSeries] = {}
        if not total:
            return results
        ceiling = int(max_concurrency or self.max_concurrency)
        if ceiling < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {ceiling}")
        sem = asyncio.Semaphore(ceiling)
        completed = 0
        failed = 0
        report_every = max(1, min(10, total // 10 + 1))

        async def one(sym: str) -> None:
            nonlocal completed, failed
            ok = False
            try:
                async with sem:
                    result = await self.cache.get_or_sync(sym, period, limit)
                if len(result.series):
                    results[sym] = result.series
                    ok = True
                    if result.error is not None:
                        log.warning("event=batch_symbol_stale symbol=%s error=%s", sym, result.error)
                else:
                    log.warning("event=batch_symbol_failed symbol=%s error=%s", sym, result.error)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error("event=batch_symbol_error symbol=%s error=%r", sym, exc, exc_info=True)
            completed += 1
            if not ok:
                failed += 1
            if completed % report_every == 0 or completed == total:
                log.info(
                    "event=batch_progress period=%s completed=%d/%d failed=%d",
                    period,
                    completed,
                    total,
                    failed,
                    wipe_line=completed != total,
                )
            if progress is not None:
                try:
                    progress(BatchProgress(total, completed, failed, sym))
                except Exception as exc:
                    log.error("event=batch_progress_callback_failed error=%r", exc)

        await asyncio.gather(*(one(sym) for sym in ordered))
        log.info(
            "event=batch_done period=%s limit=%d succeeded=%d failed=%d",
            period,
            limit,
            len(results),
            failed,
        )
        return {sym: results[sym] for sym in ordered if sym in results}


class PeriodicRefresher:
    """Run a batch refresh on a fixed interval until stopped.

    ``sleep`` is injectable so tests can drive time without wall-clock waits.
    """

    def __init__(
        self,
        scheduler: BatchScheduler,
        symbols: Callable[[], Iterable[str]],
        period: str,
        limit: int,
        *,
        interval: float,
        invalidate: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_result: Optional[Callable[[Dict[str, CandleSeries]], Any]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.scheduler = scheduler
        self.symbols = symbols
        self.period = period
        self.limit = int(limit)
        self.interval = float(interval)
        self.invalidate = invalidate
        self.on_result = on_result
        self._sleep = sleep
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Dict[str, CandleSeries]:
        symbols = list(self.symbols())
        if self.invalidate:
            for sym in symbols:
                self.scheduler.cache.invalidate(sym, self.period)
        result = await self.scheduler.run_batch(symbols, self.period, self.limit)
        self.runs += 1
        if self.on_result is not None:
            self.on_result(result)
        return result

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error("event=periodic_refresh_failed period=%s error=%r", self.period, exc, exc_info=True)
            if self._stop.is_set():
                break
            await self._sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self.running:
            raise RuntimeError("periodic refresher already running")
        self._stop.clear()
        self._task = asyncio.ensure_future(self._loop())
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
