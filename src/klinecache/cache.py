"""
In-memory TTL layer over :class:`~klinecache.sync.SyncCoordinator`.

Entries are keyed by ``(symbol, period)`` and expire after a period-specific
lifetime. Refreshes are single-flight: callers that miss while a refresh for
the same key is running await that refresh instead of starting their own, so
each key hits disk and upstream at most once per refresh window. Different
keys never wait on each other.

Cached series are handed out as-is with their candle array marked read-only,
so repeated hits return the identical object and no caller can mutate it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable
from typing import Dict
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Tuple

from klinecache.candles import CandleSeries
from klinecache.periods import normalize_period
from klinecache.periods import ttl_seconds_for
from klinecache.sync import SyncCoordinator
from klinecache.sync import SyncResult

log = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


def _utc_now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CacheEntry:
    series: CandleSeries
    cached_at_ms: int
    period: str

    def age_ms(self, now_ms: int) -> int:
        return int(now_ms) - self.cached_at_ms


class CacheStats(NamedTuple):
    entries: int
    total_candles: int


class TTLCache:
    def __init__(
        self,
        coordinator: SyncCoordinator,
        *,
        ttl_seconds: Optional[Mapping[str, float]] = None,
        clock: Callable[[], int] = _utc_now_ms,
    ) -> None:
        self.coordinator = coordinator
        self.ttl_overrides: Dict[str, float] = {
            normalize_period(k): float(v) for k, v in (ttl_seconds or {}).items()
        }
        self.clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._inflight: Dict[CacheKey, asyncio.Task] = {}

    def ttl_ms(self, period: str) -> int:
        return int(ttl_seconds_for(period, self.ttl_overrides) * 1000)

    def _key(self, symbol: str, period: str) -> CacheKey:
        return (symbol, normalize_period(period))

    def _valid_entry(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        age = entry.age_ms(self.clock())
        ttl = self.ttl_ms(entry.period)
        if age >= ttl:
            log.debug(
                "event=cache_expired symbol=%s period=%s age_ms=%d ttl_ms=%d", key[0], key[1], age, ttl
            )
            return None
        return entry

    def peek(self, symbol: str, period: str) -> Optional[CacheEntry]:
        """Return the raw entry for a key, expired or not, without refreshing."""
        return self._entries.get(self._key(symbol, period))

    async def _refresh(self, key: CacheKey, limit: int) -> SyncResult:
        result = await self.coordinator.ensure_fresh(key[0], key[1], limit)
        if result.error is None and len(result.series):
            series = result.series
            series.candles.setflags(write=False)
            self._entries[key] = CacheEntry(series, int(self.clock()), key[1])
            log.debug("event=cache_store symbol=%s period=%s rows=%d", key[0], key[1], len(series))
        return result

    def _forget_inflight(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def get_or_sync(self, symbol: str, period: str, limit: int) -> SyncResult:
        if limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        key = self._key(symbol, period)
        entry = self._valid_entry(key)
        if entry is not None:
            log.debug("event=cache_hit symbol=%s period=%s rows=%d", key[0], key[1], len(entry.series))
            return SyncResult(entry.series)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(key, limit))
            self._inflight[key] = task
            task.add_done_callback(lambda t, key=key: self._forget_inflight(key, t))
        else:
            log.debug("event=cache_join_inflight symbol=%s period=%s", key[0], key[1])
        # a cancelled waiter must not cancel the refresh other callers share
        return await asyncio.shield(task)

    def invalidate(self, symbol: str, period: str) -> bool:
        removed = self._entries.pop(self._key(symbol, period), None) is not None
        if removed:
            log.debug("event=cache_invalidate symbol=%s period=%s", symbol, period)
        return removed

    def clear(self, period: Optional[str] = None) -> int:
        """Drop every entry, or only those of ``period``; returns how many were dropped."""
        if period is None:
            count = len(self._entries)
            self._entries.clear()
        else:
            period = normalize_period(period)
            stale = [key for key in self._entries if key[1] == period]
            for key in stale:
                del self._entries[key]
            count = len(stale)
        log.info("event=cache_clear period=%s entries=%d", period or "all", count)
        return count

    def stats(self) -> CacheStats:
        return CacheStats(
            entries=len(self._entries),
            total_candles=sum(len(e.series) for e in self._entries.values()),
        )

    def __len__(self) -> int:
        return len(self._entries)
