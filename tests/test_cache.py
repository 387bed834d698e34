import asyncio

import pytest

from klinecache.cache import TTLCache
from klinecache.candles import CandleSeries
from klinecache.exceptions import NetworkError
from klinecache.store import CandleStore
from klinecache.sync import SyncCoordinator
from klinecache.sync import SyncResult
from support.klines import NOW_MS
from support.klines import FakeSource
from support.klines import hourly_until


class CountingCoordinator:
    def __init__(self, *, error=None, empty=False):
        self.calls = []
        self.error = error
        self.empty = empty
        self.release = asyncio.Event()
        self.release.set()

    async def ensure_fresh(self, symbol, period, limit):
        self.calls.append((symbol, period, limit))
        await self.release.wait()
        candles = hourly_until(NOW_MS, 0 if self.empty else 10)
        return SyncResult(CandleSeries(symbol, period, candles), self.error, 1)


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_upstream_fetch(storage_root, clock):
    source = FakeSource(delay=0.01)
    store = CandleStore(storage_root, clock=clock)
    cache = TTLCache(SyncCoordinator(store, source, clock=clock), clock=clock)

    results = await asyncio.gather(*(cache.get_or_sync("BTCUSDT", "1h", 24) for _ in range(20)))
    assert len(source.calls) == 1
    assert all(r.ok for r in results)
    assert all(r.series is results[0].series for r in results)


@pytest.mark.asyncio
async def test_hit_within_ttl_returns_identical_object(clock):
    coord = CountingCoordinator()
    cache = TTLCache(coord, clock=clock)
    first = await cache.get_or_sync("BTCUSDT", "1h", 10)
    clock.advance(29 * 60 * 1000)
    second = await cache.get_or_sync("BTCUSDT", "1H", 10)
    assert second.series is first.series
    assert len(coord.calls) == 1

    clock.advance(60 * 1000)
    third = await cache.get_or_sync("BTCUSDT", "1h", 10)
    assert len(coord.calls) == 2
    assert third.series is not first.series


@pytest.mark.asyncio
async def test_ttl_depends_on_period_and_overrides(clock):
    coord = CountingCoordinator()
    cache = TTLCache(coord, ttl_seconds={"5m": 1}, clock=clock)
    assert cache.ttl_ms("1w") == 24 * 3600 * 1000
    assert cache.ttl_ms("5m") == 1000

    await cache.get_or_sync("BTCUSDT", "1w", 10)
    await cache.get_or_sync("BTCUSDT", "5m", 10)
    clock.advance(2000)
    await cache.get_or_sync("BTCUSDT", "1w", 10)
    await cache.get_or_sync("BTCUSDT", "5m", 10)
    assert [c[1] for c in coord.calls] == ["1w", "5m", "5m"]


@pytest.mark.asyncio
async def test_cached_series_is_read_only(clock):
    cache = TTLCache(CountingCoordinator(), clock=clock)
    res = await cache.get_or_sync("BTCUSDT", "1h", 10)
    with pytest.raises(ValueError):
        res.series.candles["c"][0] = 1.0


@pytest.mark.asyncio
async def test_errors_are_not_cached(clock):
    coord = CountingCoordinator(error=NetworkError("BTCUSDT", "1h", "down"))
    cache = TTLCache(coord, clock=clock)
    res = await cache.get_or_sync("BTCUSDT", "1h", 10)
    assert isinstance(res.error, NetworkError)
    assert len(res.series) == 10
    await cache.get_or_sync("BTCUSDT", "1h", 10)
    assert len(coord.calls) == 2
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_empty_results_are_not_cached(clock):
    coord = CountingCoordinator(empty=True)
    cache = TTLCache(coord, clock=clock)
    await cache.get_or_sync("BTCUSDT", "1h", 10)
    await cache.get_or_sync("BTCUSDT", "1h", 10)
    assert len(coord.calls) == 2


@pytest.mark.asyncio
async def test_waiters_share_a_failed_refresh(clock):
    coord = CountingCoordinator(error=NetworkError("BTCUSDT", "1h", "down"))
    coord.release.clear()
    cache = TTLCache(coord, clock=clock)
    tasks = [asyncio.ensure_future(cache.get_or_sync("BTCUSDT", "1h", 10)) for _ in range(5)]
    await asyncio.sleep(0)
    coord.release.set()
    results = await asyncio.gather(*tasks)
    assert len(coord.calls) == 1
    assert all(isinstance(r.error, NetworkError) for r in results)


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_refresh(clock):
    coord = CountingCoordinator()
    coord.release.clear()
    cache = TTLCache(coord, clock=clock)
    first = asyncio.ensure_future(cache.get_or_sync("BTCUSDT", "1h", 10))
    second = asyncio.ensure_future(cache.get_or_sync("BTCUSDT", "1h", 10))
    await asyncio.sleep(0)
    first.cancel()
    await asyncio.sleep(0)
    coord.release.set()
    res = await second
    assert res.ok
    assert first.cancelled()
    assert len(coord.calls) == 1
    assert cache.peek("BTCUSDT", "1h") is not None


@pytest.mark.asyncio
async def test_different_keys_refresh_independently(clock):
    coord = CountingCoordinator()
    cache = TTLCache(coord, clock=clock)
    await asyncio.gather(
        cache.get_or_sync("BTCUSDT", "1h", 10),
        cache.get_or_sync("ETHUSDT", "1h", 10),
        cache.get_or_sync("BTCUSDT", "1d", 10),
    )
    assert len(coord.calls) == 3
    assert cache.stats().entries == 3
    assert cache.stats().total_candles == 30


@pytest.mark.asyncio
async def test_invalidate_and_clear(clock):
    coord = CountingCoordinator()
    cache = TTLCache(coord, clock=clock)
    for sym in ("BTCUSDT", "ETHUSDT"):
        await cache.get_or_sync(sym, "1h", 10)
    await cache.get_or_sync("BTCUSDT", "1d", 10)

    assert cache.invalidate("BTCUSDT", "1H") is True
    assert cache.invalidate("BTCUSDT", "1h") is False
    await cache.get_or_sync("BTCUSDT", "1h", 10)
    assert len(coord.calls) == 4

    assert cache.clear("1h") == 2
    assert len(cache) == 1
    assert cache.clear() == 1
    assert cache.stats().entries == 0


@pytest.mark.asyncio
async def test_negative_limit_raises(clock):
    cache = TTLCache(CountingCoordinator(), clock=clock)
    with pytest.raises(ValueError):
        await cache.get_or_sync("BTCUSDT", "1h", -1)
