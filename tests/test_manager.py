import asyncio
import logging

import numpy as np
import pytest

from klinecache.config import KlineCacheConfig
from klinecache.exceptions import NetworkError
from klinecache.manager import KlineCacheManager
from klinecache.manager import setup_logging
from klinecache.periods import ONE_DAY_MS
from klinecache.periods import ONE_HOUR_MS
from klinecache.upstream import CCXTCandleSource
from support.klines import NOW_MS
from support.klines import FakeSource
from support.klines import hourly_until


def _manager(storage_root, clock, source=None, **config):
    config = KlineCacheConfig(storage_root=storage_root, **config)
    return KlineCacheManager(source or FakeSource(), config=config, clock=clock)


@pytest.mark.asyncio
async def test_get_candles_returns_independent_tail(storage_root, clock):
    manager = _manager(storage_root, clock, default_window=48)
    res = await manager.get_candles("BTCUSDT", "1h", 24)
    assert res.ok
    assert len(res.series) == 24
    assert res.series.last_ts == NOW_MS

    res.series.candles["c"][-1] = -1.0
    again = await manager.get_candles("BTCUSDT", "1h", 24)
    assert float(again.series.candles["c"][-1]) != -1.0
    assert len(manager.source.calls) == 1


@pytest.mark.asyncio
async def test_get_candles_serves_stale_data_during_outage(storage_root, clock):
    source = FakeSource(fail=NetworkError("BTCUSDT", "1h", "down"))
    manager = _manager(storage_root, clock, source)
    stored = hourly_until(NOW_MS - 5 * ONE_HOUR_MS, 30)
    manager.store.save("BTCUSDT", "1h", stored)

    res = await manager.get_candles("BTCUSDT", "1h", 10)
    assert isinstance(res.error, NetworkError)
    assert np.array_equal(res.series.candles, stored[-10:])


@pytest.mark.asyncio
async def test_get_candles_many(storage_root, clock):
    manager = _manager(storage_root, clock, default_window=20, max_concurrency=2)
    seen = []
    results = await manager.get_candles_many(
        ["BTCUSDT", "ETHUSDT", "SOLUSDT"], "1h", 5, progress=seen.append
    )
    assert set(results) == {"BTCUSDT", "ETHUSDT", "SOLUSDT"}
    assert all(len(series) == 5 for series in results.values())
    assert len(seen) == 3
    assert manager.cache_stats().entries == 3
    assert manager.cache_stats().total_candles == 60


@pytest.mark.asyncio
async def test_clear_cache_and_storage(storage_root, clock):
    manager = _manager(storage_root, clock, default_window=5)
    await manager.get_candles_many(["BTCUSDT", "ETHUSDT"], "1h", 5)
    await manager.get_candles("BTCUSDT", "1d", 5)

    infos = await manager.storage_info()
    assert [(i.symbol, i.period, i.candle_count) for i in infos] == [
        ("BTCUSDT", "1d", 5),
        ("BTCUSDT", "1h", 5),
        ("ETHUSDT", "1h", 5),
    ]
    assert manager.invalidate("ETHUSDT", "1h") is True
    assert manager.clear_cache("1h", delete_stored=True) == 1
    assert [i.period for i in await manager.storage_info()] == ["1d"]
    with pytest.raises(ValueError):
        manager.clear_cache(delete_stored=True)
    assert manager.clear_cache() == 1


@pytest.mark.asyncio
async def test_cleanup_removes_old_records(storage_root, clock):
    manager = _manager(storage_root, clock, default_window=5)
    await manager.get_candles("BTCUSDT", "1h", 5)
    clock.advance(10 * ONE_DAY_MS)
    assert await manager.cleanup(7 * ONE_DAY_MS) == 1
    assert await manager.storage_info() == []


@pytest.mark.asyncio
async def test_close_stops_refreshers_and_source(storage_root, clock):
    source = FakeSource()
    manager = _manager(storage_root, clock, source)

    async def no_sleep(_):
        return None

    refresher = manager.start_refresher(lambda: ["BTCUSDT"], "1h", 5, interval=30, sleep=no_sleep)
    assert refresher.running
    await manager.close()
    assert not refresher.running
    assert source.closed is True


def test_from_config_requires_source_or_exchange(storage_root):
    with pytest.raises(ValueError):
        KlineCacheManager.from_config(KlineCacheConfig(storage_root=storage_root))


@pytest.mark.asyncio
async def test_from_config_builds_ccxt_source(storage_root, clock):
    config = KlineCacheConfig(storage_root=storage_root, exchange="binance", request_timeout=5)
    manager = KlineCacheManager.from_config(config, clock=clock)
    try:
        assert isinstance(manager.source, CCXTCandleSource)
        assert manager.source.timeout == 5.0
        assert manager.coordinator.request_timeout is None
        assert manager.coordinator.price_source is manager.source
    finally:
        await manager.close()


def test_setup_logging_creates_logfile_dir(tmp_path):
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    config = KlineCacheConfig(log_level="debug", log_file=tmp_path / "logs" / "klinecache.log")
    try:
        setup_logging(config)
        assert (tmp_path / "logs").is_dir()
    finally:
        for handler in list(root.handlers):
            if handler not in handlers:
                root.removeHandler(handler)
                handler.close()
        for handler in handlers:
            if handler not in root.handlers:
                root.addHandler(handler)
        root.setLevel(level)


class SlowFirstExchange:
    """Hangs on the first ``fetch_ohlcv`` call, answers every later one."""

    id = "slowfirst"

    def __init__(self):
        self.calls = []
        self.closed = False

    async def fetch_ohlcv(self, symbol, timeframe="1m", since=None, limit=None, params=None):
        self.calls.append((symbol, timeframe, since, limit))
        if len(self.calls) == 1:
            await asyncio.sleep(3600)
        out = []
        ts = since
        while ts <= NOW_MS and len(out) < limit:
            out.append([ts, 1.0, 2.0, 0.5, 1.5, 10.0])
            ts += ONE_HOUR_MS
        return out

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_ccxt_retry_survives_a_hung_first_attempt(storage_root, clock):
    async def no_sleep(_):
        return None

    exchange = SlowFirstExchange()
    config = KlineCacheConfig(storage_root=storage_root, request_timeout=0.05, default_window=24)
    source = CCXTCandleSource(exchange, timeout=config.request_timeout, max_retries=3, sleep=no_sleep)
    manager = KlineCacheManager.from_config(config, source=source, clock=clock)
    try:
        assert manager.coordinator.request_timeout is None
        res = await manager.get_candles("BTCUSDT", "1h", 24)
        assert res.ok
        assert len(exchange.calls) == 2
        assert len(res.series) == 24
        assert res.series.last_ts == NOW_MS
    finally:
        await manager.close()
    assert exchange.closed is True


def test_sync_timeout_defaults_to_request_timeout_for_plain_sources(storage_root, clock):
    manager = _manager(storage_root, clock, request_timeout=3)
    assert manager.coordinator.request_timeout == 3.0


def test_explicit_sync_timeout_is_honoured(storage_root, clock):
    manager = _manager(storage_root, clock, request_timeout=3, sync_timeout=45)
    assert manager.coordinator.request_timeout == 45.0
    source = CCXTCandleSource(SlowFirstExchange(), timeout=3)
    config = KlineCacheConfig(storage_root=storage_root, request_timeout=3, sync_timeout=45)
    assert KlineCacheManager(source, config=config, clock=clock).coordinator.request_timeout == 45.0
