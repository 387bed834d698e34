"""
Durable per-(symbol, period) candle series persistence.

Each series lives in one JSON record at ``<root>/<period>/<symbol>.json``::

    {"symbol": ..., "period": ..., "lastUpdated": <ms>, "candles": [{"openTime": ...}, ...]}

Writes go to a temporary file that is fsync'ed and then swapped into place
with ``os.replace`` while holding a portalocker lock on ``<record>.lock``, so a
reader never observes a half-written series and concurrent writers from other
processes are serialized. Failures are returned, never raised.
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Callable
from typing import List
from typing import NamedTuple
from typing import Optional

import numpy as np
import portalocker
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError

from klinecache.candles import Candle
from klinecache.candles import candles_from_records
from klinecache.candles import candles_to_records
from klinecache.candles import dedupe_sorted
from klinecache.candles import empty_candles
from klinecache.exceptions import StorageError
from klinecache.periods import normalize_period

log = logging.getLogger(__name__)

_LOCK_TIMEOUT_SECONDS = 10.0


def _utc_now_ms() -> int:
    return int(time.time() * 1000)


def _sanitize_symbol(symbol: str) -> str:
    return symbol.replace("/", "_").replace(":", "_")


class KlineRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str
    period: str = ""
    last_updated: int = Field(default=0, alias="lastUpdated")
    candles: List[Candle] = Field(default_factory=list)


class LoadResult(NamedTuple):
    candles: np.ndarray
    found: bool
    error: Optional[StorageError] = None


class RecordInfo(NamedTuple):
    symbol: str
    period: str
    last_updated: int
    candle_count: int
    file_size: int


class CandleStore:
    """Load and replace whole candle series on disk."""

    def __init__(
        self,
        root: str | os.PathLike = "caches/klines",
        *,
        clock: Callable[[], int] = _utc_now_ms,
        lock_timeout: float = _LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self.root = Path(root)
        self.clock = clock
        self.lock_timeout = float(lock_timeout)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} root={str(self.root)!r}>"

    # ----- Paths -----

    def period_dir(self, period: str) -> Path:
        return self.root / normalize_period(period)

    def record_path(self, symbol: str, period: str) -> Path:
        return self.period_dir(period) / f"{_sanitize_symbol(symbol)}.json"

    # ----- Load / save -----

    def load(self, symbol: str, period: str) -> LoadResult:
        """Return the stored candles for ``(symbol, period)``.

        A missing record is ``found=False`` with no error. Unreadable or
        corrupt records come back empty with ``error`` set.
        """
        path = self.record_path(symbol, period)
        try:
            payload = path.read_bytes()
        except FileNotFoundError:
            return LoadResult(empty_candles(), False)
        except OSError as exc:
            log.error("event=store_load_failed symbol=%s period=%s error=%s", symbol, period, exc)
            return LoadResult(empty_candles(), False, StorageError(str(exc), str(path)))
        try:
            record = KlineRecord.model_validate_json(payload)
        except ValidationError as exc:
            log.error(
                "event=store_record_corrupt symbol=%s period=%s errors=%d",
                symbol,
                period,
                exc.error_count(),
            )
            return LoadResult(
                empty_candles(), False, StorageError(f"corrupt record: {exc}", str(path))
            )
        candles = candles_from_records(record.candles)
        log.debug(
            "event=store_load symbol=%s period=%s rows=%d", symbol, period, candles.shape[0]
        )
        return LoadResult(candles, True)

    def save(self, symbol: str, period: str, candles: np.ndarray) -> Optional[StorageError]:
        """Atomically replace the stored series. Returns ``None`` on success."""
        path = self.record_path(symbol, period)
        arr = dedupe_sorted(candles)
        payload = json.dumps(
            {
                "symbol": symbol,
                "period": normalize_period(period),
                "lastUpdated": int(self.clock()),
                "candles": candles_to_records(arr),
            },
            separators=(",", ":"),
        ).encode("utf-8")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with portalocker.Lock(str(path) + ".lock", timeout=self.lock_timeout):
                self._atomic_write_bytes(path, payload)
        except (OSError, portalocker.LockException) as exc:
            log.error("event=store_save_failed symbol=%s period=%s error=%s", symbol, period, exc)
            return StorageError(str(exc) or type(exc).__name__, str(path))
        log.debug(
            "event=store_save symbol=%s period=%s rows=%d bytes=%d",
            symbol,
            period,
            arr.shape[0],
            len(payload),
        )
        return None

    @staticmethod
    def _atomic_write_bytes(path: Path, data: bytes) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            raise

    # ----- Maintenance -----

    def delete(self, symbol: str, period: str) -> bool:
        path = self.record_path(symbol, period)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        log.info("event=store_delete symbol=%s period=%s", symbol, period)
        return True

    def delete_period(self, period: str) -> int:
        """Remove every record stored for ``period``; returns how many were removed."""
        removed = 0
        for path in self._iter_record_paths(period):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        log.info("event=store_delete_period period=%s removed=%d", period, removed)
        return removed

    def list_records(self, period: Optional[str] = None) -> List[RecordInfo]:
        """Describe stored records, sorted by symbol. Unreadable records are skipped."""
        infos: List[RecordInfo] = []
        for path in self._iter_record_paths(period):
            try:
                record = KlineRecord.model_validate_json(path.read_bytes())
                size = path.stat().st_size
            except (OSError, ValidationError) as exc:
                log.warning("event=store_list_skip path=%s error=%s", path, exc)
                continue
            infos.append(
                RecordInfo(
                    symbol=record.symbol,
                    period=record.period or path.parent.name,
                    last_updated=record.last_updated,
                    candle_count=len(record.candles),
                    file_size=size,
                )
            )
        infos.sort(key=lambda info: (info.symbol, info.period))
        return infos

    def cleanup_older_than(self, max_age_ms: int) -> int:
        """Delete records whose ``lastUpdated`` is older than ``max_age_ms``."""
        if max_age_ms < 0:
            raise ValueError("max_age_ms must be >= 0")
        cutoff = int(self.clock()) - int(max_age_ms)
        removed = 0
        for info in self.list_records():
            if info.last_updated < cutoff and self.delete(info.symbol, info.period):
                removed += 1
        if removed:
            log.info("event=store_cleanup removed=%d", removed)
        return removed

    def _iter_record_paths(self, period: Optional[str] = None):
        if period is not None:
            base = self.period_dir(period)
            return sorted(base.glob("*.json")) if base.exists() else []
        if not self.root.exists():
            return []
        return sorted(self.root.glob("*/*.json"))
