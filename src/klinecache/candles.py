"""
Candle data model.

A series keeps its candles in a numpy structured array of ``CANDLE_DTYPE``,
sorted ascending and unique by ``ts`` (the open time, UTC milliseconds). The
pydantic models are only used where candles cross the persistence boundary.

Example
-------
>>> arr = candles_from_rows([[1_700_000_000_000, 1.0, 2.0, 0.5, 1.5, 10.0, 15.0, 3]])
>>> CandleSeries("BTCUSDT", "1h", arr).last_ts
1700000000000
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Sequence

import numpy as np
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import model_validator

log = logging.getLogger(__name__)

CANDLE_DTYPE = np.dtype(
    [
        ("ts", "int64"),
        ("o", "float64"),
        ("h", "float64"),
        ("l", "float64"),
        ("c", "float64"),
        ("bv", "float64"),
        ("qv", "float64"),
        ("n", "int64"),
    ]
)

# Fields compared when deciding whether a stored candle needs correcting.
OHLCV_FIELDS = ("o", "h", "l", "c", "bv")


def empty_candles() -> np.ndarray:
    return np.empty((0,), dtype=CANDLE_DTYPE)


def ensure_dtype(a: np.ndarray) -> np.ndarray:
    if a.dtype != CANDLE_DTYPE:
        return a.astype(CANDLE_DTYPE, copy=False)
    return a


def candles_from_rows(rows: Iterable[Sequence[Any]]) -> np.ndarray:
    """Build a candle array from exchange rows ``[ts, o, h, l, c, bv, qv, n]``.

    Rows may be shorter than eight columns (ccxt only returns the first six);
    missing quote volume and trade count default to zero. Malformed rows are
    skipped. The result is sorted by ``ts`` with the last duplicate winning.
    """
    out = []
    skipped = 0
    for r in rows:
        try:
            ts = int(r[0])
            o, h, l, c = map(float, (r[1], r[2], r[3], r[4]))
            bv = float(r[5]) if len(r) > 5 and r[5] is not None else 0.0
            qv = float(r[6]) if len(r) > 6 and r[6] is not None else 0.0
            n = int(r[7]) if len(r) > 7 and r[7] is not None else 0
        except (TypeError, ValueError, IndexError) as exc:
            log.trace("event=candle_row_skipped row=%r error=%s", r, exc)
            skipped += 1
            continue
        out.append((ts, o, h, l, c, bv, qv, n))
    if skipped:
        log.debug("event=candle_rows_skipped count=%d", skipped)
    if not out:
        return empty_candles()
    return dedupe_sorted(np.array(out, dtype=CANDLE_DTYPE))


def dedupe_sorted(arr: np.ndarray) -> np.ndarray:
    """Sort by ``ts`` and drop duplicate timestamps, keeping the last occurrence."""
    if arr.size == 0:
        return ensure_dtype(arr)
    arr = ensure_dtype(arr)
    order = np.argsort(arr["ts"], kind="stable")
    arr = arr[order]
    ts = arr["ts"]
    keep = np.ones(arr.shape[0], dtype=bool)
    keep[:-1] = ts[1:] != ts[:-1]
    return arr[keep]


class Candle(BaseModel):
    """One persisted candle, serialized with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    open_time: int = Field(alias="openTime")
    open_price: float = Field(alias="openPrice")
    high_price: float = Field(alias="highPrice")
    low_price: float = Field(alias="lowPrice")
    close_price: float = Field(alias="closePrice")
    volume: float = 0.0
    quote_volume: float = Field(default=0.0, alias="quoteVolume")
    trade_count: int = Field(default=0, alias="tradeCount")

    @model_validator(mode="after")
    def _check_ohlc(self) -> "Candle":
        if self.high_price < max(self.open_price, self.close_price):
            raise ValueError(f"high {self.high_price} below open/close at {self.open_time}")
        if self.low_price > min(self.open_price, self.close_price):
            raise ValueError(f"low {self.low_price} above open/close at {self.open_time}")
        return self

    def as_tuple(self) -> tuple:
        return (
            self.open_time,
            self.open_price,
            self.high_price,
            self.low_price,
            self.close_price,
            self.volume,
            self.quote_volume,
            self.trade_count,
        )


def candles_to_records(arr: np.ndarray) -> List[Dict[str, Any]]:
    """Serialize a candle array to camelCase dicts without re-validating every row."""
    arr = ensure_dtype(arr)
    return [
        {
            "openTime": int(r["ts"]),
            "openPrice": float(r["o"]),
            "highPrice": float(r["h"]),
            "lowPrice": float(r["l"]),
            "closePrice": float(r["c"]),
            "volume": float(r["bv"]),
            "quoteVolume": float(r["qv"]),
            "tradeCount": int(r["n"]),
        }
        for r in arr
    ]


def candles_from_records(records: Iterable[Candle]) -> np.ndarray:
    rows = [c.as_tuple() for c in records]
    if not rows:
        return empty_candles()
    return dedupe_sorted(np.array(rows, dtype=CANDLE_DTYPE))


def ts_to_date(ts_ms: int) -> datetime.date:
    return datetime.datetime.fromtimestamp(int(ts_ms) / 1000.0, tz=datetime.timezone.utc).date()


@dataclass
class CandleSeries:
    """Candles for one (symbol, period) pair."""

    symbol: str
    period: str
    candles: np.ndarray = field(default_factory=empty_candles)

    def __post_init__(self) -> None:
        self.candles = ensure_dtype(self.candles)

    def __len__(self) -> int:
        return int(self.candles.shape[0])

    @property
    def first_ts(self) -> Optional[int]:
        return int(self.candles[0]["ts"]) if len(self) else None

    @property
    def last_ts(self) -> Optional[int]:
        return int(self.candles[-1]["ts"]) if len(self) else None

    def copy(self) -> CandleSeries:
        return CandleSeries(self.symbol, self.period, self.candles.copy())

    def tail(self, limit: int) -> CandleSeries:
        """Return a copy holding at most the last ``limit`` candles."""
        if limit <= 0 or limit >= len(self):
            return self.copy()
        return CandleSeries(self.symbol, self.period, self.candles[-limit:].copy())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CandleSeries):
            return NotImplemented
        return (
            self.symbol == other.symbol
            and self.period == other.period
            and np.array_equal(self.candles, other.candles)
        )
