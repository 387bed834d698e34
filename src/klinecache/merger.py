"""
Merge freshly fetched candles into a stored series and detect day gaps.

Overwrite rules for a fetched candle whose ``ts`` already exists:

- its UTC date is today: the bar is still forming, always overwrite
- its UTC date is yesterday: a bar stored while it was "today" may have been
  incomplete, always overwrite
- its ``ts`` equals the newest stored ``ts``: that bar may have been captured
  mid-period on an earlier run, always overwrite
- otherwise overwrite only when open/high/low/close/volume differ
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import NamedTuple
from typing import Optional
from typing import Tuple

import numpy as np

from klinecache.candles import OHLCV_FIELDS
from klinecache.candles import dedupe_sorted
from klinecache.candles import ensure_dtype
from klinecache.candles import ts_to_date
from klinecache.exceptions import DataIntegrityError
from klinecache.periods import ONE_DAY_MS
from klinecache.periods import floor_day
from klinecache.periods import period_days

log = logging.getLogger(__name__)


class MergeResult(NamedTuple):
    candles: np.ndarray
    inserted: int
    overwritten: int
    dropped: int = 0


@dataclass(frozen=True)
class FetchGap:
    """A hole in a series' day coverage between two present dates."""

    after_date: datetime.date
    before_date: datetime.date

    @property
    def start_ms(self) -> int:
        """Midnight UTC of the first missing day."""
        first_missing = self.after_date + datetime.timedelta(days=1)
        return int(
            datetime.datetime(
                first_missing.year, first_missing.month, first_missing.day,
                tzinfo=datetime.timezone.utc,
            ).timestamp()
            * 1000
        )

    @property
    def missing_days(self) -> int:
        return (self.before_date - self.after_date).days - 1


def validate_candles(new: np.ndarray, symbol: str = "", period: str = "") -> Tuple[np.ndarray, int]:
    """Drop candles failing OHLC sanity. Returns ``(valid, dropped_count)``."""
    arr = ensure_dtype(new)
    if arr.size == 0:
        return arr, 0
    prices = np.stack([arr["o"], arr["h"], arr["l"], arr["c"]])
    ok = (
        np.isfinite(prices).all(axis=0)
        & (arr["h"] >= np.maximum(arr["o"], arr["c"]))
        & (arr["l"] <= np.minimum(arr["o"], arr["c"]))
        & (arr["bv"] >= 0)
        & (arr["ts"] >= 0)
    )
    dropped = int((~ok).sum())
    if dropped:
        for row in arr[~ok]:
            err = DataIntegrityError(
                f"ohlc check failed ts={int(row['ts'])} o={row['o']} h={row['h']} "
                f"l={row['l']} c={row['c']} bv={row['bv']}"
            )
            log.warning("event=candle_dropped symbol=%s period=%s error=%s", symbol, period, err)
    return arr[ok], dropped


def merge_candles(
    existing: np.ndarray,
    new: np.ndarray,
    *,
    now_ms: int,
    symbol: str = "",
    period: str = "",
) -> MergeResult:
    """Merge ``new`` into ``existing`` and return the sorted, duplicate-free result.

    Invalid candles in ``new`` are dropped individually; the rest of the batch
    is still merged.
    """
    base = dedupe_sorted(ensure_dtype(existing))
    incoming, dropped = validate_candles(new, symbol, period)
    incoming = dedupe_sorted(incoming)
    if incoming.size == 0:
        return MergeResult(base.copy(), 0, 0, dropped)
    if base.size == 0:
        return MergeResult(incoming.copy(), int(incoming.shape[0]), 0, dropped)

    base_ts = base["ts"]
    new_ts = incoming["ts"]
    pos = np.searchsorted(base_ts, new_ts)
    in_range = pos < base_ts.shape[0]
    present = np.zeros(new_ts.shape[0], dtype=bool)
    present[in_range] = base_ts[pos[in_range]] == new_ts[in_range]

    today = floor_day(now_ms)
    yesterday = today - ONE_DAY_MS
    new_days = (new_ts // ONE_DAY_MS) * ONE_DAY_MS
    last_ts = int(base_ts[-1])
    forced = (new_days == today) | (new_days == yesterday) | (new_ts == last_ts)

    differs = np.zeros(new_ts.shape[0], dtype=bool)
    if present.any():
        matched = base[pos[present]]
        candidates = incoming[present]
        changed = np.zeros(candidates.shape[0], dtype=bool)
        for name in OHLCV_FIELDS:
            changed |= matched[name] != candidates[name]
        differs[present] = changed

    overwrite = present & (forced | differs)
    merged = base.copy()
    merged[pos[overwrite]] = incoming[overwrite]
    inserts = incoming[~present]
    if inserts.size:
        merged = np.concatenate([merged, inserts])
        merged = merged[np.argsort(merged["ts"], kind="stable")]

    inserted = int(inserts.shape[0])
    overwritten = int(overwrite.sum())
    log.debug(
        "event=merge symbol=%s period=%s existing=%d incoming=%d inserted=%d overwritten=%d dropped=%d",
        symbol,
        period,
        base.shape[0],
        incoming.shape[0],
        inserted,
        overwritten,
        dropped,
    )
    return MergeResult(merged, inserted, overwritten, dropped)


def find_first_gap(candles: np.ndarray, period: str) -> Optional[FetchGap]:
    """Return the first hole in the series' calendar-day coverage, if any.

    Consecutive distinct dates further apart than one period (at least one
    day) form a gap. Only the first gap is reported.
    """
    arr = ensure_dtype(candles)
    if arr.shape[0] < 2:
        return None
    days = np.unique((arr["ts"] // ONE_DAY_MS) * ONE_DAY_MS)
    if days.shape[0] < 2:
        return None
    step_ms = period_days(period) * ONE_DAY_MS
    holes = np.nonzero(np.diff(days) > step_ms)[0]
    if holes.size == 0:
        return None
    i = int(holes[0])
    return FetchGap(after_date=ts_to_date(int(days[i])), before_date=ts_to_date(int(days[i + 1])))
