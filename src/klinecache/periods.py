"""Candle period parsing and the per-period cache lifetimes."""

from __future__ import annotations

import re
from typing import Dict
from typing import Mapping
from typing import Optional

ONE_MIN_MS = 60_000
ONE_HOUR_MS = 60 * ONE_MIN_MS
ONE_DAY_MS = 24 * ONE_HOUR_MS

_UNIT_MS = {
    "m": ONE_MIN_MS,
    "h": ONE_HOUR_MS,
    "d": ONE_DAY_MS,
    "w": 7 * ONE_DAY_MS,
}

_PERIOD_RE = re.compile(r"(\d+)([mhdw])")

# Longer periods change less often, so they may be cached longer.
DEFAULT_TTL_SECONDS: Dict[str, float] = {
    "1w": 24 * 3600.0,
    "1d": 2 * 3600.0,
    "2h": 3600.0,
    "1h": 30 * 60.0,
    "30m": 15 * 60.0,
    "15m": 10 * 60.0,
    "5m": 5 * 60.0,
}
FALLBACK_TTL_SECONDS = 3600.0


def normalize_period(period: str) -> str:
    """Return the canonical lower-case form of ``period`` or raise ``ValueError``.

    >>> normalize_period(" 1H ")
    '1h'
    """
    if not isinstance(period, str):
        raise ValueError(f"period must be a string, not {type(period).__name__}")
    st = period.strip().lower()
    m = _PERIOD_RE.fullmatch(st)
    if not m or int(m.group(1)) <= 0:
        raise ValueError(f"Unsupported candle period {period!r}")
    return f"{int(m.group(1))}{m.group(2)}"


def period_to_ms(period: str) -> int:
    """Length of one candle of ``period`` in milliseconds.

    >>> period_to_ms("4h")
    14400000
    """
    norm = normalize_period(period)
    n, unit = int(norm[:-1]), norm[-1]
    return n * _UNIT_MS[unit]


def period_days(period: str) -> int:
    """Calendar days spanned by one candle, never less than one."""
    return max(1, period_to_ms(period) // ONE_DAY_MS)


def ttl_seconds_for(period: str, overrides: Optional[Mapping[str, float]] = None) -> float:
    norm = normalize_period(period)
    if overrides and norm in overrides:
        return float(overrides[norm])
    return DEFAULT_TTL_SECONDS.get(norm, FALLBACK_TTL_SECONDS)


def floor_day(ts_ms: int) -> int:
    return (int(ts_ms) // ONE_DAY_MS) * ONE_DAY_MS
