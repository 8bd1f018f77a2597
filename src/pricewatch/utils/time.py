from __future__ import annotations

import time
from datetime import datetime, timezone

# --- fast, allocation-free time helpers ---

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()

def utc_now_ms() -> int:
    """Unix epoch milliseconds (int)."""
    return time.time_ns() // 1_000_000

def ceil_to_second(ts: float) -> int:
    """Ceil timestamp (s) to integer epoch second."""
    i = int(ts)
    return i if ts == i else i + 1

def ms_to_dt(ts_ms: int) -> datetime:
    """Epoch milliseconds -> timezone-aware UTC datetime."""
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)

def dt_to_ms(dt: datetime) -> int:
    """
    Datetime -> epoch milliseconds.
    Naive datetimes are read as UTC (SQLite drops tzinfo on round-trip).
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))
