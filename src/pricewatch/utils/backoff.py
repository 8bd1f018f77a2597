from __future__ import annotations

import random
from email.utils import parsedate_to_datetime
from typing import Optional

from pricewatch.utils.time import utc_now_s

def next_backoff(prev: float, cap: float) -> float:
    """Exponential backoff progression with cap (no jitter)."""
    return min(prev * 2.0, cap)

def jitter(v: float, *, ratio: float = 0.2) -> float:
    """
    Add ±ratio jitter. ratio=0.2 -> multiply by [0.8, 1.2].
    """
    lo = 1.0 - ratio
    hi = 1.0 + ratio
    return v * (lo + (hi - lo) * random.random())

def parse_retry_after(raw: Optional[str]) -> Optional[float]:
    """
    Retry-After header -> seconds. Accepts delta-seconds or an HTTP-date.
    Returns None when missing or unparseable.
    """
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, when.timestamp() - utc_now_s())

def rate_limit_wait(retry_after: Optional[float], backoff: float, cap: float) -> float:
    """
    Seconds to wait after a 429: the larger of the server hint and our own
    backoff, never above cap.
    """
    wait = backoff if retry_after is None else max(retry_after, backoff)
    return min(wait, cap)
