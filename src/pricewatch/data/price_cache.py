from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

from pricewatch.data.ring_buffer import WINDOW_CAPACITY, RecentWindow, WindowPoint
from pricewatch.utils.time import ceil_to_second, utc_now_ms
from pricewatch.utils.types import Quote


@dataclass(frozen=True, slots=True)
class CacheEntry:
    price: float
    observed_at: int   # epoch ms
    ttl_s: int


def jittered_ttl_s(poll_interval_s: float, rng: Optional[random.Random] = None) -> int:
    """
    poll interval + uniform [0, 1s) jitter, rounded up to whole seconds.
    Always >= poll_interval_s, so a stalled poller lets entries self-evict.
    """
    u = (rng or random).random()
    return ceil_to_second(poll_interval_s + u)


class PriceStore(Protocol):
    """What the poll loop and readers need from a price cache."""

    async def put(self, asset_id: str, currency: str, price: float, observed_at: int) -> CacheEntry: ...

    async def put_many(self, quotes: Iterable[Quote]) -> int: ...

    async def get(self, asset_id: str, currency: str) -> Optional[CacheEntry]: ...

    async def window(self, asset_id: str, currency: str, n: Optional[int] = None) -> list[WindowPoint]: ...


class PriceCache:
    """
    In-process price cache keyed by (asset_id, currency).

    - put() overwrites the latest entry, re-arms its TTL and appends to the
      key's RecentWindow, all under one lock (readers never see half a write).
    - get() returns None for absent or expired keys; expired keys are evicted
      lazily on read.
    - Expiry is measured from the write, on the injected clock (epoch ms).
    """

    def __init__(
        self,
        poll_interval_s: float,
        *,
        window_capacity: int = WINDOW_CAPACITY,
        clock: Callable[[], int] = utc_now_ms,
        rng: Optional[random.Random] = None,
    ):
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        self.poll_interval_s = poll_interval_s
        self.window_capacity = window_capacity
        self._clock = clock
        self._rng = rng
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], tuple[CacheEntry, int]] = {}  # key -> (entry, expires_at_ms)
        self._windows: dict[tuple[str, str], RecentWindow] = {}

    async def put(self, asset_id: str, currency: str, price: float, observed_at: int) -> CacheEntry:
        return self._put(asset_id, currency, price, observed_at)

    async def put_many(self, quotes: Iterable[Quote]) -> int:
        n = 0
        for q in quotes:
            self._put(q.asset_id, q.quote_currency, q.price, q.observed_at)
            n += 1
        return n

    async def get(self, asset_id: str, currency: str) -> Optional[CacheEntry]:
        return self.get_nowait(asset_id, currency)

    async def window(self, asset_id: str, currency: str, n: Optional[int] = None) -> list[WindowPoint]:
        key = (asset_id, currency)
        with self._lock:
            w = self._windows.get(key)
            return w.view(n) if w is not None else []

    def get_nowait(self, asset_id: str, currency: str) -> Optional[CacheEntry]:
        key = (asset_id, currency)
        now = self._clock()
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            entry, expires_at = hit
            if now >= expires_at:
                # expired; cleanup
                self._entries.pop(key, None)
                return None
            return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _put(self, asset_id: str, currency: str, price: float, observed_at: int) -> CacheEntry:
        key = (asset_id, currency)
        ttl_s = jittered_ttl_s(self.poll_interval_s, self._rng)
        entry = CacheEntry(price=float(price), observed_at=int(observed_at), ttl_s=ttl_s)
        expires_at = self._clock() + ttl_s * 1000
        with self._lock:
            self._entries[key] = (entry, expires_at)
            w = self._windows.get(key)
            if w is None:
                w = RecentWindow(self.window_capacity)
                self._windows[key] = w
            w.append(entry.price, entry.observed_at)
        return entry
