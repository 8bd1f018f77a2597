# src/pricewatch/storage/redis_cache.py
from __future__ import annotations

import json
import random
from typing import Iterable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from pricewatch.data.price_cache import CacheEntry, jittered_ttl_s
from pricewatch.data.ring_buffer import WINDOW_CAPACITY, WindowPoint
from pricewatch.errors import StoreError
from pricewatch.utils.types import Quote

def price_key(asset_id: str, currency: str) -> str:
    # price:{ID}:{VS} -> hash {price, ts, ttl}
    return f"price:{asset_id}:{currency}"

def window_key(asset_id: str, currency: str) -> str:
    # window:{ID}:{VS} -> list of {"price":..,"ts":..}, newest at index 0
    return f"window:{asset_id}:{currency}"

class RedisPriceCache:
    """
    Price cache on Redis. One pipeline per write batch:
      HSET price:{id}:{vs} price ts ttl
      EXPIRE price:{id}:{vs} ttl
      LPUSH window:{id}:{vs} {"price":..,"ts":..}
      LTRIM window:{id}:{vs} 0 capacity-1
    Redis owns expiry; get() just reads what is still there.
    Client must be created with decode_responses=True.
    """
    def __init__(
        self,
        redis: Redis,
        poll_interval_s: float,
        *,
        window_capacity: int = WINDOW_CAPACITY,
        rng: Optional[random.Random] = None,
    ):
        self.redis = redis
        self.poll_interval_s = poll_interval_s
        self.window_capacity = window_capacity
        self._rng = rng

    async def put(self, asset_id: str, currency: str, price: float, observed_at: int) -> CacheEntry:
        entries = await self._write([(asset_id, currency, float(price), int(observed_at))])
        return entries[0]

    async def put_many(self, quotes: Iterable[Quote]) -> int:
        rows = [(q.asset_id, q.quote_currency, q.price, q.observed_at) for q in quotes]
        if not rows:
            return 0
        await self._write(rows)
        return len(rows)

    async def get(self, asset_id: str, currency: str) -> Optional[CacheEntry]:
        try:
            h = await self.redis.hgetall(price_key(asset_id, currency))
        except RedisError as e:
            raise StoreError(f"redis read failed: {e}") from e
        if not h or "price" not in h or "ts" not in h:
            return None
        try:
            return CacheEntry(
                price=float(h["price"]),
                observed_at=int(h["ts"]),
                ttl_s=int(h.get("ttl", 0)),
            )
        except (TypeError, ValueError):
            # treat a corrupted hash like a miss
            return None

    async def window(self, asset_id: str, currency: str, n: Optional[int] = None) -> list[WindowPoint]:
        n = self.window_capacity if n is None else min(int(n), self.window_capacity)
        if n <= 0:
            return []
        try:
            raw = await self.redis.lrange(window_key(asset_id, currency), 0, n - 1)
        except RedisError as e:
            raise StoreError(f"redis read failed: {e}") from e
        out: list[WindowPoint] = []
        for item in raw or []:
            try:
                d = json.loads(item)
                out.append(WindowPoint(price=float(d["price"]), observed_at=int(d["ts"])))
            except (ValueError, KeyError, TypeError):
                # skip malformed points
                continue
        return out

    async def _write(self, rows: list[tuple[str, str, float, int]]) -> list[CacheEntry]:
        p = self.redis.pipeline(transaction=False)
        entries: list[CacheEntry] = []
        for asset_id, currency, price, ts in rows:
            ttl_s = jittered_ttl_s(self.poll_interval_s, self._rng)
            key = price_key(asset_id, currency)
            p.hset(key, mapping={"price": repr(price), "ts": str(ts), "ttl": str(ttl_s)})
            p.expire(key, ttl_s)
            lkey = window_key(asset_id, currency)
            p.lpush(lkey, json.dumps({"price": price, "ts": ts}))
            p.ltrim(lkey, 0, self.window_capacity - 1)
            entries.append(CacheEntry(price=price, observed_at=ts, ttl_s=ttl_s))
        try:
            await p.execute()
        except RedisError as e:
            raise StoreError(f"redis write failed: {e}") from e
        return entries
