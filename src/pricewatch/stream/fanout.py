from __future__ import annotations

import asyncio
import itertools
import threading
from dataclasses import dataclass
from typing import Optional

import structlog

from pricewatch.utils.types import PublishedEvent

log = structlog.get_logger("fanout")

@dataclass(slots=True)
class SubscriptionStats:
    enq_ok: int = 0
    enq_drop: int = 0
    deq_ok: int = 0

class Subscription:
    """
    One subscriber's bounded, non-blocking inbox.
    - try_put(evt) drops on full and increments a counter
    - get() awaits like a normal queue
    """
    def __init__(self, sub_id: int, maxsize: int = 256):
        self.id = sub_id
        self._q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.stats = SubscriptionStats()
        self.closed = False

    def try_put(self, evt: PublishedEvent) -> bool:
        if self.closed:
            return False
        try:
            self._q.put_nowait(evt)
            self.stats.enq_ok += 1
            return True
        except asyncio.QueueFull:
            self.stats.enq_drop += 1
            return False

    async def get(self) -> PublishedEvent:
        item = await self._q.get()
        self.stats.deq_ok += 1
        return item

    def get_nowait(self) -> PublishedEvent:
        item = self._q.get_nowait()
        self.stats.deq_ok += 1
        return item

    def qsize(self) -> int:
        return self._q.qsize()

    def close(self) -> None:
        self.closed = True

class Broadcaster:
    """
    Registry of live subscribers. broadcast() hands every event to every
    registered subscription without blocking: a full inbox loses that event
    for that subscriber only.

    register()/unregister() may be called at any time, including while a
    broadcast is in progress; broadcast iterates a snapshot taken under the lock.
    """
    def __init__(self, default_maxsize: int = 256):
        self.default_maxsize = default_maxsize
        self._subs: dict[int, Subscription] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.broadcasts = 0

    def register(self, maxsize: Optional[int] = None) -> Subscription:
        with self._lock:
            sub = Subscription(next(self._ids), maxsize=maxsize or self.default_maxsize)
            self._subs[sub.id] = sub
            n = len(self._subs)
        log.info("subscriber_registered", sub_id=sub.id, total=n)
        return sub

    def unregister(self, sub: Subscription) -> None:
        sub.close()
        with self._lock:
            removed = self._subs.pop(sub.id, None)
            n = len(self._subs)
        if removed is not None:
            log.info("subscriber_unregistered", sub_id=sub.id, total=n,
                     delivered=sub.stats.enq_ok, dropped=sub.stats.enq_drop)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def broadcast(self, evt: PublishedEvent) -> int:
        """Deliver to all current subscribers; returns how many accepted it."""
        with self._lock:
            targets = list(self._subs.values())
        self.broadcasts += 1
        delivered = 0
        for sub in targets:
            try:
                if sub.try_put(evt):
                    delivered += 1
            except Exception as e:
                # a broken inbox is that subscriber's problem only
                log.warning("subscriber_delivery_failed", sub_id=sub.id, err=str(e))
        return delivered
