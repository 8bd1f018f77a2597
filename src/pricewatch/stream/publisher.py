from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

import structlog

from pricewatch.stream.fanout import Broadcaster
from pricewatch.utils.types import PublishedEvent

log = structlog.get_logger("publisher")

@dataclass(slots=True)
class PublisherStats:
    published: int = 0
    failed: int = 0

class EventPublisher(Protocol):
    """Fire-and-forget: no acknowledgement, no retry, never raises on delivery failure."""

    async def publish(self, evt: PublishedEvent) -> None: ...

class LocalPublisher:
    """Single in-process topic: events go straight into the fan-out."""
    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster
        self.stats = PublisherStats()

    async def publish(self, evt: PublishedEvent) -> None:
        self.broadcaster.broadcast(evt)
        self.stats.published += 1

class MultiPublisher:
    """Publish to several publishers in order; one failing never stops the others."""
    def __init__(self, publishers: Sequence[EventPublisher]):
        self.publishers = list(publishers)

    async def publish(self, evt: PublishedEvent) -> None:
        for p in self.publishers:
            try:
                await p.publish(evt)
            except Exception as e:
                log.warning("publisher_failed", publisher=type(p).__name__, err=str(e))
