from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from pricewatch.stream.fanout import Broadcaster
from pricewatch.stream.publisher import PublisherStats
from pricewatch.utils.backoff import jitter, next_backoff
from pricewatch.utils.types import PriceTick, PublishedEvent, event_from_json, event_to_json

# price ticks only
PRICE_TOPIC = "prices.global"
# price ticks + alert firings
COMBINED_TOPIC = "events.global"

log = structlog.get_logger("redis_pubsub")

class RedisPublisher:
    """
    Publishes events over Redis pub/sub. Best-effort: errors are logged and
    counted, never raised to the poll loop.
      PriceTick  -> PRICE_TOPIC and COMBINED_TOPIC
      AlertFired -> COMBINED_TOPIC
    """
    def __init__(
        self,
        redis: Redis,
        *,
        price_topic: str = PRICE_TOPIC,
        combined_topic: str = COMBINED_TOPIC,
    ):
        self.redis = redis
        self.price_topic = price_topic
        self.combined_topic = combined_topic
        self.stats = PublisherStats()

    def topics_for(self, evt: PublishedEvent) -> list[str]:
        if isinstance(evt, PriceTick):
            return [self.price_topic, self.combined_topic]
        return [self.combined_topic]

    async def publish(self, evt: PublishedEvent) -> None:
        payload = event_to_json(evt)
        for topic in self.topics_for(evt):
            try:
                await self.redis.publish(topic, payload)
                self.stats.published += 1
            except (RedisError, OSError) as e:
                self.stats.failed += 1
                log.warning("publish_failed", topic=topic, kind=evt.kind, err=str(e))

class RedisRelay:
    """
    Subscribes to the combined topic and re-broadcasts every event into the
    local fan-out. Reconnects with jittered exponential backoff.
    """
    def __init__(
        self,
        redis: Redis,
        broadcaster: Broadcaster,
        *,
        channel: str = COMBINED_TOPIC,
        initial_backoff_s: float = 0.5,
        max_backoff_s: float = 30.0,
    ):
        self.redis = redis
        self.broadcaster = broadcaster
        self.channel = channel
        self.initial_backoff_s = initial_backoff_s
        self.max_backoff_s = max_backoff_s
        self.relayed = 0
        self.malformed = 0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="redis-relay")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        backoff = self.initial_backoff_s
        while not self._stop.is_set():
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                log.info("relay_subscribed", channel=self.channel)
                backoff = self.initial_backoff_s
                async for msg in pubsub.listen():
                    self.handle_message(msg)
                log.warning("relay_stream_ended", backoff_s=round(backoff, 3))
            except (RedisError, OSError) as e:
                log.warning("relay_error_reconnect", err=str(e), backoff_s=round(backoff, 3))
            finally:
                try:
                    await pubsub.aclose()
                except (RedisError, OSError) as e:
                    log.debug("relay_close_failed", err=str(e))
            if self._stop.is_set():
                break
            await asyncio.sleep(jitter(backoff))
            backoff = next_backoff(backoff, self.max_backoff_s)
        log.info("relay_loop_exit")

    def handle_message(self, msg: dict) -> Optional[PublishedEvent]:
        if msg.get("type") != "message":
            # subscribe acks etc.
            return None
        try:
            evt = event_from_json(msg["data"])
        except (ValueError, KeyError, TypeError) as e:
            self.malformed += 1
            log.warning("relay_malformed_event", err=str(e), snippet=str(msg.get("data"))[:200])
            return None
        self.broadcaster.broadcast(evt)
        self.relayed += 1
        return evt
