from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

import structlog

from pricewatch.alerts.evaluator import AlertEvaluator
from pricewatch.data.price_cache import PriceStore
from pricewatch.errors import RateLimitError, StoreError, UpstreamError
from pricewatch.stream.publisher import EventPublisher
from pricewatch.utils.time import utc_now_ms
from pricewatch.utils.types import PriceTick, Quote

log = structlog.get_logger("poll_loop")

IDLE = "idle"
FETCHING = "fetching"
EVALUATING = "evaluating"
PUBLISHING = "publishing"


class QuoteSource(Protocol):
    async def fetch_quotes(
        self, asset_ids: Sequence[str], quote_currency: str, observed_at: Optional[int] = None
    ) -> list[Quote]: ...


@dataclass(slots=True)
class PollLoopConfig:
    asset_ids: list[str] = field(default_factory=lambda: ["bitcoin", "ethereum", "solana"])
    quote_currency: str = "usd"
    poll_interval_s: float = 15.0
    shutdown_grace_s: float = 5.0


@dataclass(slots=True)
class LoopStats:
    cycles: int = 0
    cycles_ok: int = 0
    upstream_failures: int = 0
    rate_limited: int = 0
    store_failures: int = 0
    unexpected_failures: int = 0
    skipped_ticks: int = 0
    alerts_published: int = 0
    ticks_published: int = 0


def next_tick_at(start: float, now: float, interval: float) -> tuple[float, int]:
    """
    Next grid point strictly after `now` on the grid start + k*interval.
    Returns (deadline, k).
    """
    k = max(1, math.floor((now - start) / interval) + 1)
    return start + k * interval, k


class PollLoop:
    """
    One task, one cycle at a time:
      fetch quotes -> evaluate alerts -> publish alerts -> write cache -> publish ticks
    A failing cycle writes nothing it hasn't already written, is logged and
    counted, and the next cycle runs on the normal grid.
    """
    def __init__(
        self,
        *,
        client: QuoteSource,
        evaluator: AlertEvaluator,
        cache: PriceStore,
        publisher: EventPublisher,
        cfg: Optional[PollLoopConfig] = None,
        clock: Callable[[], int] = utc_now_ms,
    ):
        self.client = client
        self.evaluator = evaluator
        self.cache = cache
        self.publisher = publisher
        self.cfg = cfg or PollLoopConfig()
        self.clock = clock
        self.state = IDLE
        self.stats = LoopStats()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="poll-loop")

    async def stop(self) -> None:
        self._stop.set()
        task, self._task = self._task, None
        if task is None:
            return
        done, _ = await asyncio.wait({task}, timeout=self.cfg.shutdown_grace_s)
        if not done:
            log.warning("poll_loop_cancel_inflight", state=self.state)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        elif not task.cancelled() and task.exception() is not None:
            log.error("poll_loop_crashed", err=str(task.exception()))

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.cfg.poll_interval_s
        start = loop.time()
        tick = 0
        log.info("poll_loop_started", ids=self.cfg.asset_ids, vs=self.cfg.quote_currency,
                 interval_s=interval)
        while not self._stop.is_set():
            await self.run_cycle()

            now = loop.time()
            deadline, k = next_tick_at(start, now, interval)
            skipped = k - tick - 1
            if skipped > 0:
                self.stats.skipped_ticks += skipped
                log.warning("poll_ticks_skipped", skipped=skipped)
            tick = k
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, deadline - now))
            except asyncio.TimeoutError:
                pass
        log.info("poll_loop_exit", stats=str(self.stats))

    async def run_cycle(self) -> bool:
        """Run exactly one cycle. Returns True when it completed without error."""
        self.stats.cycles += 1
        cfg = self.cfg
        try:
            self.state = FETCHING
            quotes = await self.client.fetch_quotes(cfg.asset_ids, cfg.quote_currency, self.clock())
            if not quotes:
                log.warning("poll_no_quotes", ids=cfg.asset_ids)

            self.state = EVALUATING
            fired = await self.evaluator.evaluate(quotes, cfg.quote_currency)

            self.state = PUBLISHING
            for evt in fired:
                await self.publisher.publish(evt)
                self.stats.alerts_published += 1
            await self.cache.put_many(quotes)
            for q in quotes:
                await self.publisher.publish(PriceTick.from_quote(q))
                self.stats.ticks_published += 1

            self.stats.cycles_ok += 1
            log.debug("poll_cycle_ok", quotes=len(quotes), alerts=len(fired))
            return True
        except RateLimitError as e:
            self.stats.rate_limited += 1
            log.warning("poll_cycle_rate_limited", waited_s=round(e.waited_s, 3))
        except UpstreamError as e:
            self.stats.upstream_failures += 1
            log.warning("poll_cycle_upstream_error", status=e.status, err=str(e))
        except StoreError as e:
            self.stats.store_failures += 1
            log.error("poll_cycle_store_error", state=self.state, err=str(e))
        except Exception as e:
            self.stats.unexpected_failures += 1
            log.exception("poll_cycle_failed", state=self.state, err=str(e))
        finally:
            self.state = IDLE
        return False
