import asyncio

import pytest

from pricewatch.alerts.evaluator import AlertEvaluator
from pricewatch.alerts.rules import AlertDefinition, Operator
from pricewatch.alerts.store import InMemoryAlertStore
from pricewatch.data.price_cache import PriceCache
from pricewatch.errors import RateLimitError, StoreError, UpstreamError
from pricewatch.stream.fanout import Broadcaster
from pricewatch.stream.publisher import LocalPublisher
from pricewatch.utils.types import AlertFired, PriceTick, Quote
from pricewatch.worker.poll_loop import IDLE, PollLoop, PollLoopConfig, next_tick_at

T0 = 1_700_000_000_000

class _FakeClient:
    """Returns scripted results per call; exceptions are raised."""
    def __init__(self, *script, delay=0.0):
        self.script = list(script)
        self.calls = []
        self.delay = delay

    async def fetch_quotes(self, asset_ids, quote_currency, observed_at=None):
        self.calls.append(asyncio.get_running_loop().time())
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.script.pop(0) if self.script else []
        if isinstance(item, BaseException):
            raise item
        return [Quote(a, quote_currency, px, observed_at) for a, px in item]

class _BrokenStore(InMemoryAlertStore):
    async def list_active(self):
        raise StoreError("db down")

def _loop(client, store=None, interval=15.0, clock=lambda: T0):
    b = Broadcaster()
    sub = b.register()
    cache = PriceCache(interval, clock=clock)
    loop = PollLoop(
        client=client,
        evaluator=AlertEvaluator(store or InMemoryAlertStore(), clock=clock),
        cache=cache,
        publisher=LocalPublisher(b),
        cfg=PollLoopConfig(asset_ids=["bitcoin", "ethereum"], quote_currency="usd",
                           poll_interval_s=interval, shutdown_grace_s=0.5),
        clock=clock,
    )
    return loop, cache, sub

def _drain(sub):
    out = []
    while sub.qsize():
        out.append(sub.get_nowait())
    return out

def test_next_tick_grid():
    assert next_tick_at(100.0, 100.0, 15.0) == (115.0, 1)
    assert next_tick_at(100.0, 114.9, 15.0) == (115.0, 1)
    # a 40s cycle skips the 115 and 130 ticks
    assert next_tick_at(100.0, 140.0, 15.0) == (145.0, 3)

@pytest.mark.asyncio
async def test_cycle_orders_alerts_before_cache_and_ticks():
    store = InMemoryAlertStore([AlertDefinition(1, "bitcoin", "usd", Operator.ABOVE, 50000.0)])
    loop, cache, sub = _loop(_FakeClient([("bitcoin", 51000.0), ("ethereum", 2400.0)]), store)

    assert await loop.run_cycle() is True
    events = _drain(sub)
    assert isinstance(events[0], AlertFired)
    assert [e.asset_id for e in events[1:]] == ["bitcoin", "ethereum"]
    assert all(isinstance(e, PriceTick) for e in events[1:])
    assert (await cache.get("bitcoin", "usd")).price == 51000.0
    assert loop.state == IDLE

@pytest.mark.asyncio
@pytest.mark.parametrize("exc,counter", [
    (UpstreamError("HTTP 500", status=500), "upstream_failures"),
    (RateLimitError("429", waited_s=30.0), "rate_limited"),
    (RuntimeError("surprise"), "unexpected_failures"),
])
async def test_failed_fetch_writes_nothing(exc, counter):
    loop, cache, sub = _loop(_FakeClient(exc))
    assert await loop.run_cycle() is False
    assert getattr(loop.stats, counter) == 1
    assert len(cache) == 0
    assert _drain(sub) == []
    assert loop.state == IDLE

@pytest.mark.asyncio
async def test_store_failure_aborts_before_publish():
    loop, cache, sub = _loop(_FakeClient([("bitcoin", 51000.0)]), _BrokenStore())
    assert await loop.run_cycle() is False
    assert loop.stats.store_failures == 1
    assert len(cache) == 0
    assert _drain(sub) == []

@pytest.mark.asyncio
async def test_failure_then_recovery():
    loop, cache, sub = _loop(_FakeClient(UpstreamError("down"), [("bitcoin", 51000.0)]))
    assert await loop.run_cycle() is False
    assert await loop.run_cycle() is True
    assert loop.stats.cycles == 2 and loop.stats.cycles_ok == 1
    assert [e.price for e in _drain(sub)] == [51000.0]

@pytest.mark.asyncio
async def test_first_cycle_immediate_then_on_interval_even_after_failure():
    client = _FakeClient(UpstreamError("down"), [("bitcoin", 1.0)], [("bitcoin", 2.0)])
    loop, _, _ = _loop(client, interval=0.1)
    started = asyncio.get_running_loop().time()
    await loop.start()
    await asyncio.sleep(0.25)
    await loop.stop()

    assert len(client.calls) >= 2
    assert client.calls[0] - started < 0.05
    assert client.calls[1] - client.calls[0] == pytest.approx(0.1, abs=0.05)
    assert loop.stats.upstream_failures == 1

@pytest.mark.asyncio
async def test_overlong_cycle_skips_missed_ticks():
    client = _FakeClient([("bitcoin", 1.0)], delay=0.12)
    loop, _, _ = _loop(client, interval=0.05)
    await loop.start()
    await asyncio.sleep(0.15)
    await loop.stop()
    assert loop.stats.skipped_ticks >= 1

@pytest.mark.asyncio
async def test_stop_interrupts_wait():
    loop, _, _ = _loop(_FakeClient([("bitcoin", 1.0)]), interval=60.0)
    await loop.start()
    await asyncio.sleep(0.02)
    t = asyncio.get_running_loop().time()
    await loop.stop()
    assert asyncio.get_running_loop().time() - t < 0.5
    assert loop.stats.cycles == 1

@pytest.mark.asyncio
async def test_stop_cancels_stuck_cycle_after_grace():
    loop, _, _ = _loop(_FakeClient([("bitcoin", 1.0)], delay=30.0), interval=60.0)
    await loop.start()
    await asyncio.sleep(0.02)
    await loop.stop()
    assert loop.stats.cycles_ok == 0
