import pytest

from pricewatch.alerts.evaluator import AlertEvaluator
from pricewatch.alerts.rules import AlertDefinition, Operator
from pricewatch.alerts.store import InMemoryAlertStore
from pricewatch.errors import StoreError
from pricewatch.utils.types import AlertFired, Quote

T0 = 1_700_000_000_000

class _Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

class _FlakyStore(InMemoryAlertStore):
    def __init__(self, alerts, fail_list=False, fail_mark=False):
        super().__init__(alerts)
        self.fail_list = fail_list
        self.fail_mark = fail_mark
        self.marks = []

    async def list_active(self):
        if self.fail_list:
            raise StoreError("db down")
        return await super().list_active()

    async def mark_triggered(self, alert_id, at_ms):
        self.marks.append((alert_id, at_ms))
        if self.fail_mark:
            raise StoreError("db down")
        await super().mark_triggered(alert_id, at_ms)

def _btc(price, ts=T0):
    return [Quote("bitcoin", "usd", price, ts)]

def _above(alert_id=1, threshold=50000.0, **kw):
    return AlertDefinition(alert_id, "bitcoin", "usd", Operator.ABOVE, threshold, **kw)

@pytest.mark.asyncio
async def test_fires_and_records_before_emit():
    store = _FlakyStore([_above()])
    ev = AlertEvaluator(store, clock=_Clock())
    fired = await ev.evaluate(_btc(51000.0), "usd")
    assert fired == [AlertFired(1, "bitcoin", "usd", ">", 50000.0, 51000.0, T0)]
    assert store.marks == [(1, T0)]
    assert store.get(1).last_triggered_at == T0

@pytest.mark.asyncio
async def test_no_fire_at_equality_or_wrong_side():
    store = _FlakyStore([_above(1), AlertDefinition(2, "bitcoin", "usd", Operator.BELOW, 50000.0)])
    ev = AlertEvaluator(store, clock=_Clock())
    assert await ev.evaluate(_btc(50000.0), "usd") == []
    assert store.marks == []

@pytest.mark.asyncio
async def test_cooldown_299s_suppressed_301s_fires():
    clock = _Clock()
    store = _FlakyStore([_above(cooldown_s=300, last_triggered_at=T0)])
    ev = AlertEvaluator(store, clock=clock)

    clock.now = T0 + 299_000
    assert await ev.evaluate(_btc(51000.0, clock.now), "usd") == []
    assert ev.stats.suppressed == 1

    clock.now = T0 + 301_000
    fired = await ev.evaluate(_btc(51000.0, clock.now), "usd")
    assert [f.alert_id for f in fired] == [1]

@pytest.mark.asyncio
async def test_record_failure_still_emits():
    store = _FlakyStore([_above()], fail_mark=True)
    ev = AlertEvaluator(store, clock=_Clock())
    fired = await ev.evaluate(_btc(51000.0), "usd")
    assert len(fired) == 1
    assert ev.stats.record_failures == 1
    assert store.get(1).last_triggered_at is None

@pytest.mark.asyncio
async def test_load_failure_propagates():
    store = _FlakyStore([_above()], fail_list=True)
    ev = AlertEvaluator(store, clock=_Clock())
    with pytest.raises(StoreError):
        await ev.evaluate(_btc(51000.0), "usd")

@pytest.mark.asyncio
async def test_missing_price_and_other_currency_skip():
    store = _FlakyStore([
        AlertDefinition(1, "solana", "usd", Operator.ABOVE, 1.0),
        AlertDefinition(2, "bitcoin", "eur", Operator.ABOVE, 1.0),
    ])
    ev = AlertEvaluator(store, clock=_Clock())
    assert await ev.evaluate(_btc(51000.0), "usd") == []
    assert ev.stats.evaluated == 0

@pytest.mark.asyncio
async def test_each_alert_judged_independently():
    store = _FlakyStore([_above(1, 50000.0), _above(2, 52000.0), _above(3, 40000.0, last_triggered_at=T0)])
    ev = AlertEvaluator(store, clock=_Clock(T0 + 10_000))
    fired = await ev.evaluate(_btc(51000.0), "usd")
    assert [f.alert_id for f in fired] == [1]
