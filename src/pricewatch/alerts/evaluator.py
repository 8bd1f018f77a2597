from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

import structlog

from pricewatch.alerts.store import AlertStore
from pricewatch.errors import RecordingError, StoreError
from pricewatch.utils.time import utc_now_ms
from pricewatch.utils.types import AlertFired, Quote

log = structlog.get_logger("alert_evaluator")

@dataclass(slots=True)
class EvaluatorStats:
    evaluated: int = 0
    fired: int = 0
    suppressed: int = 0
    record_failures: int = 0


class AlertEvaluator:
    """
    Threshold evaluation against one cycle's quotes.

    For every active alert whose (asset, currency) has a price this cycle:
      - skip while inside the cooldown window (last_triggered_at + cooldown)
      - fire on strict > / < against the threshold
      - stamp last_triggered_at in the store BEFORE emitting, so the next
        cycle sees the cooldown even if this process dies right after

    A failed stamp is logged and counted; the firing is still emitted.
    A failed snapshot load raises StoreError and nothing is evaluated.
    """
    def __init__(self, store: AlertStore, *, clock: Callable[[], int] = utc_now_ms):
        self.store = store
        self.clock = clock
        self.stats = EvaluatorStats()

    async def evaluate(self, quotes: Sequence[Quote], quote_currency: str) -> list[AlertFired]:
        alerts = await self.store.list_active()   # StoreError propagates
        prices = {q.asset_id: q for q in quotes if q.quote_currency == quote_currency}
        if not prices or not alerts:
            return []

        now = self.clock()
        fired: list[AlertFired] = []
        for a in alerts:
            if a.quote_currency != quote_currency:
                continue
            q = prices.get(a.asset_id)
            if q is None:
                continue
            self.stats.evaluated += 1

            if a.in_cooldown(now):
                self.stats.suppressed += 1
                continue
            if not a.matches(q.price):
                continue

            try:
                await self.store.mark_triggered(a.id, now)
            except StoreError as e:
                err = RecordingError(a.id, e)
                self.stats.record_failures += 1
                log.error("alert_record_failed", alert_id=a.id, err=str(err))

            evt = AlertFired(
                alert_id=a.id,
                asset_id=a.asset_id,
                quote_currency=a.quote_currency,
                operator=a.operator.value,
                threshold=a.threshold,
                price=q.price,
                observed_at=q.observed_at,
            )
            fired.append(evt)
            self.stats.fired += 1
            log.info("alert_fired", alert_id=a.id, asset=a.asset_id, op=a.operator.value,
                     threshold=a.threshold, price=q.price)
        return fired
