# src/pricewatch/alerts/rules.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Operator(str, Enum):
    """
    Threshold comparison. Closed set: anything else is rejected when alert rows
    are read, it never reaches the evaluator.
      ABOVE ">"  -> fires when price >  threshold
      BELOW "<"  -> fires when price <  threshold
    Equality never fires.
    """
    ABOVE = ">"
    BELOW = "<"

    @classmethod
    def parse(cls, raw: str) -> "Operator":
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(f"unsupported alert operator: {raw!r}") from None

    def matches(self, price: float, threshold: float) -> bool:
        if self is Operator.ABOVE:
            return price > threshold
        if self is Operator.BELOW:
            return price < threshold
        raise ValueError(f"unhandled operator: {self!r}")


@dataclass(frozen=True, slots=True)
class AlertDefinition:
    id: int
    asset_id: str
    quote_currency: str
    operator: Operator
    threshold: float
    cooldown_s: int = 300
    active: bool = True
    last_triggered_at: Optional[int] = None   # epoch ms

    def in_cooldown(self, now_ms: int) -> bool:
        if self.last_triggered_at is None:
            return False
        return now_ms - self.last_triggered_at < self.cooldown_s * 1000

    def matches(self, price: float) -> bool:
        return self.operator.matches(price, self.threshold)
