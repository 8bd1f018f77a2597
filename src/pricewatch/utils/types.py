from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Union

# ---- ingest-level primitives ----

@dataclass(frozen=True, slots=True)
class Quote:
    asset_id: str
    quote_currency: str
    price: float
    observed_at: int  # epoch ms

# ---- published events ----

@dataclass(frozen=True, slots=True)
class PriceTick:
    kind: ClassVar[str] = "price"

    asset_id: str
    quote_currency: str
    price: float
    observed_at: int  # epoch ms

    @classmethod
    def from_quote(cls, q: Quote) -> "PriceTick":
        return cls(
            asset_id=q.asset_id,
            quote_currency=q.quote_currency,
            price=q.price,
            observed_at=q.observed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "asset_id": self.asset_id,
            "quote_currency": self.quote_currency,
            "price": self.price,
            "observed_at": self.observed_at,
        }

@dataclass(frozen=True, slots=True)
class AlertFired:
    kind: ClassVar[str] = "alert"

    alert_id: int
    asset_id: str
    quote_currency: str
    operator: str       # ">" | "<"
    threshold: float
    price: float
    observed_at: int    # epoch ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "alert_id": self.alert_id,
            "asset_id": self.asset_id,
            "quote_currency": self.quote_currency,
            "operator": self.operator,
            "threshold": self.threshold,
            "price": self.price,
            "observed_at": self.observed_at,
        }

PublishedEvent = Union[PriceTick, AlertFired]

def event_to_json(evt: PublishedEvent) -> str:
    return json.dumps(evt.to_dict(), separators=(",", ":"))

def event_from_dict(d: dict[str, Any]) -> PublishedEvent:
    """
    Rebuild an event from its wire dict. Raises ValueError on an unknown
    "type" tag and KeyError/TypeError on missing or malformed fields.
    """
    kind = d.get("type")
    if kind == PriceTick.kind:
        return PriceTick(
            asset_id=str(d["asset_id"]),
            quote_currency=str(d["quote_currency"]),
            price=float(d["price"]),
            observed_at=int(d["observed_at"]),
        )
    if kind == AlertFired.kind:
        return AlertFired(
            alert_id=int(d["alert_id"]),
            asset_id=str(d["asset_id"]),
            quote_currency=str(d["quote_currency"]),
            operator=str(d["operator"]),
            threshold=float(d["threshold"]),
            price=float(d["price"]),
            observed_at=int(d["observed_at"]),
        )
    raise ValueError(f"unknown event type: {kind!r}")

def event_from_json(raw: str | bytes) -> PublishedEvent:
    return event_from_dict(json.loads(raw))
