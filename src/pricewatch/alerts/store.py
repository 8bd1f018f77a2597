from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol

import structlog

from pricewatch.alerts.rules import AlertDefinition, Operator
from pricewatch.errors import StoreError
from pricewatch.utils.time import dt_to_ms

log = structlog.get_logger("alert_store")

# legacy type names seen in older rows
_OPERATOR_ALIASES = {
    ">": Operator.ABOVE,
    "above": Operator.ABOVE,
    "<": Operator.BELOW,
    "below": Operator.BELOW,
}

DEFAULT_COOLDOWN_S = 300


class AlertStore(Protocol):
    """
    Read side of the externally owned alert definitions.
    list_active() returns a consistent snapshot; mark_triggered() must be
    durable before the next list_active() can observe it.
    Both raise StoreError on I/O failure.
    """

    async def list_active(self) -> list[AlertDefinition]: ...

    async def mark_triggered(self, alert_id: int, at_ms: int) -> None: ...


def _parse_operator(raw: Any) -> Operator:
    op = _OPERATOR_ALIASES.get(str(raw).strip().lower())
    if op is None:
        return Operator.parse(str(raw))  # raises ValueError
    return op


def _parse_ts(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return dt_to_ms(raw)
    if isinstance(raw, (int, float)):
        return int(raw)
    if isinstance(raw, str):
        return dt_to_ms(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    raise ValueError(f"unsupported timestamp: {raw!r}")


def definition_from_row(row: Mapping[str, Any], default_currency: str = "usd") -> AlertDefinition:
    """
    Translate one stored alert record into the canonical AlertDefinition.

    Accepted shapes:
      canonical: {id, asset_id, quote_currency, operator, threshold, cooldown_s, ...}
      v2 table:  {id, coin_id, vs_currency, type, value, cooldown_sec, active, last_triggered_at}
      v1 legacy: {id, coin, op, price}
    Raises ValueError for unknown operators or missing fields.
    """
    asset_id = row.get("asset_id") or row.get("coin_id") or row.get("coin")
    if not asset_id:
        raise ValueError("alert row has no asset id")
    currency = row.get("quote_currency") or row.get("vs_currency") or default_currency

    raw_op = row.get("operator", row.get("type", row.get("op")))
    if raw_op is None:
        raise ValueError("alert row has no operator")
    operator = _parse_operator(raw_op)

    raw_threshold = row.get("threshold", row.get("value", row.get("price")))
    if raw_threshold is None:
        raise ValueError("alert row has no threshold")

    cooldown = row.get("cooldown_s", row.get("cooldown_sec"))
    return AlertDefinition(
        id=int(row["id"]),
        asset_id=str(asset_id),
        quote_currency=str(currency),
        operator=operator,
        threshold=float(raw_threshold),
        cooldown_s=int(cooldown) if cooldown is not None else DEFAULT_COOLDOWN_S,
        active=bool(row.get("active", True)),
        last_triggered_at=_parse_ts(row.get("last_triggered_at")),
    )


def definitions_from_rows(rows: Iterable[Mapping[str, Any]], default_currency: str = "usd") -> list[AlertDefinition]:
    """Translate rows, dropping (and logging) the ones that can't be represented."""
    out: list[AlertDefinition] = []
    for row in rows:
        try:
            out.append(definition_from_row(row, default_currency))
        except (ValueError, KeyError, TypeError) as e:
            log.warning("alert_row_rejected", alert_id=row.get("id"), err=str(e))
    return out


class InMemoryAlertStore:
    """Dict-backed store for tests and store-less runs."""
    def __init__(self, alerts: Iterable[AlertDefinition] = ()):
        self._alerts: dict[int, AlertDefinition] = {a.id: a for a in alerts}

    def add(self, alert: AlertDefinition) -> None:
        self._alerts[alert.id] = alert

    def get(self, alert_id: int) -> Optional[AlertDefinition]:
        return self._alerts.get(alert_id)

    async def list_active(self) -> list[AlertDefinition]:
        return [a for a in self._alerts.values() if a.active]

    async def mark_triggered(self, alert_id: int, at_ms: int) -> None:
        a = self._alerts.get(alert_id)
        if a is None:
            raise StoreError(f"alert {alert_id} not found")
        self._alerts[alert_id] = dataclasses.replace(a, last_triggered_at=at_ms)
