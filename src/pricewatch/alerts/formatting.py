from __future__ import annotations
from datetime import datetime
from zoneinfo import ZoneInfo

from pricewatch.utils.types import AlertFired

def _fmt_ts(ts_ms: int, tz_name: str) -> str:
    tz = ZoneInfo(tz_name)
    return datetime.fromtimestamp(ts_ms / 1000.0, tz).strftime("%H:%M:%S %Z")  # e.g., 16:28:30 UTC

def format_alert_pretty(evt: AlertFired, tz_name: str = "UTC") -> str:
    arrow = "↑" if evt.operator == ">" else "↓"
    word  = "ABOVE" if evt.operator == ">" else "BELOW"
    ccy   = evt.quote_currency.upper()
    gap   = (evt.price - evt.threshold) / evt.threshold * 100.0 if evt.threshold else 0.0
    return (
        f"[{evt.asset_id} {word}] {_fmt_ts(evt.observed_at, tz_name)} {arrow} "
        f"{evt.price:,.2f} {ccy} {evt.operator} {evt.threshold:,.2f} ({gap:+.2f}%)  "
        f"|  alert #{evt.alert_id}"
    )
