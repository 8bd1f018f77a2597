from __future__ import annotations

import math
from typing import Any, Iterable, Optional

from pricewatch.utils.types import Quote

def _as_price(raw: Any) -> Optional[float]:
    # bool is an int subclass; a true/false price is garbage, not 1.0/0.0
    if raw is None or isinstance(raw, bool):
        return None
    try:
        px = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(px):
        return None
    return px

def normalize_prices(
    data: Any,
    asset_ids: Iterable[str],
    quote_currency: str,
) -> dict[str, dict[str, float]]:
    """
    Reduce an upstream `simple/price` body to {asset_id: {quote_currency: price}}.

    Upstream shape (CoinGecko):
      {"bitcoin": {"usd": 51000.12}, "ethereum": {"usd": 2400.5}}

    Anything that doesn't fit (body not an object, id missing, nested value not
    an object, price missing/non-numeric/NaN) means "no data for that id this
    cycle" and is dropped silently.
    """
    out: dict[str, dict[str, float]] = {}
    if not isinstance(data, dict):
        return out
    for asset_id in asset_ids:
        obj = data.get(asset_id)
        if not isinstance(obj, dict):
            continue
        px = _as_price(obj.get(quote_currency))
        if px is None:
            continue
        out[asset_id] = {quote_currency: px}
    return out

def to_quotes(
    prices: dict[str, dict[str, float]],
    quote_currency: str,
    observed_at: int,
) -> list[Quote]:
    """Normalized price mapping -> Quote list (sorted by asset id for stable ordering)."""
    quotes: list[Quote] = []
    for asset_id in sorted(prices):
        px = prices[asset_id].get(quote_currency)
        if px is None:
            continue
        quotes.append(
            Quote(asset_id=asset_id, quote_currency=quote_currency, price=px, observed_at=observed_at)
        )
    return quotes
