from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

import aiohttp
import structlog

from pricewatch.errors import RateLimitError, UpstreamError
from pricewatch.ingest.parser import normalize_prices, to_quotes
from pricewatch.utils.backoff import next_backoff, parse_retry_after, rate_limit_wait
from pricewatch.utils.time import utc_now_ms
from pricewatch.utils.types import Quote


@dataclass(slots=True)
class QuoteClientConfig:
    base_url: str = "https://api.coingecko.com/api/v3"
    api_key: Optional[str] = None
    api_key_header: str = "x-cg-pro-api-key"
    user_agent: str = "pricewatch/0.1 (+local-dev)"
    timeout_s: float = 8.0
    # 429 policy: first wait is 2x poll interval, doubled on consecutive 429s, capped
    poll_interval_s: float = 15.0
    max_backoff_s: float = 300.0


@dataclass(slots=True)
class QuoteClientStats:
    requests: int = 0
    failures: int = 0
    rate_limited: int = 0
    backoff_s_total: float = 0.0


class QuoteClient:
    """
    Async client for a CoinGecko-style `simple/price` endpoint.

    fetch() returns {asset_id: {quote_currency: price}} and raises:
      - RateLimitError on HTTP 429, *after* sleeping the backoff inside the call
      - UpstreamError on any other non-2xx status, transport error or bad JSON
    It never retries by itself; the poll loop's next tick is the retry.

    Usage:
        client = QuoteClient(QuoteClientConfig(api_key=...))
        await client.start()
        quotes = await client.fetch_quotes({"bitcoin"}, "usd")
        await client.stop()
    """

    def __init__(
        self,
        cfg: QuoteClientConfig,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._log = structlog.get_logger("quote_client")
        self._backoff: Optional[float] = None  # armed while upstream keeps answering 429
        self.stats = QuoteClientStats()

    # ---------------------------- lifecycle ---------------------------- #

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def stop(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _headers(self) -> dict[str, str]:
        h = {"User-Agent": self.cfg.user_agent, "Accept": "application/json"}
        if self.cfg.api_key:
            h[self.cfg.api_key_header] = self.cfg.api_key
        return h

    # ---------------------------- public API ---------------------------- #

    async def fetch(self, asset_ids: Iterable[str], quote_currency: str) -> dict[str, dict[str, float]]:
        if self._session is None:
            await self.start()
        assert self._session is not None

        ids = sorted(set(asset_ids))
        url = f"{self.cfg.base_url.rstrip('/')}/simple/price"
        params = {"ids": ",".join(ids), "vs_currencies": quote_currency}
        retry_after: Optional[float] = None
        self.stats.requests += 1
        self._log.debug("upstream_fetch", ids=ids, vs=quote_currency)

        try:
            async with self._session.get(url, params=params, headers=self._headers()) as resp:
                status = resp.status
                if status == 429:
                    retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                    body = None
                elif 200 <= status < 300:
                    body = await resp.json(content_type=None)
                else:
                    body = await _maybe_text(resp)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats.failures += 1
            self._log.warning("upstream_network_error", err=str(e) or type(e).__name__)
            raise UpstreamError(f"network error: {e or type(e).__name__}") from e
        except ValueError as e:
            # json decode failure on a 2xx body
            self.stats.failures += 1
            self._log.warning("upstream_bad_json", err=str(e))
            raise UpstreamError(f"invalid JSON from upstream: {e}", status=200) from e

        if status == 429:
            await self._rate_limited(retry_after)  # raises
        if not 200 <= status < 300:
            self.stats.failures += 1
            self._log.warning("upstream_http_error", status=status, body=str(body)[:200])
            raise UpstreamError(f"upstream returned HTTP {status}", status=status)

        self._backoff = None
        return normalize_prices(body, ids, quote_currency)

    async def fetch_quotes(
        self,
        asset_ids: Iterable[str],
        quote_currency: str,
        observed_at: Optional[int] = None,
    ) -> list[Quote]:
        prices = await self.fetch(asset_ids, quote_currency)
        ts = observed_at if observed_at is not None else utc_now_ms()
        return to_quotes(prices, quote_currency, ts)

    # --------------------------- core internals ------------------------- #

    def _floor_s(self) -> float:
        return 2.0 * self.cfg.poll_interval_s

    async def _rate_limited(self, retry_after: Optional[float]) -> None:
        floor = self._floor_s()
        cap = max(self.cfg.max_backoff_s, floor)
        backoff = floor if self._backoff is None else next_backoff(self._backoff, cap)
        self._backoff = backoff
        wait_s = rate_limit_wait(retry_after, backoff, cap)

        self.stats.failures += 1
        self.stats.rate_limited += 1
        self.stats.backoff_s_total += wait_s
        self._log.warning(
            "upstream_rate_limited",
            retry_after=retry_after,
            wait_s=round(wait_s, 3),
            consecutive_backoff_s=round(backoff, 3),
        )
        await self._sleep(wait_s)
        raise RateLimitError("upstream rate limited (HTTP 429)", retry_after=retry_after, waited_s=wait_s)


async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except Exception:
        return "<no body>"
