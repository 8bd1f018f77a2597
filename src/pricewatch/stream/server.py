from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Iterable, Optional
from urllib.parse import parse_qs, urlsplit

import structlog
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from pricewatch.data.price_cache import PriceStore
from pricewatch.stream.fanout import Broadcaster, Subscription
from pricewatch.utils.types import event_to_json

log = structlog.get_logger("stream_server")

STREAM_PATH = "/stream"


@dataclass(slots=True)
class StreamServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    default_currency: str = "usd"
    subscriber_queue: int = 256
    ping_interval_s: Optional[float] = 20.0


def _json_response(status: HTTPStatus, payload: Any) -> Response:
    body = json.dumps(payload, separators=(",", ":")).encode()
    headers = Headers([
        ("Content-Type", "application/json"),
        ("Content-Length", str(len(body))),
        ("Cache-Control", "no-store"),
        ("Connection", "close"),
    ])
    return Response(status.value, status.phrase, headers, body)


async def prices_payload(cache: PriceStore, asset_ids: Iterable[str], currency: str) -> dict[str, Any]:
    """{"data": {id: {vs: price, "ts": ms}}, "source": "cache"}; absent entries are omitted."""
    data: dict[str, Any] = {}
    for aid in asset_ids:
        entry = await cache.get(aid, currency)
        if entry is None:
            continue
        data[aid] = {currency: entry.price, "ts": entry.observed_at}
    return {"data": data, "source": "cache"}


class StreamServer:
    """
    One port, three routes:
      GET /health             -> {"ok": true}
      GET /prices?ids=&vs=    -> cached latest prices
      WS  /stream             -> live PublishedEvent JSON, one message per event
    Every websocket client gets its own fan-out subscription; a slow client
    loses events instead of stalling the others.
    """
    def __init__(self, broadcaster: Broadcaster, cache: PriceStore, cfg: Optional[StreamServerConfig] = None):
        self.broadcaster = broadcaster
        self.cache = cache
        self.cfg = cfg or StreamServerConfig()
        self._server: Optional[Server] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def start(self) -> None:
        self._server = await serve(
            self._handler,
            self.cfg.host,
            self.cfg.port,
            process_request=self._process_request,
            ping_interval=self.cfg.ping_interval_s,
        )
        log.info("stream_server_listening", host=self.cfg.host, port=self.port)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        try:
            await self._server.wait_closed()
        except OSError as e:
            log.warning("stream_server_close_failed", err=str(e))
        self._server = None

    async def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        url = urlsplit(request.path)
        if url.path == STREAM_PATH:
            return None  # continue with the websocket handshake
        if url.path == "/health":
            return _json_response(HTTPStatus.OK, {"ok": True})
        if url.path == "/prices":
            qs = parse_qs(url.query)
            ids = [s.strip() for s in ",".join(qs.get("ids", [])).split(",") if s.strip()]
            vs = (qs.get("vs") or [self.cfg.default_currency])[0].strip() or self.cfg.default_currency
            if not ids:
                return _json_response(HTTPStatus.BAD_REQUEST, {"error": "ids is required"})
            return _json_response(HTTPStatus.OK, await prices_payload(self.cache, ids, vs))
        return _json_response(HTTPStatus.NOT_FOUND, {"error": "not found"})

    async def _handler(self, ws: ServerConnection) -> None:
        sub = self.broadcaster.register(maxsize=self.cfg.subscriber_queue)
        pump = asyncio.create_task(self._pump(ws, sub), name=f"ws-pump-{sub.id}")
        try:
            # inbound messages are ignored; reading keeps close frames flowing
            async for _ in ws:
                pass
        except ConnectionClosed:
            pass
        finally:
            pump.cancel()
            self.broadcaster.unregister(sub)
            log.debug("stream_client_gone", sub_id=sub.id, dropped=sub.stats.enq_drop)

    async def _pump(self, ws: ServerConnection, sub: Subscription) -> None:
        try:
            while True:
                evt = await sub.get()
                await ws.send(event_to_json(evt))
        except ConnectionClosed:
            pass
