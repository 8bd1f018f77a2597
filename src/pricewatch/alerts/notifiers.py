# src/pricewatch/alerts/notifiers.py
from __future__ import annotations
import asyncio
import structlog
from typing import Callable, Optional

from pricewatch.stream.fanout import Broadcaster, Subscription
from pricewatch.utils.types import AlertFired, PublishedEvent

log = structlog.get_logger("notifier")

class ConsoleNotifier:
    """
    Local subscriber that prints alert firings to stdout. Price ticks are ignored.
    """
    def __init__(
        self,
        broadcaster: Broadcaster,
        format_fn: Optional[Callable[[AlertFired], str]] = None,
        *,
        maxsize: int = 1024,
    ):
        self.broadcaster = broadcaster
        self._format_fn = format_fn
        self._maxsize = maxsize
        self._sub: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self.printed = 0

    async def start(self) -> None:
        self._sub = self.broadcaster.register(maxsize=self._maxsize)
        self._task = asyncio.create_task(self._loop(), name="console-notifier")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._sub:
            self.broadcaster.unregister(self._sub)
            self._sub = None

    async def _loop(self) -> None:
        assert self._sub is not None
        while True:
            evt = await self._sub.get()
            self.send(evt)

    def send(self, evt: PublishedEvent) -> bool:
        if not isinstance(evt, AlertFired):
            return False
        if self._format_fn:
            try:
                print(self._format_fn(evt), flush=True)
                self.printed += 1
                return True
            except Exception as e:
                log.warning("console_format_failed", err=str(e))
        # fallback (raw)
        print(f"[ALERT] #{evt.alert_id} {evt.asset_id} {evt.operator} {evt.threshold} "
              f"price={evt.price} {evt.quote_currency}", flush=True)
        self.printed += 1
        return True
