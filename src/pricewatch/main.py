# src/pricewatch/main.py
import asyncio
import logging
import signal
from typing import Optional

import structlog
from redis.asyncio import Redis

from pricewatch.alerts.evaluator import AlertEvaluator
from pricewatch.alerts.formatting import format_alert_pretty
from pricewatch.alerts.notifiers import ConsoleNotifier
from pricewatch.alerts.store import AlertStore, InMemoryAlertStore
from pricewatch.alerts.store_sql import SqlAlertStore
from pricewatch.config import Settings, settings_from_env
from pricewatch.data.price_cache import PriceCache, PriceStore
from pricewatch.ingest.quote_client import QuoteClient, QuoteClientConfig
from pricewatch.storage.redis_cache import RedisPriceCache
from pricewatch.storage.redis_pubsub import RedisPublisher, RedisRelay
from pricewatch.stream.fanout import Broadcaster
from pricewatch.stream.publisher import EventPublisher, LocalPublisher
from pricewatch.stream.server import StreamServer, StreamServerConfig
from pricewatch.worker.poll_loop import PollLoop, PollLoopConfig

log = structlog.get_logger("main")


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        cache_logger_on_first_use=False,
    )


# ---------------------------
# Main
# ---------------------------

async def main(settings: Optional[Settings] = None):
    settings = settings or settings_from_env()
    configure_logging(settings.log_level, settings.log_json)

    broadcaster = Broadcaster()

    # Storage: Redis when configured, otherwise everything stays in-process
    redis_client: Optional[Redis] = None
    relay: Optional[RedisRelay] = None
    cache: PriceStore
    publisher: EventPublisher
    if settings.redis_url:
        redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
        cache = RedisPriceCache(redis_client, settings.poll_interval_s)
        publisher = RedisPublisher(redis_client)
        # local subscribers see exactly what went over the wire
        relay = RedisRelay(redis_client, broadcaster)
    else:
        cache = PriceCache(settings.poll_interval_s)
        publisher = LocalPublisher(broadcaster)
    log.info("storage_selected", backend="redis" if redis_client else "memory")

    # Alert definitions
    store: AlertStore
    sql_store: Optional[SqlAlertStore] = None
    if settings.pg_url:
        sql_store = SqlAlertStore(settings.pg_url)
        store = sql_store
    else:
        store = InMemoryAlertStore()
        log.warning("alert_store_in_memory", hint="set PG_URL to evaluate stored alerts")

    client = QuoteClient(QuoteClientConfig(
        base_url=settings.coingecko_base_url,
        api_key=settings.coingecko_api_key,
        timeout_s=settings.http_timeout_s,
        poll_interval_s=settings.poll_interval_s,
        max_backoff_s=settings.max_backoff_s,
    ))
    poller = PollLoop(
        client=client,
        evaluator=AlertEvaluator(store),
        cache=cache,
        publisher=publisher,
        cfg=PollLoopConfig(
            asset_ids=settings.coin_ids,
            quote_currency=settings.vs,
            poll_interval_s=settings.poll_interval_s,
        ),
    )
    server = StreamServer(broadcaster, cache, StreamServerConfig(
        host=settings.host, port=settings.port, default_currency=settings.vs,
    ))
    notifier = ConsoleNotifier(broadcaster, format_fn=format_alert_pretty) if settings.print_alerts else None

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # no signal handlers on this platform; Ctrl+C still raises KeyboardInterrupt
            pass

    # ----- Run everything -----
    started = []
    try:
        await client.start()
        started.append(client)
        if relay is not None:
            await relay.start()
            started.append(relay)
        if notifier is not None:
            await notifier.start()
            started.append(notifier)
        await server.start()
        started.append(server)
        await poller.start()
        started.append(poller)
        log.info("pricewatch_started", ids=settings.coin_ids, vs=settings.vs,
                 interval_ms=settings.poll_interval_ms, port=server.port)
        await stop.wait()
        log.info("shutdown_requested")
    finally:
        # graceful shutdown, newest first
        for obj in reversed(started):
            try:
                await obj.stop()
            except Exception as e:
                log.warning("shutdown_step_failed", component=type(obj).__name__, err=str(e))
        if redis_client is not None:
            await redis_client.aclose()
        if sql_store is not None:
            sql_store.close()
        log.info("pricewatch_stopped")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
