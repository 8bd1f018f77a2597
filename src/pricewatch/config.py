from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class Settings:
    coin_ids: list[str] = field(default_factory=lambda: ["bitcoin", "ethereum", "solana"])
    vs: str = "usd"
    poll_interval_ms: int = 15_000
    coingecko_api_key: Optional[str] = None
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    http_timeout_s: float = 8.0
    max_backoff_s: float = 300.0
    redis_url: Optional[str] = None
    pg_url: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    log_json: bool = False
    print_alerts: bool = True

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {raw!r}")


def _positive(env: Mapping[str, str], name: str, default: float, cast=float):
    raw = env.get(name)
    if raw is None or not raw.strip():
        return cast(default)
    try:
        v = cast(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if v <= 0:
        raise ValueError(f"{name} must be > 0, got {raw!r}")
    return v


def _optional(env: Mapping[str, str], name: str) -> Optional[str]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def settings_from_env(env: Optional[Mapping[str, str]] = None, *, dotenv: bool = True) -> Settings:
    """
    Build Settings from the environment (and .env when present).
    Raises ValueError on the first invalid value so a bad deploy fails at startup.
    """
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ

    ids_raw = env.get("COIN_IDS", "bitcoin,ethereum,solana")
    coin_ids = [s.strip().lower() for s in ids_raw.split(",") if s.strip()]
    if not coin_ids:
        raise ValueError("COIN_IDS must name at least one asset")

    vs = env.get("VS", "usd").strip().lower()
    if not vs:
        raise ValueError("VS must not be empty")

    port = _positive(env, "PORT", 3000, int)
    if port > 65535:
        raise ValueError(f"PORT out of range: {port}")

    poll_ms = _positive(env, "POLL_INTERVAL_MS", 15_000, int)
    max_backoff = _positive(env, "MAX_BACKOFF_S", 300.0)

    level = env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if level not in _LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {_LEVELS}, got {level!r}")

    return Settings(
        coin_ids=coin_ids,
        vs=vs,
        poll_interval_ms=poll_ms,
        coingecko_api_key=_optional(env, "COINGECKO_API_KEY"),
        coingecko_base_url=(_optional(env, "COINGECKO_BASE_URL") or "https://api.coingecko.com/api/v3").rstrip("/"),
        http_timeout_s=_positive(env, "HTTP_TIMEOUT_S", 8.0),
        max_backoff_s=max_backoff,
        redis_url=_optional(env, "REDIS_URL"),
        pg_url=_optional(env, "PG_URL"),
        host=env.get("HOST", "0.0.0.0").strip() or "0.0.0.0",
        port=port,
        log_level=level,
        log_json=_flag(env, "LOG_JSON", False),
        print_alerts=_flag(env, "PRINT_ALERTS", True),
    )
