from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def _sanitize_bot_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-").replace(":", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    bot_id: str
    bot_run_id: str
    detected_assets_key: str
    results_prefix: str
    results_max_items: int
    results_ttl_seconds: int
    price_prefix: str
    events_key: str
    events_max_items: int
    heartbeat_key: str

    @classmethod
    def from_env(cls) -> "StorageSettings":
        bot_id = _sanitize_bot_id(os.getenv("BOT_ID", "dex-swap-bot"), "dex-swap-bot")
        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            bot_id=bot_id,
            bot_run_id=os.getenv("BOT_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
            detected_assets_key=os.getenv("REDIS_DETECTED_ASSETS_KEY", "detected_assets"),
            results_prefix=os.getenv("REDIS_RESULTS_PREFIX", f"{bot_id}:results"),
            results_max_items=max(1, to_int(os.getenv("REDIS_RESULTS_MAX_ITEMS"), 5000)),
            results_ttl_seconds=max(0, to_int(os.getenv("REDIS_RESULTS_TTL_SECONDS"), 604800)),
            price_prefix=os.getenv("REDIS_PRICE_PREFIX", f"{bot_id}:prices"),
            events_key=os.getenv("REDIS_EVENTS_KEY", f"{bot_id}:events"),
            events_max_items=max(1, to_int(os.getenv("REDIS_EVENTS_MAX_ITEMS"), 1000)),
            heartbeat_key=os.getenv("REDIS_HEARTBEAT_KEY", f"{bot_id}:heartbeat"),
        )
