from __future__ import annotations

import json
from typing import Any, Iterable

from redis.asyncio.client import Redis

from swapbot.common import log_event
from swapbot.trading.types import DetectedAsset, PricePoint, SwapResult

from .helpers import detected_asset_field as _detected_asset_field
from .helpers import now_iso as _now_iso
from .helpers import parse_detected_asset as _parse_detected_asset
from .helpers import serialize_for_redis as _serialize_for_redis


class RedisStorageOps:
    def _results_key(self, run_id: str | None = None) -> str:
        return f"{self.settings.results_prefix}:{run_id or self.settings.bot_run_id}"

    async def list_detected_assets(self) -> list[DetectedAsset]:
        redis_client = self._require_redis()
        raw = await redis_client.hgetall(self.settings.detected_assets_key)

        assets: list[DetectedAsset] = []
        skipped = 0
        for field, value in raw.items():
            asset = _parse_detected_asset(value, fallback_address=str(field))
            if asset is None:
                skipped += 1
                continue
            assets.append(asset)

        assets.sort(key=lambda item: item.symbol.lower())
        log_event(
            self._logger,
            level="info",
            event="detected_assets_loaded",
            message="Loaded detected assets",
            assets=len(assets),
            skipped_without_pool=skipped,
        )
        return assets

    async def upsert_detected_assets(self, assets: Iterable[DetectedAsset]) -> int:
        redis_client = self._require_redis()
        mapping = {
            _detected_asset_field(asset): json.dumps(
                {
                    "address": asset.address,
                    "symbol": asset.symbol,
                    "name": asset.name,
                    "decimals": asset.decimals,
                    "poolAddress": asset.pool_address,
                    "detectedAt": asset.detected_at or _now_iso(),
                },
                ensure_ascii=False,
                separators=(",", ":"),
            )
            for asset in assets
        }
        if mapping:
            await redis_client.hset(self.settings.detected_assets_key, mapping=mapping)
        return len(mapping)

    async def record_swap_results(self, results: Iterable[SwapResult], *, run_id: str | None = None) -> int:
        redis_client = self._require_redis()
        encoded = [
            json.dumps(result.to_dict(), ensure_ascii=False, separators=(",", ":"), default=str) for result in results
        ]
        if not encoded:
            return 0

        key = self._results_key(run_id)
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.rpush(key, *encoded)
        pipeline.ltrim(key, -self.settings.results_max_items, -1)
        if self.settings.results_ttl_seconds > 0:
            pipeline.expire(key, self.settings.results_ttl_seconds)
        await pipeline.execute()
        return len(encoded)

    async def record_price(self, point: PricePoint) -> None:
        redis_client = self._require_redis()
        redis_key = f"{self.settings.price_prefix}:{point.pool_address.lower()}"
        await redis_client.hset(
            redis_key,
            mapping={
                "pool_address": point.pool_address,
                "price": f"{point.price:.18f}",
                "endpoint": point.endpoint,
                "block_timestamp": str(point.block_timestamp),
                "reference_reserve": str(point.reference_reserve),
                "asset_reserve": str(point.asset_reserve),
                "updated_at": _now_iso(),
            },
        )

    async def record_event(self, *, event: str, payload: dict[str, Any] | None = None) -> None:
        redis_client = self._require_redis()
        entry = {
            "event": event,
            "run_id": self.settings.bot_run_id,
            "bot_id": self.settings.bot_id,
            "at": _now_iso(),
        }
        if payload:
            entry.update({str(key): _serialize_for_redis(value) for key, value in payload.items()})

        pipeline = redis_client.pipeline(transaction=True)
        pipeline.lpush(self.settings.events_key, json.dumps(entry, ensure_ascii=False, separators=(",", ":")))
        pipeline.ltrim(self.settings.events_key, 0, self.settings.events_max_items - 1)
        await pipeline.execute()

    async def update_heartbeat(self) -> None:
        redis_client = self._require_redis()
        await redis_client.set(self.settings.heartbeat_key, _now_iso())

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
