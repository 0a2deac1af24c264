from __future__ import annotations

import logging

from redis import asyncio as redis
from redis.asyncio.client import Redis

from swapbot.common import log_event

from .redis_ops import RedisStorageOps
from .settings import StorageSettings


class StorageGateway(RedisStorageOps):
    def __init__(self, settings: StorageSettings, logger: logging.Logger, *, client: Redis | None = None) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = client

    @property
    def bot_id(self) -> str:
        return self.settings.bot_id

    @property
    def run_id(self) -> str:
        return self.settings.bot_run_id

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
        )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
