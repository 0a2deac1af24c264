from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Sequence

from swapbot.common import (
    EndpointTransportError,
    LedgerRevertError,
    NoEndpointsAvailable,
    PriceUnavailable,
    guarded_call,
    log_event,
)
from swapbot.endpoints import Endpoint, EndpointPool, LedgerClient

from .reserves import ReserveReader, compute_price
from .types import (
    SIDE_BUY,
    SIDE_DROP,
    SIDE_SELL,
    PoolSpec,
    PricePoint,
    PriceTrigger,
    TriggerCallback,
    WatchState,
    normalize_address,
)

# keccak("Sync(uint112,uint112)")
SYNC_TOPIC = "0x1c411e9a96e071241c2f21f7726b17ae89e3cab4c78be50e062b03a9fffbbad1"

WATCH_KIND_RANGE = "range"
WATCH_KIND_DROP = "drop"

PriceListener = Callable[[PricePoint], Awaitable[None]]


def _shifted_price(base_price: float, pct: float, *, up: bool) -> float:
    factor = Decimal(str(pct)) / Decimal(100)
    multiplier = Decimal(1) + factor if up else Decimal(1) - factor
    return float(Decimal(str(base_price)) * multiplier)


class PriceCache:
    """Latest price point per pool. Reads older than the cached reserve block are rejected."""

    def __init__(self) -> None:
        self._points: dict[str, PricePoint] = {}
        self._lock = threading.Lock()

    def put(self, point: PricePoint) -> bool:
        key = normalize_address(point.pool_address)
        with self._lock:
            current = self._points.get(key)
            if current is not None and point.block_timestamp < current.block_timestamp:
                return False
            self._points[key] = point
            return True

    def get(self, pool_address: str) -> PricePoint | None:
        with self._lock:
            return self._points.get(normalize_address(pool_address))

    def snapshot(self) -> dict[str, PricePoint]:
        with self._lock:
            return dict(self._points)


@dataclass(slots=True)
class ThresholdWatch:
    watch_id: str
    pool: PoolSpec
    kind: str
    base_price: float
    lower_pct: float
    upper_pct: float | None
    on_trigger: TriggerCallback
    lower_price: float = field(default=0.0, init=False)
    upper_price: float | None = field(default=None, init=False)
    handles: dict[str, str] = field(default_factory=dict, init=False)
    state: WatchState = field(default=WatchState.ARMED, init=False)
    fired_count: int = field(default=0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._apply_base(self.base_price)

    def _apply_base(self, base_price: float) -> None:
        if base_price <= 0:
            raise ValueError("base price must be positive")
        self.base_price = base_price
        self.lower_price = _shifted_price(base_price, self.lower_pct, up=False)
        self.upper_price = (
            _shifted_price(base_price, self.upper_pct, up=True) if self.upper_pct is not None else None
        )

    def evaluate(self, price: float) -> str | None:
        if self.kind == WATCH_KIND_DROP:
            return SIDE_DROP if price <= self.lower_price else None
        if price <= self.lower_price:
            return SIDE_BUY
        if self.upper_price is not None and price >= self.upper_price:
            return SIDE_SELL
        return None

    def try_fire(self) -> bool:
        with self._lock:
            if self.state is not WatchState.ARMED:
                return False
            self.state = WatchState.FIRED
            self.fired_count += 1
            return True

    def rearm(self, base_price: float | None = None) -> bool:
        with self._lock:
            if self.state is WatchState.STOPPED:
                return False
            if base_price is not None:
                self._apply_base(base_price)
            self.state = WatchState.ARMED
            return True

    def stop(self) -> dict[str, str]:
        with self._lock:
            self.state = WatchState.STOPPED
            handles = dict(self.handles)
            self.handles.clear()
            return handles

    def to_dict(self) -> dict[str, Any]:
        return {
            "watch_id": self.watch_id,
            "pool_address": self.pool.pool_address,
            "symbol": self.pool.symbol,
            "kind": self.kind,
            "state": self.state.value,
            "base_price": self.base_price,
            "lower_price": self.lower_price,
            "upper_price": self.upper_price,
            "endpoints": sorted(self.handles),
            "fired_count": self.fired_count,
        }


class PriceMonitor:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        pool: EndpointPool,
        cache: PriceCache | None = None,
        price_listener: PriceListener | None = None,
        reserves: ReserveReader | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._logger = logger
        self._pool = pool
        self._cache = cache or PriceCache()
        self._price_listener = price_listener
        self._clock = clock
        self._reserves = reserves or ReserveReader()
        self._watches: dict[str, ThresholdWatch] = {}
        self._watch_ids = itertools.count(1)

    @property
    def cache(self) -> PriceCache:
        return self._cache

    async def _read_with(self, client: LedgerClient, pool: PoolSpec) -> PricePoint:
        reserves = await self._reserves.read(client, pool)
        price = compute_price(
            reference_reserve=reserves.reference_reserve,
            asset_reserve=reserves.asset_reserve,
            reference_decimals=pool.reference.decimals,
            asset_decimals=pool.asset.decimals,
        )
        return PricePoint(
            pool_address=pool.pool_address,
            price=price,
            endpoint=client.name,
            observed_at=self._clock(),
            block_timestamp=reserves.block_timestamp,
            reference_reserve=reserves.reference_reserve,
            asset_reserve=reserves.asset_reserve,
        )

    async def _publish(self, point: PricePoint) -> bool:
        if not self._cache.put(point):
            log_event(
                self._logger,
                level="debug",
                event="price_read_stale",
                message="Discarding price read older than the cached point",
                pool_address=point.pool_address,
                endpoint=point.endpoint,
                block_timestamp=point.block_timestamp,
            )
            return False
        if self._price_listener is not None:
            await guarded_call(
                lambda: self._price_listener(point),
                logger=self._logger,
                event="price_listener_failed",
                message="Price listener raised",
                pool_address=point.pool_address,
            )
        return True

    async def read_price(self, pool: PoolSpec, *, preferred: Sequence[str] = ()) -> PricePoint:
        async def operation(client: LedgerClient) -> PricePoint:
            return await self._read_with(client, pool)

        try:
            point = await self._pool.call(operation, preferred=preferred, description="read_price")
        except LedgerRevertError as error:
            raise PriceUnavailable(f"Reserve read reverted for {pool.pool_address}: {error}") from error
        await self._publish(point)
        return self._cache.get(pool.pool_address) or point

    def latest(self, pool_address: str) -> PricePoint | None:
        return self._cache.get(pool_address)

    async def watch_range(
        self,
        pool: PoolSpec,
        base_price: float,
        lower_pct: float,
        upper_pct: float,
        on_trigger: TriggerCallback,
    ) -> str:
        watch = ThresholdWatch(
            watch_id=f"watch-{next(self._watch_ids)}",
            pool=pool,
            kind=WATCH_KIND_RANGE,
            base_price=base_price,
            lower_pct=lower_pct,
            upper_pct=upper_pct,
            on_trigger=on_trigger,
        )
        await self._arm(watch)
        return watch.watch_id

    async def watch_drop(
        self,
        pool: PoolSpec,
        base_price: float,
        drop_pct: float,
        on_trigger: TriggerCallback,
    ) -> str:
        watch = ThresholdWatch(
            watch_id=f"watch-{next(self._watch_ids)}",
            pool=pool,
            kind=WATCH_KIND_DROP,
            base_price=base_price,
            lower_pct=drop_pct,
            upper_pct=None,
            on_trigger=on_trigger,
        )
        await self._arm(watch)
        return watch.watch_id

    async def _arm(self, watch: ThresholdWatch) -> None:
        self._watches[watch.watch_id] = watch
        for endpoint in self._pool.all_streaming():
            await self._subscribe(watch, endpoint)

        if not watch.handles:
            watch.stop()
            self._watches.pop(watch.watch_id, None)
            raise NoEndpointsAvailable(f"No endpoint accepted a log subscription for {watch.pool.pool_address}")

        log_event(
            self._logger,
            level="info",
            event="watch_armed",
            message="Price watch armed",
            **watch.to_dict(),
        )

    async def _subscribe(self, watch: ThresholdWatch, endpoint: Endpoint) -> None:
        async def handler(log: dict[str, Any]) -> None:
            await self._on_log(watch.watch_id, endpoint, log)

        try:
            subscription_id = await endpoint.stream.subscribe_logs(
                address=watch.pool.pool_address,
                topics=[SYNC_TOPIC],
                handler=handler,
            )
        except EndpointTransportError as error:
            log_event(
                self._logger,
                level="warning",
                event="watch_subscription_failed",
                message="Skipping endpoint that rejected the log subscription",
                watch_id=watch.watch_id,
                endpoint=endpoint.name,
                error=str(error),
            )
            return
        watch.handles[endpoint.name] = subscription_id

    async def _on_log(self, watch_id: str, endpoint: Endpoint, log: dict[str, Any]) -> None:
        watch = self._watches.get(watch_id)
        if watch is None or watch.state is not WatchState.ARMED:
            return

        try:
            point = await self._read_with(endpoint.client, watch.pool)
        except EndpointTransportError as error:
            self._pool.mark_failed(endpoint.name, error=str(error))
            return
        except (PriceUnavailable, LedgerRevertError) as error:
            log_event(
                self._logger,
                level="debug",
                event="price_read_skipped",
                message="Skipping notification with an unusable reserve read",
                watch_id=watch_id,
                endpoint=endpoint.name,
                error=str(error),
            )
            return

        if not await self._publish(point):
            return

        side = watch.evaluate(point.price)
        if side is None or not watch.try_fire():
            return

        trigger = PriceTrigger(
            watch_id=watch_id,
            pool_address=watch.pool.pool_address,
            side=side,
            price=point.price,
            threshold=watch.upper_price if side == SIDE_SELL and watch.upper_price is not None else watch.lower_price,
            base_price=watch.base_price,
            endpoint=endpoint.name,
            tx_hash=str(log.get("transactionHash") or ""),
            observed_at=point.observed_at,
        )
        log_event(
            self._logger,
            level="info",
            event="watch_fired",
            message="Price threshold crossed",
            watch_id=watch_id,
            side=side,
            price=point.price,
            threshold=trigger.threshold,
            endpoint=endpoint.name,
            tx_hash=trigger.tx_hash,
        )
        await guarded_call(
            lambda: watch.on_trigger(trigger),
            logger=self._logger,
            event="watch_callback_failed",
            message="Watch trigger callback raised",
            level="exception",
            watch_id=watch_id,
        )

    def rearm(self, watch_id: str, base_price: float | None = None) -> bool:
        watch = self._watches.get(watch_id)
        if watch is None or not watch.rearm(base_price):
            return False
        log_event(
            self._logger,
            level="info",
            event="watch_rearmed",
            message="Price watch re-armed",
            **watch.to_dict(),
        )
        return True

    async def stop(self, watch_id: str) -> None:
        watch = self._watches.pop(watch_id, None)
        if watch is None:
            return
        for endpoint_name, subscription_id in watch.stop().items():
            endpoint = self._pool.get(endpoint_name)
            if endpoint is None or endpoint.stream is None:
                continue
            await guarded_call(
                lambda: endpoint.stream.unsubscribe(subscription_id),
                logger=self._logger,
                event="watch_unsubscribe_failed",
                message="Failed to release log subscription",
                watch_id=watch_id,
                endpoint=endpoint_name,
            )
        log_event(
            self._logger,
            level="info",
            event="watch_stopped",
            message="Price watch stopped",
            watch_id=watch_id,
        )

    async def stop_all(self) -> None:
        for watch_id in list(self._watches):
            await self.stop(watch_id)

    def get_status(self) -> dict[str, Any]:
        return {
            "watches": [watch.to_dict() for watch in self._watches.values()],
            "prices": {key: point.to_dict() for key, point in self._cache.snapshot().items()},
        }
