from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from swapbot.common import NoEndpointsAvailable, guarded_call, log_event
from swapbot.endpoints import EndpointPool, EndpointPoolSettings, HealthReport
from swapbot.storage import StorageGateway, StorageSettings
from swapbot.trading import (
    GasPolicy,
    PoolSpec,
    PriceMonitor,
    PricePoint,
    ProgressFeed,
    StrategyDriver,
    StrategyParams,
    SwapResult,
    TradeExecutor,
    Wallet,
)

from .settings import AppSettings


async def wait_with_stop(stop_event: asyncio.Event, timeout_seconds: float) -> None:
    if timeout_seconds <= 0:
        return

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        pass


@dataclass(slots=True)
class RuntimeDependencies:
    storage: StorageGateway
    pool: EndpointPool
    monitor: PriceMonitor
    executor: TradeExecutor
    driver: StrategyDriver


def build_dependencies(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    endpoint_settings: EndpointPoolSettings,
    storage_settings: StorageSettings,
    params: StrategyParams,
    gas_policy: GasPolicy,
) -> RuntimeDependencies:
    storage = StorageGateway(storage_settings, logger)
    pool = EndpointPool.from_settings(logger=logger, settings=endpoint_settings)

    async def persist_price(point: PricePoint) -> None:
        await storage.record_price(point)

    monitor = PriceMonitor(
        logger=logger,
        pool=pool,
        price_listener=persist_price if app_settings.persist_prices else None,
    )
    executor = TradeExecutor(
        logger=logger,
        pool=pool,
        router_address=app_settings.router_address,
        gas_policy=gas_policy,
        bot_mode=params.bot_mode,
        confirmation_timeout_seconds=params.confirmation_timeout_seconds,
        deadline_seconds=params.deadline_seconds,
        preferred_endpoints=endpoint_settings.preferred_endpoints,
    )
    driver = StrategyDriver(
        logger=logger,
        executor=executor,
        monitor=monitor,
        params=params,
        reference=app_settings.reference,
        detected_assets_loader=storage.list_detected_assets,
    )
    return RuntimeDependencies(storage=storage, pool=pool, monitor=monitor, executor=executor, driver=driver)


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    deps: RuntimeDependencies,
) -> HealthReport | None:
    attempt = 0
    while not stop_event.is_set():
        attempt += 1
        try:
            await deps.storage.connect()
            report = None
            if app_settings.health_check_on_start:
                report = await deps.pool.health_check()
                if report.reachable_count == 0:
                    raise NoEndpointsAvailable("No endpoint answered the startup health check")
            return report
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                attempt=attempt,
                max_attempts=app_settings.bootstrap_max_attempts,
                error=str(error),
            )
            await guarded_call(
                deps.storage.close,
                logger=logger,
                event="bootstrap_storage_close_failed",
                message="Failed to close storage during bootstrap retry",
            )
            if attempt >= app_settings.bootstrap_max_attempts:
                raise

            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def heartbeat_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    storage: StorageGateway,
    interval_seconds: float,
) -> None:
    while not stop_event.is_set():
        await guarded_call(
            storage.update_heartbeat,
            logger=logger,
            event="heartbeat_failed",
            message="Failed to update heartbeat",
        )
        await wait_with_stop(stop_event, interval_seconds)


async def _drain_progress(feed: ProgressFeed) -> int:
    lines = 0
    async for _ in feed:
        lines += 1
    return lines


async def run_strategy(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    deps: RuntimeDependencies,
    strategy: str,
    wallets: Sequence[Wallet],
    pools: Sequence[PoolSpec],
) -> list[SwapResult]:
    run = deps.driver.start(strategy, wallets, pools)
    await guarded_call(
        lambda: deps.storage.record_event(
            event="strategy_started",
            payload={"strategy": run.strategy, "wallets": len(wallets), "pools": [pool.symbol for pool in pools]},
        ),
        logger=logger,
        event="strategy_event_record_failed",
        message="Failed to record strategy start",
    )

    drain_task = asyncio.create_task(_drain_progress(run.progress), name="progress-drain")
    stop_task = asyncio.create_task(stop_event.wait(), name="stop-wait")
    interrupted = False
    try:
        done, _ = await asyncio.wait({run.task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if run.task not in done:
            interrupted = True
            log_event(
                logger,
                level="warning",
                event="strategy_interrupted",
                message="Shutdown requested; cancelling strategy",
                strategy=run.strategy,
                completed_swaps=len(run.results),
            )
            run.task.cancel()
        await asyncio.gather(run.task, return_exceptions=True)
        # A task cancelled before its first step never closes the feed.
        run.progress.close()
        await drain_task
    finally:
        stop_task.cancel()
        if not drain_task.done():
            drain_task.cancel()

    results = list(run.results)
    persisted = await guarded_call(
        lambda: deps.storage.record_swap_results(results),
        logger=logger,
        event="swap_results_persist_failed",
        message="Failed to persist swap results",
        default=0,
        results=len(results),
    )
    succeeded = sum(1 for result in results if result.success)
    await guarded_call(
        lambda: deps.storage.record_event(
            event="strategy_interrupted" if interrupted else "strategy_finished",
            payload={"strategy": run.strategy, "swaps": len(results), "succeeded": succeeded},
        ),
        logger=logger,
        event="strategy_event_record_failed",
        message="Failed to record strategy completion",
    )
    log_event(
        logger,
        level="info",
        event="strategy_completed",
        message="Strategy run completed",
        strategy=run.strategy,
        swaps=len(results),
        succeeded=succeeded,
        persisted=persisted,
        interrupted=interrupted,
    )
    return results
