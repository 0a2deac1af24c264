from __future__ import annotations

import asyncio
import contextlib
import signal

from dotenv import load_dotenv

from swapbot.bot_runtime import (
    AppSettings,
    bootstrap_dependencies,
    build_dependencies,
    heartbeat_loop,
    run_strategy,
    setup_logger,
)
from swapbot.common import guarded_call, log_event
from swapbot.endpoints import EndpointPoolSettings
from swapbot.storage import StorageSettings
from swapbot.trading import GasPolicy, StrategyParams


async def main() -> None:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    endpoint_settings = EndpointPoolSettings.from_env()
    storage_settings = StorageSettings.from_env()
    params = StrategyParams.from_env()
    gas_policy = GasPolicy.from_env()

    wallets = app_settings.load_wallets()
    deps = build_dependencies(
        logger=logger,
        app_settings=app_settings,
        endpoint_settings=endpoint_settings,
        storage_settings=storage_settings,
        params=params,
        gas_policy=gas_policy,
    )
    strategy = deps.driver.validate(app_settings.strategy)

    log_event(
        logger,
        level="info",
        event="settings_loaded",
        message="Settings loaded",
        bot_mode=params.bot_mode,
        endpoints=[config.name for config in endpoint_settings.endpoints],
        **app_settings.log_summary(),
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    heartbeat_task: asyncio.Task[None] | None = None
    try:
        await bootstrap_dependencies(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            deps=deps,
        )
        await guarded_call(
            lambda: deps.storage.record_event(event="bot_started", payload={"strategy": strategy}),
            logger=logger,
            event="bot_started_record_failed",
            message="Failed to record bot start",
        )
        heartbeat_task = asyncio.create_task(
            heartbeat_loop(
                logger=logger,
                stop_event=stop_event,
                storage=deps.storage,
                interval_seconds=app_settings.heartbeat_interval_seconds,
            ),
            name="heartbeat",
        )

        await run_strategy(
            logger=logger,
            stop_event=stop_event,
            deps=deps,
            strategy=strategy,
            wallets=wallets,
            pools=app_settings.trade_pools,
        )
    finally:
        stop_event.set()
        if heartbeat_task is not None:
            await guarded_call(
                lambda: heartbeat_task,
                logger=logger,
                event="heartbeat_stop_failed",
                message="Heartbeat loop ended with an error",
            )
        await guarded_call(
            lambda: deps.storage.record_event(event="bot_stopped"),
            logger=logger,
            event="bot_stopped_record_failed",
            message="Failed to record bot stop",
        )
        await guarded_call(
            deps.monitor.stop_all,
            logger=logger,
            event="monitor_stop_failed",
            message="Failed to stop price watches",
        )
        await guarded_call(
            deps.pool.close,
            logger=logger,
            event="endpoint_pool_close_failed",
            message="Failed to close endpoint pool",
        )
        await guarded_call(
            deps.storage.close,
            logger=logger,
            event="storage_close_failed",
            message="Failed to close storage",
        )

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    asyncio.run(main())
