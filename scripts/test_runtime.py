from __future__ import annotations

import asyncio
import io
import json
import logging
import random
import unittest
from dataclasses import replace
from unittest import mock
from unittest.mock import AsyncMock, MagicMock

from ledger_fakes import ASSET, REFERENCE, ROUTER, make_pool, make_wallet, quiet_logger

from swapbot.bot_runtime import AppSettings, RuntimeDependencies, bootstrap_dependencies, run_strategy
from swapbot.bot_runtime.logging import JsonFormatter
from swapbot.bot_runtime.settings import parse_trade_pools
from swapbot.common import ConfigurationError, NoEndpointsAvailable, log_event
from swapbot.endpoints import EndpointHealth, HealthReport
from swapbot.storage import StorageGateway, StorageSettings, parse_detected_asset, parse_detected_tokens_document
from swapbot.trading import ProgressFeed, StrategyDriver, StrategyParams, SwapResult
from swapbot.trading.types import MODE_BUY


def _app_settings(**overrides) -> AppSettings:
    settings = AppSettings(
        strategy="DEFAULT",
        router_address=ROUTER,
        reference=REFERENCE,
        trade_pools=(make_pool(),),
        error_backoff_seconds=0.01,
        bootstrap_max_attempts=3,
        health_check_on_start=True,
        persist_prices=False,
        heartbeat_interval_seconds=1.0,
    )
    return replace(settings, **overrides)


def _storage_settings() -> StorageSettings:
    return StorageSettings(
        redis_url="redis://localhost:6379/0",
        bot_id="test-bot",
        bot_run_id="run-1",
        detected_assets_key="detected_assets",
        results_prefix="test-bot:results",
        results_max_items=50,
        results_ttl_seconds=60,
        price_prefix="test-bot:prices",
        events_key="test-bot:events",
        events_max_items=10,
        heartbeat_key="test-bot:heartbeat",
    )


def _report(reachable: bool) -> HealthReport:
    return HealthReport(
        endpoints=(EndpointHealth(name="A", reachable=reachable, marked_failed=not reachable, streaming=True),),
        checked_at=0.0,
    )


class InstantBuyExecutor:
    async def swap_exact_in(self, intent) -> SwapResult:
        return SwapResult(
            success=True,
            amount_received=5,
            reason="ok",
            wallet_address=intent.wallet.address,
            wallet_label=intent.wallet.label,
            side=intent.side,
            amount_in=int(intent.amount_in or 0),
        )


class LoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.stream = io.StringIO()
        self.logger = logging.getLogger("test.json_logging")
        self.logger.handlers.clear()
        handler = logging.StreamHandler(self.stream)
        handler.setFormatter(JsonFormatter())
        self.logger.addHandler(handler)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

    def _last_record(self) -> dict:
        return json.loads(self.stream.getvalue().strip().splitlines()[-1])

    def test_log_event_masks_secrets_and_rpc_keys(self) -> None:
        log_event(
            self.logger,
            level="warning",
            event="endpoint_marked_failed",
            message="failed https://base-mainnet.g.alchemy.com/v2/abcdefghijklmnopqrstuvwx?apiKey=zzz",
            private_key="0xdeadbeef",
            endpoint="wss://node.example/ws?token=secret",
        )

        record = self._last_record()
        self.assertEqual(record["event"], "endpoint_marked_failed")
        self.assertEqual(record["level"], "WARNING")
        self.assertEqual(record["private_key"], "***")
        self.assertNotIn("abcdefghijklmnopqrstuvwx", record["message"])
        self.assertNotIn("zzz", record["message"])
        self.assertEqual(record["endpoint"], "wss://node.example/ws")

    def test_nested_secret_fields_are_masked(self) -> None:
        log_event(
            self.logger,
            level="info",
            event="settings_loaded",
            message="loaded",
            config={"password": "hunter2", "name": "A"},
        )
        self.assertEqual(self._last_record()["config"], {"password": "***", "name": "A"})


class ProgressFeedTests(unittest.IsolatedAsyncioTestCase):
    async def test_feed_is_finite_and_single_use(self) -> None:
        feed = ProgressFeed()
        feed.emit("one")
        feed.emit("two")
        feed.close()
        feed.emit("ignored")

        self.assertEqual([line async for line in feed], ["one", "two"])
        with self.assertRaises(RuntimeError):
            feed.__aiter__()


class SettingsTests(unittest.TestCase):
    def test_parse_trade_pools(self) -> None:
        pools = parse_trade_pools(
            json.dumps([{"address": ASSET.address, "symbol": "TKN", "pool_address": "0xpool", "decimals": 9}]),
            reference=REFERENCE,
        )
        self.assertEqual(len(pools), 1)
        self.assertEqual(pools[0].asset.decimals, 9)
        self.assertEqual(pools[0].reference, REFERENCE)
        with self.assertRaises(ConfigurationError):
            parse_trade_pools('[{"symbol": "missing addresses"}]', reference=REFERENCE)

    def test_app_settings_from_env_defaults(self) -> None:
        with mock.patch.dict("os.environ", {"TRADING_STRATEGY": "mm"}, clear=True):
            settings = AppSettings.from_env()
        self.assertEqual(settings.strategy, "MARKET_MAKER")
        self.assertEqual(settings.router_address, "0x4752ba5dbc23f44d87826276bf6fd6b1c372ad24")
        self.assertEqual(settings.reference.symbol, "VIRTUAL")
        self.assertEqual(settings.reference.decimals, 18)

    def test_load_wallets_requires_keys(self) -> None:
        with self.assertRaises(ConfigurationError):
            _app_settings().load_wallets()

    def test_strategy_params_from_env(self) -> None:
        env = {"BOT_MODE": "buy", "AMOUNT_MIN": "3", "AMOUNT_MAX": "1", "MAX_SLIPPAGE_BPS": "50000"}
        with mock.patch.dict("os.environ", env, clear=True):
            params = StrategyParams.from_env()
        self.assertEqual(params.bot_mode, MODE_BUY)
        self.assertEqual(params.amount_max, 3.0)
        self.assertEqual(params.slippage_bps, 10_000)
        self.assertEqual(params.mm_range_pct, 2.0)
        self.assertFalse(params.mm_continuous)
        self.assertEqual(params.mm_max_passes, 0)


class StorageTests(unittest.IsolatedAsyncioTestCase):
    def test_parse_detected_tokens_document(self) -> None:
        document = {
            "tokens": {
                "0xaaa": {"symbol": "AAA", "decimals": 18, "poolAddress": "0xpool-a", "detectedAt": "2024-01-01"},
                "0xbbb": {"symbol": "BBB", "decimals": 18},
            }
        }
        assets = parse_detected_tokens_document(document)
        self.assertEqual([asset.symbol for asset in assets], ["AAA"])
        self.assertEqual(assets[0].address, "0xaaa")
        self.assertIsNone(parse_detected_asset("not json"))

    async def test_list_detected_assets_skips_entries_without_pool(self) -> None:
        client = MagicMock()
        client.hgetall = AsyncMock(
            return_value={
                "0xbbb": json.dumps({"symbol": "BBB", "poolAddress": "0xpool-b"}),
                "0xaaa": json.dumps({"symbol": "AAA", "poolAddress": "0xpool-a"}),
                "0xccc": json.dumps({"symbol": "CCC"}),
            }
        )
        storage = StorageGateway(_storage_settings(), quiet_logger("test.storage"), client=client)

        assets = await storage.list_detected_assets()

        self.assertEqual([asset.symbol for asset in assets], ["AAA", "BBB"])
        self.assertEqual(assets[1].address, "0xbbb")

    async def test_record_swap_results_caps_the_run_list(self) -> None:
        pipeline = MagicMock()
        pipeline.execute = AsyncMock(return_value=[])
        client = MagicMock()
        client.pipeline = MagicMock(return_value=pipeline)
        storage = StorageGateway(_storage_settings(), quiet_logger("test.storage"), client=client)
        result = SwapResult(success=True, amount_received=10**18, reason="ok", amount_in=10**18)

        written = await storage.record_swap_results([result])

        self.assertEqual(written, 1)
        key, payload = pipeline.rpush.call_args.args
        self.assertEqual(key, "test-bot:results:run-1")
        self.assertEqual(json.loads(payload)["amount_received_ui"], 1.0)
        pipeline.ltrim.assert_called_once_with("test-bot:results:run-1", -50, -1)
        pipeline.expire.assert_called_once_with("test-bot:results:run-1", 60)
        self.assertEqual(await storage.record_swap_results([]), 0)

    async def test_operations_require_connection(self) -> None:
        storage = StorageGateway(_storage_settings(), quiet_logger("test.storage"))
        with self.assertRaises(RuntimeError):
            await storage.update_heartbeat()


class BootstrapTests(unittest.IsolatedAsyncioTestCase):
    def _deps(self, storage, pool) -> RuntimeDependencies:
        return RuntimeDependencies(storage=storage, pool=pool, monitor=MagicMock(), executor=MagicMock(), driver=MagicMock())

    async def test_retries_until_dependencies_come_up(self) -> None:
        storage = MagicMock()
        storage.connect = AsyncMock(side_effect=[ConnectionError("redis down"), None])
        storage.close = AsyncMock()
        pool = MagicMock()
        pool.health_check = AsyncMock(return_value=_report(True))

        report = await bootstrap_dependencies(
            logger=quiet_logger("test.bootstrap"),
            stop_event=asyncio.Event(),
            app_settings=_app_settings(),
            deps=self._deps(storage, pool),
        )

        self.assertEqual(report.reachable_count, 1)
        self.assertEqual(storage.connect.await_count, 2)
        storage.close.assert_awaited_once()

    async def test_unreachable_endpoints_fail_after_max_attempts(self) -> None:
        storage = MagicMock()
        storage.connect = AsyncMock()
        storage.close = AsyncMock()
        pool = MagicMock()
        pool.health_check = AsyncMock(return_value=_report(False))

        with self.assertRaises(NoEndpointsAvailable):
            await bootstrap_dependencies(
                logger=quiet_logger("test.bootstrap"),
                stop_event=asyncio.Event(),
                app_settings=_app_settings(bootstrap_max_attempts=2),
                deps=self._deps(storage, pool),
            )
        self.assertEqual(pool.health_check.await_count, 2)

    async def test_stop_before_bootstrap_raises(self) -> None:
        stop_event = asyncio.Event()
        stop_event.set()
        with self.assertRaises(RuntimeError):
            await bootstrap_dependencies(
                logger=quiet_logger("test.bootstrap"),
                stop_event=stop_event,
                app_settings=_app_settings(),
                deps=self._deps(MagicMock(), MagicMock()),
            )


class RunStrategyTests(unittest.IsolatedAsyncioTestCase):
    def _deps(self, sleep) -> RuntimeDependencies:
        self.storage = MagicMock()
        self.storage.record_event = AsyncMock()
        self.storage.record_swap_results = AsyncMock(side_effect=lambda results: len(results))
        driver = StrategyDriver(
            logger=quiet_logger("test.runner"),
            executor=InstantBuyExecutor(),
            monitor=MagicMock(),
            params=StrategyParams(bot_mode=MODE_BUY, amount_min=1.0, amount_max=1.0, num_loops=1),
            reference=REFERENCE,
            rng=random.Random(1),
            sleep=sleep,
        )
        return RuntimeDependencies(
            storage=self.storage,
            pool=MagicMock(),
            monitor=MagicMock(),
            executor=MagicMock(),
            driver=driver,
        )

    async def test_completed_run_persists_results(self) -> None:
        async def instant(_seconds: float) -> None:
            await asyncio.sleep(0)

        results = await run_strategy(
            logger=quiet_logger("test.runner"),
            stop_event=asyncio.Event(),
            deps=self._deps(instant),
            strategy="DEFAULT",
            wallets=[make_wallet(1), make_wallet(2)],
            pools=[make_pool()],
        )

        self.assertEqual(len(results), 2)
        self.storage.record_swap_results.assert_awaited_once()
        events = [call.kwargs["event"] for call in self.storage.record_event.await_args_list]
        self.assertEqual(events, ["strategy_started", "strategy_finished"])

    async def test_stop_event_interrupts_and_keeps_partial_results(self) -> None:
        stop_event = asyncio.Event()

        async def stop_on_first_delay(_seconds: float) -> None:
            stop_event.set()
            await asyncio.Event().wait()

        results = await asyncio.wait_for(
            run_strategy(
                logger=quiet_logger("test.runner"),
                stop_event=stop_event,
                deps=self._deps(stop_on_first_delay),
                strategy="DEFAULT",
                wallets=[make_wallet(1), make_wallet(2)],
                pools=[make_pool()],
            ),
            timeout=5,
        )

        self.assertEqual(len(results), 1)
        persisted = self.storage.record_swap_results.await_args.args[0]
        self.assertEqual(len(persisted), 1)
        events = [call.kwargs["event"] for call in self.storage.record_event.await_args_list]
        self.assertEqual(events, ["strategy_started", "strategy_interrupted"])


if __name__ == "__main__":
    unittest.main()
