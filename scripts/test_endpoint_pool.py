from __future__ import annotations

import random
import unittest
from unittest import mock

from ledger_fakes import FakeChain, build_endpoints, build_pool, quiet_logger

from swapbot.common import ConfigurationError, NoEndpointsAvailable
from swapbot.endpoints import EndpointHealthStore, EndpointPool, EndpointPoolSettings
from swapbot.endpoints.settings import parse_endpoint_configs


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class EndpointHealthStoreTests(unittest.TestCase):
    def test_mark_expires_after_cooldown(self) -> None:
        clock = FakeClock()
        store = EndpointHealthStore(cooldown_seconds=1200, clock=clock)
        store.mark_failed("a")

        clock.now += 1199
        self.assertTrue(store.is_failed("a"))
        clock.now += 1
        self.assertFalse(store.is_failed("a"))
        self.assertEqual(store.failed_names(), set())

    def test_mark_healthy_clears_single_endpoint(self) -> None:
        store = EndpointHealthStore()
        store.mark_failed("a")
        store.mark_failed("b")
        store.mark_healthy("a")
        self.assertEqual(store.failed_names(), {"b"})


class EndpointPoolSelectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.chain = FakeChain()
        self.pool = build_pool(self.chain, ["A", "B", "C"], rng=random.Random(7))

    def test_rejects_empty_and_duplicate_endpoints(self) -> None:
        logger = quiet_logger("test.pool")
        with self.assertRaises(ConfigurationError):
            EndpointPool(logger=logger, endpoints=[])
        with self.assertRaises(ConfigurationError):
            EndpointPool(logger=logger, endpoints=build_endpoints(self.chain, ["A", "A"]))

    def test_pick_random_skips_failed_endpoints(self) -> None:
        self.pool.mark_failed("A")
        self.pool.mark_failed("C")
        for _ in range(20):
            self.assertEqual(self.pool.pick_random().name, "B")

    def test_all_failed_fails_open_to_primary(self) -> None:
        for name in ("A", "B", "C"):
            self.pool.mark_failed(name)

        endpoint = self.pool.pick_random()

        self.assertEqual(endpoint.name, "A")
        self.assertEqual(self.pool.health.failed_names(), set())
        self.assertEqual(len(self.pool.all_healthy()), 3)

    def test_preference_skips_failed_and_keeps_order(self) -> None:
        self.pool.mark_failed("B")
        self.assertEqual(self.pool.pick_by_preference(["B", "A", "C"]).name, "A")

    def test_preference_with_no_healthy_match_falls_back_to_random(self) -> None:
        self.pool.mark_failed("B")
        picked = self.pool.pick_by_preference(["B", "unknown"])
        self.assertIn(picked.name, {"A", "C"})

    def test_streaming_endpoints_exclude_failed_and_non_streaming(self) -> None:
        endpoints = build_endpoints(self.chain, ["A", "B"]) + build_endpoints(self.chain, ["C"], streaming=False)
        pool = EndpointPool(logger=quiet_logger("test.pool"), endpoints=endpoints)
        pool.mark_failed("A")
        self.assertEqual([endpoint.name for endpoint in pool.all_streaming()], ["B"])


class EndpointPoolCallTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.chain = FakeChain()
        self.pool = build_pool(self.chain, ["A", "B"], max_call_attempts=2)

    async def test_call_fails_over_and_marks_the_broken_endpoint(self) -> None:
        self.pool.get("A").client.down = True

        block = await self.pool.call(lambda client: client.block_number(), preferred=["A", "B"])

        self.assertEqual(block, 100)
        self.assertTrue(self.pool.health.is_failed("A"))
        self.assertFalse(self.pool.health.is_failed("B"))

    async def test_call_raises_when_attempts_run_out(self) -> None:
        for endpoint in self.pool.endpoints:
            endpoint.client.down = True

        with self.assertRaises(NoEndpointsAvailable):
            await self.pool.call(lambda client: client.block_number(), preferred=["A", "B"])

    async def test_single_attempt_does_not_retry(self) -> None:
        self.pool.get("A").client.down = True

        with self.assertRaises(NoEndpointsAvailable):
            await self.pool.call(lambda client: client.block_number(), preferred=["A"], attempts=1)
        self.assertEqual(self.pool.get("B").client.calls, [])

    async def test_health_check_marks_and_clears(self) -> None:
        self.pool.mark_failed("B")
        self.pool.get("A").client.down = True

        report = await self.pool.health_check()

        self.assertEqual(report.total, 2)
        self.assertEqual(report.reachable_count, 1)
        self.assertTrue(self.pool.health.is_failed("A"))
        self.assertFalse(self.pool.health.is_failed("B"))
        by_name = {item.name: item for item in report.endpoints}
        self.assertEqual(by_name["B"].block_number, 100)

    async def test_close_closes_every_transport(self) -> None:
        await self.pool.close()
        for endpoint in self.pool.endpoints:
            self.assertTrue(endpoint.client.closed)
            self.assertTrue(endpoint.stream.closed)


class EndpointSettingsTests(unittest.TestCase):
    def test_parse_endpoint_configs_accepts_objects_and_strings(self) -> None:
        configs = parse_endpoint_configs(
            '[{"name": "alchemy", "rpc_url": "https://a.example", "ws_url": "wss://a.example"}, "https://b.example"]'
        )
        self.assertEqual([config.name for config in configs], ["alchemy", "endpoint-2"])
        self.assertEqual(configs[0].ws_url, "wss://a.example")
        self.assertIsNone(configs[1].ws_url)

    def test_from_env_falls_back_to_single_rpc_url(self) -> None:
        env = {"RPC_URL": "https://only.example", "WS_URL": "wss://only.example"}
        with mock.patch.dict("os.environ", env, clear=True):
            settings = EndpointPoolSettings.from_env()
        self.assertEqual(len(settings.endpoints), 1)
        self.assertEqual(settings.endpoints[0].ws_url, "wss://only.example")
        self.assertEqual(settings.failure_cooldown_seconds, 1200)


if __name__ == "__main__":
    unittest.main()
