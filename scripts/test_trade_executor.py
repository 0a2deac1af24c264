from __future__ import annotations

import unittest

from ledger_fakes import (
    ASSET,
    REFERENCE,
    ROUTER,
    UNIT,
    FakeChain,
    build_pool,
    make_pool,
    make_wallet,
    quiet_logger,
)

from swapbot.common import LedgerRevertError
from swapbot.trading import GasPolicy, SwapIntent, TradeExecutor, min_amount_out
from swapbot.trading.types import MAX_UINT256, MODE_TWO_WAY


def _gas_policy() -> GasPolicy:
    return GasPolicy(gas_price_gwei_by_mode={MODE_TWO_WAY: 0.02})


class MinAmountOutTests(unittest.TestCase):
    def test_slippage_floor_uses_integer_math(self) -> None:
        self.assertEqual(min_amount_out(10_000, 300), 9_700)
        self.assertEqual(min_amount_out(999, 100), 989)
        self.assertEqual(min_amount_out(1, 0), 1)

    def test_gas_price_prefers_custom_override(self) -> None:
        policy = GasPolicy(gas_price_gwei_by_mode={MODE_TWO_WAY: 0.02}, custom_gas_price_gwei=0.5)
        self.assertEqual(policy.gas_price_wei(MODE_TWO_WAY), 500_000_000)
        self.assertEqual(_gas_policy().gas_price_wei(MODE_TWO_WAY), 20_000_000)


class TradeExecutorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.chain = FakeChain()
        self.pool_spec = make_pool()
        self.chain.add_pair(self.pool_spec, asset_reserve=2_000_000 * UNIT, reference_reserve=1000 * UNIT)
        self.wallet = make_wallet(1)
        self.endpoints = build_pool(self.chain, ["A", "B"])
        self.executor = TradeExecutor(
            logger=quiet_logger("test.executor"),
            pool=self.endpoints,
            router_address=ROUTER,
            gas_policy=_gas_policy(),
            bot_mode=MODE_TWO_WAY,
            preferred_endpoints=("A", "B"),
        )

    async def test_buy_reconciles_by_balance_delta(self) -> None:
        self.chain.set_balance(REFERENCE.address, self.wallet.address, 10 * UNIT)
        self.chain.set_balance(ASSET.address, self.wallet.address, 5 * UNIT)
        intent = SwapIntent.buy(wallet=self.wallet, pool=self.pool_spec, amount_in=UNIT, slippage_bps=300)

        result = await self.executor.swap_exact_in(intent)

        self.assertTrue(result.success, result.reason)
        expected = FakeChain.amount_out(UNIT, 1000 * UNIT, 2_000_000 * UNIT)
        self.assertEqual(result.amount_received, expected)
        self.assertEqual(self.chain.balance(ASSET.address, self.wallet.address), 5 * UNIT + expected)
        self.assertEqual(result.expected_out, expected)
        self.assertEqual(result.min_out, min_amount_out(expected, 300))
        self.assertEqual(self.chain.submitted[0]["min_amount_out"], result.min_out)
        self.assertEqual(self.chain.submitted[0]["path"], [REFERENCE.address, ASSET.address])
        self.assertIsNotNone(result.tx_hash)

    async def test_fee_on_transfer_output_reports_what_actually_arrived(self) -> None:
        self.chain.set_balance(REFERENCE.address, self.wallet.address, 10 * UNIT)
        self.chain.set_balance(ASSET.address, self.wallet.address, 5 * UNIT)
        self.chain.transfer_fee_bps[ASSET.address.lower()] = 200
        intent = SwapIntent.buy(wallet=self.wallet, pool=self.pool_spec, amount_in=UNIT, slippage_bps=300)

        result = await self.executor.swap_exact_in(intent)

        self.assertTrue(result.success, result.reason)
        delta = self.chain.balance(ASSET.address, self.wallet.address) - 5 * UNIT
        self.assertEqual(result.amount_received, delta)
        self.assertLess(result.amount_received, result.expected_out)
        self.assertEqual(result.amount_received, result.expected_out - result.expected_out * 200 // 10_000)

    async def test_approves_router_once_with_max_allowance(self) -> None:
        self.chain.set_balance(REFERENCE.address, self.wallet.address, 10 * UNIT)
        intent = SwapIntent.buy(wallet=self.wallet, pool=self.pool_spec, amount_in=UNIT, slippage_bps=300)

        await self.executor.swap_exact_in(intent)
        await self.executor.swap_exact_in(intent)

        self.assertEqual(len(self.chain.approvals), 1)
        self.assertEqual(self.chain.approvals[0]["amount"], MAX_UINT256)
        self.assertEqual(len(self.chain.submitted), 2)

    async def test_amount_above_balance_fails_without_submitting(self) -> None:
        self.chain.set_balance(REFERENCE.address, self.wallet.address, UNIT // 2)
        intent = SwapIntent.buy(wallet=self.wallet, pool=self.pool_spec, amount_in=UNIT, slippage_bps=300)

        result = await self.executor.swap_exact_in(intent)

        self.assertFalse(result.success)
        self.assertEqual(result.reason, "insufficient_balance")
        self.assertEqual(self.chain.submitted, [])

    async def test_zero_amount_is_rejected(self) -> None:
        intent = SwapIntent.sell(wallet=self.wallet, pool=self.pool_spec, amount_in=0, slippage_bps=300)
        result = await self.executor.swap_exact_in(intent)
        self.assertEqual(result.reason, "insufficient_balance")

    async def test_unconfirmed_swap_reports_transaction_failed_with_hash(self) -> None:
        self.chain.set_balance(REFERENCE.address, self.wallet.address, 10 * UNIT)
        self.chain.allowances[(REFERENCE.address.lower(), self.wallet.address.lower(), ROUTER.lower())] = MAX_UINT256
        self.chain.receipts_ok = False
        intent = SwapIntent.buy(wallet=self.wallet, pool=self.pool_spec, amount_in=UNIT, slippage_bps=300)

        result = await self.executor.swap_exact_in(intent)

        self.assertFalse(result.success)
        self.assertEqual(result.reason, "transaction_failed")
        self.assertEqual(result.tx_hash, self.chain.submitted[0]["tx_hash"])
        self.assertEqual(result.amount_received, 0)

    async def test_unconfirmed_approval_reports_approval_failed(self) -> None:
        self.chain.set_balance(REFERENCE.address, self.wallet.address, 10 * UNIT)
        self.chain.receipts_ok = False
        intent = SwapIntent.buy(wallet=self.wallet, pool=self.pool_spec, amount_in=UNIT, slippage_bps=300)

        result = await self.executor.swap_exact_in(intent)

        self.assertEqual(result.reason, "approval_failed")
        self.assertEqual(self.chain.submitted, [])

    async def test_send_is_never_retried_on_another_endpoint(self) -> None:
        self.chain.set_balance(REFERENCE.address, self.wallet.address, 10 * UNIT)
        self.chain.allowances[(REFERENCE.address.lower(), self.wallet.address.lower(), ROUTER.lower())] = MAX_UINT256
        ledger_a = self.endpoints.get("A").client
        original_send = ledger_a.send_swap

        async def broken_send(**kwargs):
            ledger_a.down = True
            return await original_send(**kwargs)

        ledger_a.send_swap = broken_send
        intent = SwapIntent.buy(wallet=self.wallet, pool=self.pool_spec, amount_in=UNIT, slippage_bps=300)

        result = await self.executor.swap_exact_in(intent)

        self.assertEqual(result.reason, "no_endpoints_available")
        self.assertNotIn("send_swap", self.endpoints.get("B").client.calls)

    async def test_flush_steps_down_through_fixed_fractions(self) -> None:
        balance = 10_000 * UNIT
        self.chain.set_balance(ASSET.address, self.wallet.address, balance)
        attempted: list[int] = []

        async def always_short(**kwargs):
            attempted.append(kwargs["amount_in"])
            raise LedgerRevertError("execution reverted: TransferHelper: TRANSFER_FROM_FAILED")

        for endpoint in self.endpoints.endpoints:
            endpoint.client.send_swap = always_short

        result = await self.executor.flush_balance(self.wallet, self.pool_spec, slippage_bps=300)

        self.assertEqual(attempted, [balance * 9999 // 10000, balance * 99 // 100, balance * 95 // 100])
        self.assertFalse(result.success)
        self.assertEqual(result.reason, "insufficient_balance")
        self.assertEqual(result.retry_count, 2)

    async def test_flush_with_transfer_fee_succeeds_on_second_step(self) -> None:
        balance = 1000 * UNIT
        self.chain.set_balance(ASSET.address, self.wallet.address, balance)
        self.chain.transfer_fee_bps[ASSET.address.lower()] = 100

        result = await self.executor.flush_balance(self.wallet, self.pool_spec, slippage_bps=300)

        self.assertTrue(result.success, result.reason)
        self.assertEqual(result.retry_count, 1)
        self.assertEqual(result.amount_in, balance * 99 // 100)
        self.assertEqual([item["amount_in"] for item in self.chain.submitted], [balance * 99 // 100])

    async def test_flush_stops_on_non_balance_failure(self) -> None:
        self.chain.set_balance(ASSET.address, self.wallet.address, 1000 * UNIT)
        calls: list[int] = []

        async def slippage_revert(**kwargs):
            calls.append(kwargs["amount_in"])
            raise LedgerRevertError("execution reverted: UniswapV2Router: INSUFFICIENT_OUTPUT_AMOUNT")

        for endpoint in self.endpoints.endpoints:
            endpoint.client.send_swap = slippage_revert

        result = await self.executor.flush_balance(self.wallet, self.pool_spec, slippage_bps=300)

        self.assertEqual(result.reason, "transaction_failed")
        self.assertEqual(len(calls), 1)
        self.assertEqual(result.retry_count, 0)

    async def test_flush_zero_balance_reports_no_balance(self) -> None:
        result = await self.executor.flush_balance(self.wallet, self.pool_spec, slippage_bps=300)

        self.assertFalse(result.success)
        self.assertEqual(result.reason, "no_balance")
        self.assertEqual(self.chain.submitted, [])

    async def test_entire_balance_intent_goes_through_ladder(self) -> None:
        self.chain.set_balance(ASSET.address, self.wallet.address, 1000 * UNIT)
        intent = SwapIntent.sell(wallet=self.wallet, pool=self.pool_spec, slippage_bps=300, sell_entire_balance=True)

        result = await self.executor.swap_exact_in(intent)

        self.assertTrue(result.success, result.reason)
        self.assertEqual(result.amount_in, 1000 * UNIT * 9999 // 10000)
        self.assertEqual(result.retry_count, 0)


if __name__ == "__main__":
    unittest.main()
