from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from swapbot.common import (
    FAIL_REASON_EXECUTION_ERROR,
    FAIL_REASON_INSUFFICIENT_BALANCE,
    FAIL_REASON_NO_BALANCE,
    ApprovalFailed,
    EngineError,
    InsufficientBalance,
    LedgerRevertError,
    PriceUnavailable,
    TransactionFailed,
    is_insufficient_balance_message,
    log_event,
)
from swapbot.endpoints import EndpointPool, LedgerClient

from .reserves import ReserveReader
from .types import (
    BPS_DENOMINATOR,
    FLUSH_BALANCE_FRACTIONS,
    MAX_UINT256,
    SIDE_BUY,
    SIDE_SELL,
    GasPolicy,
    PoolSpec,
    SwapIntent,
    SwapResult,
    Wallet,
    from_base_units,
)

T = TypeVar("T")

RESULT_OK = "ok"


def min_amount_out(expected_out: int, slippage_bps: int) -> int:
    bps = max(0, min(BPS_DENOMINATOR, int(slippage_bps)))
    return expected_out * (BPS_DENOMINATOR - bps) // BPS_DENOMINATOR


def price_impact_pct(*, amount_in: int, expected_out: int, reserve_in: int, reserve_out: int) -> float:
    if amount_in <= 0 or reserve_in <= 0:
        return 0.0
    spot_out = amount_in * reserve_out / reserve_in
    if spot_out <= 0:
        return 0.0
    return max(0.0, (1.0 - expected_out / spot_out) * 100.0)


class TradeExecutor:
    """Quote, approve, submit, confirm and reconcile one exact-input swap.

    Failures come back as ``SwapResult`` records with a stable ``reason``;
    nothing a single swap does raises past ``swap_exact_in``.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        pool: EndpointPool,
        router_address: str,
        gas_policy: GasPolicy,
        bot_mode: str,
        confirmation_timeout_seconds: float = 120.0,
        deadline_seconds: int = 1200,
        preferred_endpoints: Sequence[str] = (),
        reserves: ReserveReader | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._logger = logger
        self._pool = pool
        self._router_address = router_address
        self._gas_policy = gas_policy
        self._bot_mode = bot_mode
        self._confirmation_timeout_seconds = max(1.0, float(confirmation_timeout_seconds))
        self._deadline_seconds = max(60, int(deadline_seconds))
        self._preferred_endpoints = tuple(preferred_endpoints)
        self._reserves = reserves or ReserveReader()
        self._clock = clock

    @property
    def gas_price_wei(self) -> int:
        return self._gas_policy.gas_price_wei(self._bot_mode)

    async def _read(self, operation: Callable[[LedgerClient], Awaitable[T]], description: str) -> T:
        return await self._pool.call(operation, preferred=self._preferred_endpoints, description=description)

    async def _send(self, operation: Callable[[LedgerClient], Awaitable[T]], description: str) -> T:
        # A resend on another endpoint could land the same transaction twice.
        return await self._pool.call(
            operation,
            preferred=self._preferred_endpoints,
            attempts=1,
            description=description,
        )

    async def balance_of(self, asset_address: str, owner: str) -> int:
        return await self._read(lambda client: client.balance_of(asset_address, owner), "balance_of")

    async def swap_exact_in(self, intent: SwapIntent) -> SwapResult:
        if intent.sell_entire_balance:
            return await self.flush_balance(intent.wallet, intent.pool, slippage_bps=intent.slippage_bps)
        return await self._swap(intent, amount_in=int(intent.amount_in or 0), retry_count=0)

    async def _swap(self, intent: SwapIntent, *, amount_in: int, retry_count: int) -> SwapResult:
        context: dict[str, Any] = {
            "wallet_address": intent.wallet.address,
            "wallet_label": intent.wallet.label,
            "side": intent.side,
            "asset_symbol": intent.pool.symbol,
            "pool_address": intent.pool.pool_address,
            "amount_in": amount_in,
            "input_decimals": intent.input_asset.decimals,
            "output_decimals": intent.output_asset.decimals,
            "retry_count": retry_count,
        }
        try:
            return await self._execute(intent, amount_in=amount_in, context=context)
        except EngineError as error:
            return self._failure(error.reason, str(error), context, tx_hash=getattr(error, "tx_hash", None))
        except LedgerRevertError as error:
            return self._failure(FAIL_REASON_EXECUTION_ERROR, str(error), context)

    def _failure(self, reason: str, detail: str, context: dict[str, Any], *, tx_hash: str | None = None) -> SwapResult:
        fields = dict(context)
        if tx_hash is not None:
            fields["tx_hash"] = tx_hash
        result = SwapResult(success=False, amount_received=0, reason=reason, **fields)
        log_event(
            self._logger,
            level="warning",
            event="swap_failed",
            message="Swap did not complete",
            error=detail,
            **result.to_dict(),
        )
        return result

    async def _execute(self, intent: SwapIntent, *, amount_in: int, context: dict[str, Any]) -> SwapResult:
        if amount_in <= 0:
            raise InsufficientBalance("Swap amount must be positive")

        wallet = intent.wallet
        input_address = intent.input_asset.address
        output_address = intent.output_asset.address

        # Quote
        reserves = await self._read(lambda client: self._reserves.read(client, intent.pool), "get_reserves")
        if intent.side == SIDE_BUY:
            reserve_in, reserve_out = reserves.reference_reserve, reserves.asset_reserve
        else:
            reserve_in, reserve_out = reserves.asset_reserve, reserves.reference_reserve
        if reserve_in <= 0 or reserve_out <= 0:
            raise PriceUnavailable(f"Pool {intent.pool.pool_address} has an empty reserve")

        expected_out = await self._read(
            lambda client: client.get_amount_out(
                router=self._router_address,
                amount_in=amount_in,
                reserve_in=reserve_in,
                reserve_out=reserve_out,
            ),
            "get_amount_out",
        )
        if expected_out <= 0:
            raise PriceUnavailable("Router quoted zero output")
        minimum_out = min_amount_out(expected_out, intent.slippage_bps)
        price = self._execution_price(intent, amount_in=amount_in, expected_out=expected_out)
        context.update({"expected_out": expected_out, "min_out": minimum_out, "price": price})
        log_event(
            self._logger,
            level="info",
            event="swap_quoted",
            message="Swap quoted",
            price_impact_pct=round(
                price_impact_pct(
                    amount_in=amount_in,
                    expected_out=expected_out,
                    reserve_in=reserve_in,
                    reserve_out=reserve_out,
                ),
                4,
            ),
            slippage_bps=intent.slippage_bps,
            **context,
        )

        input_balance = await self.balance_of(input_address, wallet.address)
        if amount_in > input_balance:
            raise InsufficientBalance(
                f"Requested {amount_in} exceeds balance {input_balance} of {intent.input_asset.symbol}"
            )
        output_balance_before = await self.balance_of(output_address, wallet.address)

        await self._ensure_allowance(wallet, input_address, amount_in)

        tx_hash = await self._submit(intent, amount_in=amount_in, minimum_out=minimum_out)
        context["tx_hash"] = tx_hash

        # Once submitted, a shutdown must not abandon the confirmation.
        return await asyncio.shield(self._confirm(intent, tx_hash, output_balance_before, context))

    async def _confirm(
        self,
        intent: SwapIntent,
        tx_hash: str,
        output_balance_before: int,
        context: dict[str, Any],
    ) -> SwapResult:
        confirmed = await self._read(
            lambda client: client.wait_for_receipt(tx_hash, timeout_seconds=self._confirmation_timeout_seconds),
            "wait_for_receipt",
        )
        if not confirmed:
            raise TransactionFailed(f"Swap {tx_hash} failed or was not confirmed", tx_hash=tx_hash)

        output_balance_after = await self.balance_of(intent.output_asset.address, intent.wallet.address)
        result = SwapResult(
            success=True,
            amount_received=output_balance_after - output_balance_before,
            reason=RESULT_OK,
            **context,
        )
        log_event(
            self._logger,
            level="info",
            event="swap_confirmed",
            message="Swap confirmed",
            **result.to_dict(),
        )
        return result

    @staticmethod
    def _execution_price(intent: SwapIntent, *, amount_in: int, expected_out: int) -> float:
        amount_in_ui = from_base_units(amount_in, intent.input_asset.decimals)
        expected_ui = from_base_units(expected_out, intent.output_asset.decimals)
        if intent.side == SIDE_BUY:
            return amount_in_ui / expected_ui if expected_ui > 0 else 0.0
        return expected_ui / amount_in_ui if amount_in_ui > 0 else 0.0

    async def _ensure_allowance(self, wallet: Wallet, asset_address: str, amount_in: int) -> None:
        allowance = await self._read(
            lambda client: client.allowance(asset_address, wallet.address, self._router_address),
            "allowance",
        )
        if allowance >= amount_in:
            return

        log_event(
            self._logger,
            level="info",
            event="approval_required",
            message="Approving router to spend asset",
            wallet_address=wallet.address,
            asset_address=asset_address,
            allowance=allowance,
            amount_in=amount_in,
        )
        try:
            approve_hash = await self._send(
                lambda client: client.send_approve(
                    wallet=wallet,
                    asset_address=asset_address,
                    spender=self._router_address,
                    amount=MAX_UINT256,
                    gas_price_wei=self.gas_price_wei,
                    gas_limit=self._gas_policy.approve_gas_limit,
                ),
                "send_approve",
            )
        except LedgerRevertError as error:
            raise ApprovalFailed(f"Approval rejected: {error}") from error

        confirmed = await self._read(
            lambda client: client.wait_for_receipt(approve_hash, timeout_seconds=self._confirmation_timeout_seconds),
            "wait_for_receipt",
        )
        if not confirmed:
            raise ApprovalFailed(f"Approval {approve_hash} failed or was not confirmed")

    async def _submit(self, intent: SwapIntent, *, amount_in: int, minimum_out: int) -> str:
        deadline = int(self._clock()) + self._deadline_seconds
        try:
            return await self._send(
                lambda client: client.send_swap(
                    wallet=intent.wallet,
                    router=self._router_address,
                    amount_in=amount_in,
                    min_amount_out=minimum_out,
                    path=[intent.input_asset.address, intent.output_asset.address],
                    deadline=deadline,
                    gas_price_wei=self.gas_price_wei,
                    gas_limit=self._gas_policy.swap_gas_limit,
                ),
                "send_swap",
            )
        except LedgerRevertError as error:
            if is_insufficient_balance_message(str(error)):
                raise InsufficientBalance(str(error)) from error
            raise TransactionFailed(f"Swap rejected: {error}") from error

    async def flush_balance(self, wallet: Wallet, pool: PoolSpec, *, slippage_bps: int) -> SwapResult:
        """Sell the whole asset balance, stepping down on insufficient-balance failures.

        The balance is read once; every attempt is a fixed fraction of that
        read. Fee-on-transfer assets usually settle on the second step.
        """
        try:
            balance = await self.balance_of(pool.asset.address, wallet.address)
        except (EngineError, LedgerRevertError) as error:
            return self._failure(
                getattr(error, "reason", FAIL_REASON_EXECUTION_ERROR),
                str(error),
                {
                    "wallet_address": wallet.address,
                    "wallet_label": wallet.label,
                    "side": SIDE_SELL,
                    "asset_symbol": pool.symbol,
                    "pool_address": pool.pool_address,
                    "input_decimals": pool.asset.decimals,
                    "output_decimals": pool.reference.decimals,
                },
            )

        if balance <= 0:
            log_event(
                self._logger,
                level="info",
                event="flush_no_balance",
                message="Nothing to sell",
                wallet_address=wallet.address,
                asset_symbol=pool.symbol,
            )
            return SwapResult(
                success=False,
                amount_received=0,
                reason=FAIL_REASON_NO_BALANCE,
                wallet_address=wallet.address,
                wallet_label=wallet.label,
                side=SIDE_SELL,
                asset_symbol=pool.symbol,
                pool_address=pool.pool_address,
                input_decimals=pool.asset.decimals,
                output_decimals=pool.reference.decimals,
            )

        intent = SwapIntent.sell(wallet=wallet, pool=pool, slippage_bps=slippage_bps, amount_in=balance)
        result: SwapResult | None = None
        for index, (numerator, denominator) in enumerate(FLUSH_BALANCE_FRACTIONS):
            amount_in = balance * numerator // denominator
            result = await self._swap(intent, amount_in=amount_in, retry_count=index)
            if result.success or result.reason != FAIL_REASON_INSUFFICIENT_BALANCE:
                return result
            if index + 1 < len(FLUSH_BALANCE_FRACTIONS):
                log_event(
                    self._logger,
                    level="info",
                    event="flush_step_down",
                    message="Retrying sell with a smaller share of the balance",
                    wallet_address=wallet.address,
                    asset_symbol=pool.symbol,
                    balance=balance,
                    next_numerator=FLUSH_BALANCE_FRACTIONS[index + 1][0],
                    next_denominator=FLUSH_BALANCE_FRACTIONS[index + 1][1],
                )
        return result
