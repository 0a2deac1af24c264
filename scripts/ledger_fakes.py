from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

from swapbot.common import EndpointTransportError, LedgerRevertError
from swapbot.endpoints import Endpoint, EndpointPool
from swapbot.trading.types import AssetSpec, PoolSpec, Wallet, normalize_address

REFERENCE = AssetSpec(address="0x00000000000000000000000000000000000000a1", symbol="VIRTUAL", decimals=18)
ASSET = AssetSpec(address="0x00000000000000000000000000000000000000b2", symbol="TKN", decimals=18)
POOL_ADDRESS = "0x00000000000000000000000000000000000000c3"
ROUTER = "0x00000000000000000000000000000000000000d4"

UNIT = 10**18


def make_pool(asset: AssetSpec = ASSET, pool_address: str = POOL_ADDRESS) -> PoolSpec:
    return PoolSpec(pool_address=pool_address, asset=asset, reference=REFERENCE)


def make_wallet(index: int = 1, *, enabled: bool = True) -> Wallet:
    return Wallet(address=f"0x{index:040x}", account=None, label=f"W{index}", enabled=enabled)


def quiet_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


class FakeChain:
    """Shared ledger state every fake endpoint reads from.

    Pairs keep (token0, token1) order with the traded asset as token0 unless
    ``asset_first`` is false. Swaps move reserves and balances with the 0.3%
    constant-product formula; ``transfer_fee_bps`` makes a token
    fee-on-transfer: selling more than ``balance * (1 - fee)`` reverts, and
    buying it credits the pool output minus the fee.
    """

    def __init__(self) -> None:
        self.pairs: dict[str, tuple[str, str]] = {}
        self.reserves: dict[str, list[int]] = {}
        self.block_timestamp = 1_700_000_000
        self.balances: dict[tuple[str, str], int] = {}
        self.allowances: dict[tuple[str, str, str], int] = {}
        self.transfer_fee_bps: dict[str, int] = {}
        self.receipts_ok = True
        self.submitted: list[dict[str, Any]] = []
        self.approvals: list[dict[str, Any]] = []
        self._hashes = itertools.count(1)

    def add_pair(
        self,
        pool: PoolSpec,
        *,
        asset_reserve: int,
        reference_reserve: int,
        asset_first: bool = True,
    ) -> None:
        key = normalize_address(pool.pool_address)
        if asset_first:
            self.pairs[key] = (pool.asset.address, pool.reference.address)
            self.reserves[key] = [asset_reserve, reference_reserve]
        else:
            self.pairs[key] = (pool.reference.address, pool.asset.address)
            self.reserves[key] = [reference_reserve, asset_reserve]

    def set_reserves(self, pool: PoolSpec, *, asset_reserve: int, reference_reserve: int, advance: int = 12) -> None:
        key = normalize_address(pool.pool_address)
        token0, _ = self.pairs[key]
        if normalize_address(token0) == normalize_address(pool.asset.address):
            self.reserves[key] = [asset_reserve, reference_reserve]
        else:
            self.reserves[key] = [reference_reserve, asset_reserve]
        self.block_timestamp += advance

    def set_balance(self, asset_address: str, owner: str, amount: int) -> None:
        self.balances[(normalize_address(asset_address), normalize_address(owner))] = amount

    def balance(self, asset_address: str, owner: str) -> int:
        return self.balances.get((normalize_address(asset_address), normalize_address(owner)), 0)

    def next_hash(self) -> str:
        return f"0x{next(self._hashes):064x}"

    def find_pair(self, token_a: str, token_b: str) -> str:
        wanted = {normalize_address(token_a), normalize_address(token_b)}
        for key, tokens in self.pairs.items():
            if {normalize_address(token) for token in tokens} == wanted:
                return key
        raise LedgerRevertError("UniswapV2Library: pair not found")

    @staticmethod
    def amount_out(amount_in: int, reserve_in: int, reserve_out: int) -> int:
        amount_with_fee = amount_in * 997
        return (amount_with_fee * reserve_out) // (reserve_in * 1000 + amount_with_fee)

    def swap(self, *, owner: str, amount_in: int, min_amount_out: int, path: list[str]) -> None:
        token_in, token_out = path
        held = self.balance(token_in, owner)
        fee_bps = self.transfer_fee_bps.get(normalize_address(token_in), 0)
        if amount_in > held * (10_000 - fee_bps) // 10_000:
            raise LedgerRevertError("execution reverted: TransferHelper: TRANSFER_FROM_FAILED")

        key = self.find_pair(token_in, token_out)
        token0, _ = self.pairs[key]
        reserves = self.reserves[key]
        index_in = 0 if normalize_address(token0) == normalize_address(token_in) else 1
        received = self.amount_out(amount_in, reserves[index_in], reserves[1 - index_in])
        out_fee_bps = self.transfer_fee_bps.get(normalize_address(token_out), 0)
        credited = received - received * out_fee_bps // 10_000
        if credited < min_amount_out:
            raise LedgerRevertError("execution reverted: UniswapV2Router: INSUFFICIENT_OUTPUT_AMOUNT")

        reserves[index_in] += amount_in
        reserves[1 - index_in] -= received
        self.block_timestamp += 2
        self.set_balance(token_in, owner, held - amount_in)
        self.set_balance(token_out, owner, self.balance(token_out, owner) + credited)


class FakeLedger:
    def __init__(self, name: str, chain: FakeChain) -> None:
        self.name = name
        self.chain = chain
        self.down = False
        self.calls: list[str] = []
        self.closed = False

    def _touch(self, operation: str) -> None:
        self.calls.append(operation)
        if self.down:
            raise EndpointTransportError(f"{self.name} unreachable", endpoint=self.name)

    async def block_number(self) -> int:
        self._touch("block_number")
        return 100

    async def pool_tokens(self, pool_address: str) -> tuple[str, str]:
        self._touch("pool_tokens")
        return self.chain.pairs[normalize_address(pool_address)]

    async def get_reserves(self, pool_address: str) -> tuple[int, int, int]:
        self._touch("get_reserves")
        reserve0, reserve1 = self.chain.reserves[normalize_address(pool_address)]
        return reserve0, reserve1, self.chain.block_timestamp

    async def balance_of(self, asset_address: str, owner: str) -> int:
        self._touch("balance_of")
        return self.chain.balance(asset_address, owner)

    async def allowance(self, asset_address: str, owner: str, spender: str) -> int:
        self._touch("allowance")
        key = (normalize_address(asset_address), normalize_address(owner), normalize_address(spender))
        return self.chain.allowances.get(key, 0)

    async def get_amount_out(self, *, router: str, amount_in: int, reserve_in: int, reserve_out: int) -> int:
        self._touch("get_amount_out")
        return self.chain.amount_out(amount_in, reserve_in, reserve_out)

    async def send_approve(
        self,
        *,
        wallet: Wallet,
        asset_address: str,
        spender: str,
        amount: int,
        gas_price_wei: int,
        gas_limit: int,
    ) -> str:
        self._touch("send_approve")
        key = (normalize_address(asset_address), normalize_address(wallet.address), normalize_address(spender))
        self.chain.allowances[key] = amount
        self.chain.approvals.append({"asset": asset_address, "wallet": wallet.address, "amount": amount})
        return self.chain.next_hash()

    async def send_swap(
        self,
        *,
        wallet: Wallet,
        router: str,
        amount_in: int,
        min_amount_out: int,
        path: list[str],
        deadline: int,
        gas_price_wei: int,
        gas_limit: int,
    ) -> str:
        self._touch("send_swap")
        self.chain.swap(owner=wallet.address, amount_in=amount_in, min_amount_out=min_amount_out, path=path)
        tx_hash = self.chain.next_hash()
        self.chain.submitted.append(
            {
                "endpoint": self.name,
                "wallet": wallet.address,
                "amount_in": amount_in,
                "min_amount_out": min_amount_out,
                "path": list(path),
                "tx_hash": tx_hash,
            }
        )
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, *, timeout_seconds: float) -> bool:
        self._touch("wait_for_receipt")
        return self.chain.receipts_ok

    async def close(self) -> None:
        self.closed = True


class FakeLogStream:
    def __init__(self, name: str, *, reject_subscriptions: bool = False) -> None:
        self.name = name
        self.reject_subscriptions = reject_subscriptions
        self.handlers: dict[str, Any] = {}
        self.unsubscribed: list[str] = []
        self._ids = itertools.count(1)
        self.closed = False

    async def subscribe_logs(self, *, address: str, topics: list[str], handler: Any) -> str:
        if self.reject_subscriptions:
            raise EndpointTransportError(f"{self.name} refused eth_subscribe", endpoint=self.name)
        subscription_id = f"{self.name}-sub-{next(self._ids)}"
        self.handlers[subscription_id] = handler
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        self.handlers.pop(subscription_id, None)
        self.unsubscribed.append(subscription_id)

    async def push(self, log: dict[str, Any] | None = None) -> None:
        payload = log or {"transactionHash": "0xfeed"}
        for handler in list(self.handlers.values()):
            await handler(payload)

    async def close(self) -> None:
        self.closed = True


def build_endpoints(chain: FakeChain, names: list[str], *, streaming: bool = True) -> list[Endpoint]:
    return [
        Endpoint(name=name, client=FakeLedger(name, chain), stream=FakeLogStream(name) if streaming else None)
        for name in names
    ]


def build_pool(
    chain: FakeChain,
    names: list[str],
    *,
    logger: logging.Logger | None = None,
    streaming: bool = True,
    **kwargs: Any,
) -> EndpointPool:
    return EndpointPool(
        logger=logger or quiet_logger("test.pool"),
        endpoints=build_endpoints(chain, names, streaming=streaming),
        **kwargs,
    )


async def push_everywhere(pool: EndpointPool, log: dict[str, Any] | None = None) -> None:
    await asyncio.gather(*(endpoint.stream.push(log) for endpoint in pool.endpoints if endpoint.stream is not None))


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)
