from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import (
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)

from swapbot.common import EndpointTransportError, LedgerRevertError, log_event

if TYPE_CHECKING:
    from swapbot.trading.types import Wallet

T = TypeVar("T")

PAIR_ABI: list[dict[str, Any]] = [
    {
        "name": "token0",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "token1",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "getReserves",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "getAmountOut",
        "type": "function",
        "stateMutability": "pure",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "reserveIn", "type": "uint256"},
            {"name": "reserveOut", "type": "uint256"},
        ],
        "outputs": [{"name": "amountOut", "type": "uint256"}],
    },
    {
        "name": "swapExactTokensForTokensSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
]


class Web3Ledger:
    """Request/response ledger client for one RPC endpoint.

    Transport failures surface as ``EndpointTransportError`` so the pool can
    fail over; contract reverts and node rejections surface as
    ``LedgerRevertError`` and are never retried elsewhere.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        name: str,
        rpc_url: str,
        timeout_seconds: float = 10.0,
        chain_id: int | None = None,
    ) -> None:
        self.name = name
        self._logger = logger
        self._chain_id = chain_id
        self._w3 = AsyncWeb3(
            AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))},
            )
        )

    @staticmethod
    def _checksum(address: str) -> str:
        return AsyncWeb3.to_checksum_address(address)

    async def _guard(self, operation: str, action: Callable[[], Awaitable[T]]) -> T:
        try:
            return await action()
        except ContractLogicError as error:
            raise LedgerRevertError(f"{operation} reverted: {error}") from error
        except Web3RPCError as error:
            raise LedgerRevertError(f"{operation} rejected: {error}") from error
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ProviderConnectionError) as error:
            raise EndpointTransportError(f"{operation} failed: {error}", endpoint=self.name) from error
        except (Web3Exception, ValueError) as error:
            # Undecodable output from a non-contract address, or a malformed address.
            raise LedgerRevertError(f"{operation} unusable: {error}") from error

    def _pair(self, pool_address: str) -> Any:
        return self._w3.eth.contract(address=self._checksum(pool_address), abi=PAIR_ABI)

    def _erc20(self, asset_address: str) -> Any:
        return self._w3.eth.contract(address=self._checksum(asset_address), abi=ERC20_ABI)

    def _router(self, router_address: str) -> Any:
        return self._w3.eth.contract(address=self._checksum(router_address), abi=ROUTER_ABI)

    async def block_number(self) -> int:
        async def action() -> int:
            return int(await self._w3.eth.block_number)

        return await self._guard("eth_blockNumber", action)

    async def _resolve_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self._w3.eth.chain_id)
        return self._chain_id

    async def pool_tokens(self, pool_address: str) -> tuple[str, str]:
        async def action() -> tuple[str, str]:
            pair = self._pair(pool_address)
            token0 = await pair.functions.token0().call()
            token1 = await pair.functions.token1().call()
            return str(token0), str(token1)

        return await self._guard("pool_tokens", action)

    async def get_reserves(self, pool_address: str) -> tuple[int, int, int]:
        async def action() -> tuple[int, int, int]:
            pair = self._pair(pool_address)
            reserve0, reserve1, block_timestamp = await pair.functions.getReserves().call()
            return int(reserve0), int(reserve1), int(block_timestamp)

        return await self._guard("get_reserves", action)

    async def balance_of(self, asset_address: str, owner: str) -> int:
        async def action() -> int:
            token = self._erc20(asset_address)
            return int(await token.functions.balanceOf(self._checksum(owner)).call())

        return await self._guard("balance_of", action)

    async def allowance(self, asset_address: str, owner: str, spender: str) -> int:
        async def action() -> int:
            token = self._erc20(asset_address)
            return int(await token.functions.allowance(self._checksum(owner), self._checksum(spender)).call())

        return await self._guard("allowance", action)

    async def get_amount_out(self, *, router: str, amount_in: int, reserve_in: int, reserve_out: int) -> int:
        async def action() -> int:
            contract = self._router(router)
            return int(await contract.functions.getAmountOut(amount_in, reserve_in, reserve_out).call())

        return await self._guard("get_amount_out", action)

    async def _sign_and_send(self, *, wallet: Wallet, call: Any, gas_price_wei: int, gas_limit: int) -> str:
        nonce = await self._w3.eth.get_transaction_count(self._checksum(wallet.address), "pending")
        tx = await call.build_transaction(
            {
                "from": self._checksum(wallet.address),
                "gas": int(gas_limit),
                "gasPrice": int(gas_price_wei),
                "nonce": nonce,
                "value": 0,
                "chainId": await self._resolve_chain_id(),
            }
        )
        signed = wallet.account.sign_transaction(tx)
        tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        return AsyncWeb3.to_hex(tx_hash)

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
        async def action() -> str:
            call = self._erc20(asset_address).functions.approve(self._checksum(spender), int(amount))
            return await self._sign_and_send(wallet=wallet, call=call, gas_price_wei=gas_price_wei, gas_limit=gas_limit)

        return await self._guard("send_approve", action)

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
        async def action() -> str:
            call = self._router(router).functions.swapExactTokensForTokensSupportingFeeOnTransferTokens(
                int(amount_in),
                int(min_amount_out),
                [self._checksum(address) for address in path],
                self._checksum(wallet.address),
                int(deadline),
            )
            return await self._sign_and_send(wallet=wallet, call=call, gas_price_wei=gas_price_wei, gas_limit=gas_limit)

        return await self._guard("send_swap", action)

    async def wait_for_receipt(self, tx_hash: str, *, timeout_seconds: float) -> bool:
        async def action() -> bool:
            try:
                receipt = await self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout_seconds)
            except (TimeExhausted, TransactionNotFound):
                log_event(
                    self._logger,
                    level="warning",
                    event="receipt_timeout",
                    message="Transaction was not confirmed before the timeout",
                    endpoint=self.name,
                    tx_hash=tx_hash,
                    timeout_seconds=timeout_seconds,
                )
                return False
            return int(receipt.get("status", 0)) == 1

        return await self._guard("wait_for_receipt", action)

    async def close(self) -> None:
        await self._w3.provider.disconnect()
