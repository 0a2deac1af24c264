from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal

from swapbot.common import PriceUnavailable
from swapbot.endpoints import LedgerClient

from .types import PoolSpec, normalize_address


@dataclass(slots=True, frozen=True)
class PoolReserves:
    asset_reserve: int
    reference_reserve: int
    block_timestamp: int


def compute_price(
    *,
    reference_reserve: int,
    asset_reserve: int,
    reference_decimals: int,
    asset_decimals: int,
) -> float:
    """Reference units paid per one unit of the traded asset."""
    if reference_reserve <= 0 or asset_reserve <= 0:
        raise PriceUnavailable("Pool has an empty reserve")
    reference_amount = Decimal(reference_reserve) / (Decimal(10) ** reference_decimals)
    asset_amount = Decimal(asset_reserve) / (Decimal(10) ** asset_decimals)
    return float(reference_amount / asset_amount)


class ReserveReader:
    """Reads pair reserves oriented as (traded asset, reference asset).

    The token0/token1 order of a pair never changes, so it is looked up once
    per pool and shared by every endpoint.
    """

    def __init__(self) -> None:
        self._asset_is_token0: dict[str, bool] = {}
        self._lock = threading.Lock()

    async def _orientation(self, client: LedgerClient, pool: PoolSpec) -> bool:
        key = normalize_address(pool.pool_address)
        with self._lock:
            cached = self._asset_is_token0.get(key)
        if cached is not None:
            return cached

        token0, token1 = await client.pool_tokens(pool.pool_address)
        asset = normalize_address(pool.asset.address)
        if normalize_address(token0) == asset:
            orientation = True
        elif normalize_address(token1) == asset:
            orientation = False
        else:
            raise PriceUnavailable(f"Pool {pool.pool_address} does not hold asset {pool.asset.address}")

        with self._lock:
            self._asset_is_token0[key] = orientation
        return orientation

    async def read(self, client: LedgerClient, pool: PoolSpec) -> PoolReserves:
        asset_is_token0 = await self._orientation(client, pool)
        reserve0, reserve1, block_timestamp = await client.get_reserves(pool.pool_address)
        if asset_is_token0:
            return PoolReserves(asset_reserve=reserve0, reference_reserve=reserve1, block_timestamp=block_timestamp)
        return PoolReserves(asset_reserve=reserve1, reference_reserve=reserve0, block_timestamp=block_timestamp)
