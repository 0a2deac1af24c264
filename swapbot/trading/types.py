from __future__ import annotations

import enum
import json
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Awaitable, Callable

from eth_account import Account
from eth_account.signers.local import LocalAccount

from swapbot.common import ConfigurationError

MAX_UINT256 = 2**256 - 1
BPS_DENOMINATOR = 10_000

SIDE_BUY = "buy"
SIDE_SELL = "sell"
SIDE_DROP = "drop"

MODE_BUY = "BUY"
MODE_SELL = "SELL"
MODE_TWO_WAY = "2WAY"
BOT_MODES = (MODE_BUY, MODE_SELL, MODE_TWO_WAY)

STRATEGY_INSTANT = "INSTANT"
STRATEGY_MARKET_MAKER = "MARKET_MAKER"
STRATEGY_DEFAULT = "DEFAULT"
STRATEGY_FLUSH = "FSH"
STRATEGY_SELL_ALL = "SELL_ALL"
STRATEGIES = (
    STRATEGY_INSTANT,
    STRATEGY_MARKET_MAKER,
    STRATEGY_DEFAULT,
    STRATEGY_FLUSH,
    STRATEGY_SELL_ALL,
)

# Attempt fractions for entire-balance sells, as (numerator, denominator).
FLUSH_BALANCE_FRACTIONS: tuple[tuple[int, int], ...] = ((9999, 10000), (99, 100), (95, 100))


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or value == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_base_units(amount: float | int | str | Decimal, decimals: int) -> int:
    scaled = Decimal(str(amount)) * (Decimal(10) ** int(decimals))
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_base_units(raw_amount: int, decimals: int) -> float:
    return float(Decimal(int(raw_amount)) / (Decimal(10) ** int(decimals)))


def normalize_address(value: Any) -> str:
    return str(value or "").strip().lower()


def normalize_bot_mode(value: Any) -> str:
    normalized = str(value or "").strip().upper()
    if normalized in {"TWO_WAY", "TWOWAY", "BOTH"}:
        normalized = MODE_TWO_WAY
    if normalized not in BOT_MODES:
        raise ConfigurationError(f"Unsupported bot mode: {value!r}")
    return normalized


def normalize_strategy(value: Any) -> str:
    normalized = str(value or "").strip().upper()
    if normalized in {"MM", "MARKETMAKER"}:
        normalized = STRATEGY_MARKET_MAKER
    if normalized in {"FLUSH", "SELL_ALL_CONFIGURED"}:
        normalized = STRATEGY_FLUSH
    if normalized not in STRATEGIES:
        raise ConfigurationError(f"Unsupported trading strategy: {value!r}")
    return normalized


class WatchState(enum.Enum):
    ARMED = "armed"
    FIRED = "fired"
    STOPPED = "stopped"


class ConcurrencyPolicy(enum.Enum):
    SEQUENTIAL = "sequential"
    PARALLEL_WALLETS = "parallel_wallets"


@dataclass(slots=True, frozen=True)
class AssetSpec:
    address: str
    symbol: str
    decimals: int


@dataclass(slots=True, frozen=True)
class PoolSpec:
    pool_address: str
    asset: AssetSpec
    reference: AssetSpec

    @property
    def symbol(self) -> str:
        return self.asset.symbol

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, reference: AssetSpec) -> "PoolSpec":
        pool_address = str(payload.get("pool_address") or payload.get("poolAddress") or "").strip()
        asset_address = str(payload.get("address") or payload.get("asset_address") or "").strip()
        if not pool_address or not asset_address:
            raise ConfigurationError(f"Pool entry needs an asset address and a pool address: {payload!r}")
        return cls(
            pool_address=pool_address,
            asset=AssetSpec(
                address=asset_address,
                symbol=str(payload.get("symbol") or asset_address[:8]),
                decimals=to_int(payload.get("decimals"), 18),
            ),
            reference=reference,
        )


@dataclass(slots=True, frozen=True)
class DetectedAsset:
    address: str
    symbol: str
    decimals: int
    pool_address: str
    name: str = ""
    detected_at: str = ""

    def to_pool_spec(self, reference: AssetSpec) -> PoolSpec:
        return PoolSpec(
            pool_address=self.pool_address,
            asset=AssetSpec(address=self.address, symbol=self.symbol, decimals=self.decimals),
            reference=reference,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class Wallet:
    address: str
    account: LocalAccount = field(repr=False, compare=False)
    label: str = ""
    enabled: bool = True

    @classmethod
    def from_private_key(cls, private_key: str, *, label: str = "", enabled: bool = True) -> "Wallet":
        key = private_key.strip()
        if not key.startswith("0x"):
            key = f"0x{key}"
        account = Account.from_key(key)
        return cls(
            address=account.address,
            account=account,
            label=label or f"{account.address[:6]}...{account.address[-4:]}",
            enabled=enabled,
        )


@dataclass(slots=True, frozen=True)
class PricePoint:
    pool_address: str
    price: float
    endpoint: str
    observed_at: float
    block_timestamp: int = 0
    reference_reserve: int = 0
    asset_reserve: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class PriceTrigger:
    watch_id: str
    pool_address: str
    side: str
    price: float
    threshold: float
    base_price: float
    endpoint: str
    tx_hash: str = ""
    observed_at: float = field(default_factory=time.time)


TriggerCallback = Callable[[PriceTrigger], Awaitable[None] | None]


@dataclass(slots=True, frozen=True)
class SwapIntent:
    wallet: Wallet
    pool: PoolSpec
    side: str
    input_asset: AssetSpec
    output_asset: AssetSpec
    amount_in: int | None
    slippage_bps: int
    sell_entire_balance: bool = False

    @classmethod
    def buy(cls, *, wallet: Wallet, pool: PoolSpec, amount_in: int, slippage_bps: int) -> "SwapIntent":
        return cls(
            wallet=wallet,
            pool=pool,
            side=SIDE_BUY,
            input_asset=pool.reference,
            output_asset=pool.asset,
            amount_in=int(amount_in),
            slippage_bps=slippage_bps,
        )

    @classmethod
    def sell(
        cls,
        *,
        wallet: Wallet,
        pool: PoolSpec,
        slippage_bps: int,
        amount_in: int | None = None,
        sell_entire_balance: bool = False,
    ) -> "SwapIntent":
        if amount_in is None and not sell_entire_balance:
            raise ValueError("sell intent needs amount_in or sell_entire_balance")
        return cls(
            wallet=wallet,
            pool=pool,
            side=SIDE_SELL,
            input_asset=pool.asset,
            output_asset=pool.reference,
            amount_in=None if sell_entire_balance else int(amount_in or 0),
            slippage_bps=slippage_bps,
            sell_entire_balance=sell_entire_balance,
        )


@dataclass(slots=True, frozen=True)
class SwapResult:
    success: bool
    amount_received: int
    reason: str
    retry_count: int = 0
    wallet_address: str = ""
    wallet_label: str = ""
    strategy: str = ""
    side: str = ""
    asset_symbol: str = ""
    pool_address: str = ""
    amount_in: int = 0
    expected_out: int = 0
    min_out: int = 0
    tx_hash: str | None = None
    price: float | None = None
    input_decimals: int = 18
    output_decimals: int = 18
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["amount_in_ui"] = from_base_units(self.amount_in, self.input_decimals)
        payload["amount_received_ui"] = from_base_units(self.amount_received, self.output_decimals)
        return payload


@dataclass(slots=True, frozen=True)
class GasPolicy:
    gas_price_gwei_by_mode: dict[str, float]
    custom_gas_price_gwei: float | None = None
    approve_gas_limit: int = 200_000
    swap_gas_limit: int = 500_000

    def gas_price_wei(self, bot_mode: str) -> int:
        if self.custom_gas_price_gwei is not None and self.custom_gas_price_gwei > 0:
            gwei = self.custom_gas_price_gwei
        else:
            gwei = self.gas_price_gwei_by_mode.get(bot_mode, 0.02)
        return to_base_units(gwei, 9)

    @classmethod
    def from_env(cls) -> "GasPolicy":
        default_gwei = max(0.0, to_float(os.getenv("GAS_PRICE_GWEI"), 0.02))
        by_mode = {mode: default_gwei for mode in BOT_MODES}
        raw_overrides = os.getenv("GAS_PRICE_GWEI_BY_MODE", "").strip()
        if raw_overrides:
            try:
                overrides = json.loads(raw_overrides)
            except json.JSONDecodeError as error:
                raise ConfigurationError(f"GAS_PRICE_GWEI_BY_MODE is not valid JSON: {error}") from error
            if not isinstance(overrides, dict):
                raise ConfigurationError("GAS_PRICE_GWEI_BY_MODE must be a JSON object")
            for mode, value in overrides.items():
                by_mode[normalize_bot_mode(mode)] = max(0.0, to_float(value, default_gwei))

        custom_raw = os.getenv("CUSTOM_GAS_PRICE_GWEI", "").strip()
        custom = to_float(custom_raw, 0.0) if custom_raw else None
        return cls(
            gas_price_gwei_by_mode=by_mode,
            custom_gas_price_gwei=custom if custom and custom > 0 else None,
            approve_gas_limit=max(21_000, to_int(os.getenv("APPROVE_GAS_LIMIT"), 200_000)),
            swap_gas_limit=max(21_000, to_int(os.getenv("SWAP_GAS_LIMIT"), 500_000)),
        )


@dataclass(slots=True, frozen=True)
class StrategyParams:
    bot_mode: str = MODE_TWO_WAY
    amount_min: float = 1.0
    amount_max: float = 2.0
    slippage_bps: int = 300
    num_loops: int = 500
    loop_delay_min_seconds: float = 1.0
    loop_delay_max_seconds: float = 2.0
    tx_delay_min_seconds: float = 5.0
    tx_delay_max_seconds: float = 15.0
    instant_delay_min_seconds: float = 1.0
    instant_delay_max_seconds: float = 5.0
    wallet_delay_min_seconds: float = 1.0
    wallet_delay_max_seconds: float = 3.0
    mm_range_pct: float = 2.0
    mm_continuous: bool = False
    mm_max_passes: int = 0
    mm_watch_timeout_seconds: float = 0.0
    flush_asset_delay_seconds: float = 2.0
    flush_wallet_delay_seconds: float = 5.0
    sell_all_asset_delay_seconds: float = 1.0
    confirmation_timeout_seconds: float = 120.0
    deadline_seconds: int = 1200

    @classmethod
    def from_env(cls) -> "StrategyParams":
        amount_min = max(0.0, to_float(os.getenv("AMOUNT_MIN"), 1.0))
        amount_max = max(amount_min, to_float(os.getenv("AMOUNT_MAX"), 2.0))
        loop_delay_min = max(0.0, to_float(os.getenv("LOOP_DELAY_MIN_SECONDS"), 1.0))
        tx_delay_min = max(0.0, to_float(os.getenv("TX_DELAY_MIN_SECONDS"), 5.0))
        instant_delay_min = max(0.0, to_float(os.getenv("INSTANT_DELAY_MIN_SECONDS"), 1.0))
        wallet_delay_min = max(0.0, to_float(os.getenv("WALLET_DELAY_MIN_SECONDS"), 1.0))
        return cls(
            bot_mode=normalize_bot_mode(os.getenv("BOT_MODE", MODE_TWO_WAY)),
            amount_min=amount_min,
            amount_max=amount_max,
            slippage_bps=max(0, min(BPS_DENOMINATOR, to_int(os.getenv("MAX_SLIPPAGE_BPS"), 300))),
            num_loops=max(1, to_int(os.getenv("NUM_LOOPS"), 500)),
            loop_delay_min_seconds=loop_delay_min,
            loop_delay_max_seconds=max(loop_delay_min, to_float(os.getenv("LOOP_DELAY_MAX_SECONDS"), 2.0)),
            tx_delay_min_seconds=tx_delay_min,
            tx_delay_max_seconds=max(tx_delay_min, to_float(os.getenv("TX_DELAY_MAX_SECONDS"), 15.0)),
            instant_delay_min_seconds=instant_delay_min,
            instant_delay_max_seconds=max(
                instant_delay_min, to_float(os.getenv("INSTANT_DELAY_MAX_SECONDS"), 5.0)
            ),
            wallet_delay_min_seconds=wallet_delay_min,
            wallet_delay_max_seconds=max(
                wallet_delay_min, to_float(os.getenv("WALLET_DELAY_MAX_SECONDS"), 3.0)
            ),
            mm_range_pct=max(0.01, to_float(os.getenv("MM_RANGE_PCT"), 2.0)),
            mm_continuous=to_bool(os.getenv("MM_CONTINUOUS"), False),
            mm_max_passes=max(0, to_int(os.getenv("MM_MAX_PASSES"), 0)),
            mm_watch_timeout_seconds=max(0.0, to_float(os.getenv("MM_WATCH_TIMEOUT_SECONDS"), 0.0)),
            flush_asset_delay_seconds=max(0.0, to_float(os.getenv("FLUSH_ASSET_DELAY_SECONDS"), 2.0)),
            flush_wallet_delay_seconds=max(0.0, to_float(os.getenv("FLUSH_WALLET_DELAY_SECONDS"), 5.0)),
            sell_all_asset_delay_seconds=max(
                0.0, to_float(os.getenv("SELL_ALL_ASSET_DELAY_SECONDS"), 1.0)
            ),
            confirmation_timeout_seconds=max(
                1.0, to_float(os.getenv("CONFIRMATION_TIMEOUT_SECONDS"), 120.0)
            ),
            deadline_seconds=max(60, to_int(os.getenv("SWAP_DEADLINE_SECONDS"), 1200)),
        )
