from .executor import TradeExecutor, min_amount_out
from .monitor import SYNC_TOPIC, PriceCache, PriceMonitor, ThresholdWatch
from .progress import ProgressFeed
from .reserves import ReserveReader, compute_price
from .strategies import (
    STRATEGY_CLASSES,
    StrategyDriver,
    StrategyRun,
    WalletExecutionEngine,
)
from .types import (
    AssetSpec,
    ConcurrencyPolicy,
    DetectedAsset,
    GasPolicy,
    PoolSpec,
    PricePoint,
    PriceTrigger,
    StrategyParams,
    SwapIntent,
    SwapResult,
    Wallet,
    WatchState,
)

__all__ = [
    "AssetSpec",
    "ConcurrencyPolicy",
    "DetectedAsset",
    "GasPolicy",
    "PoolSpec",
    "PriceCache",
    "PriceMonitor",
    "PricePoint",
    "PriceTrigger",
    "ProgressFeed",
    "ReserveReader",
    "STRATEGY_CLASSES",
    "SYNC_TOPIC",
    "StrategyDriver",
    "StrategyParams",
    "StrategyRun",
    "SwapIntent",
    "SwapResult",
    "ThresholdWatch",
    "TradeExecutor",
    "Wallet",
    "WalletExecutionEngine",
    "WatchState",
    "compute_price",
    "min_amount_out",
]
