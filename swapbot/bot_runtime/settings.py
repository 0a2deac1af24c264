from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from swapbot.common import ConfigurationError
from swapbot.trading.types import (
    STRATEGY_DEFAULT,
    AssetSpec,
    PoolSpec,
    Wallet,
    normalize_address,
    normalize_strategy,
    to_bool,
    to_float,
    to_int,
)

DEFAULT_ROUTER_ADDRESS = "0x4752ba5dbc23f44d87826276bf6fd6b1c372ad24"
DEFAULT_REFERENCE_TOKEN_ADDRESS = "0x0b3e328455c4059EEb9e3f84b5543F74E24e7E1b"


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_trade_pools(raw: str, *, reference: AssetSpec) -> tuple[PoolSpec, ...]:
    if not raw.strip():
        return ()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ConfigurationError(f"TRADE_TOKENS is not valid JSON: {error}") from error
    if not isinstance(payload, list):
        raise ConfigurationError("TRADE_TOKENS must be a JSON list")
    return tuple(PoolSpec.from_dict(item, reference=reference) for item in payload if isinstance(item, dict))


@dataclass(slots=True)
class AppSettings:
    strategy: str
    router_address: str
    reference: AssetSpec
    trade_pools: tuple[PoolSpec, ...]
    error_backoff_seconds: float
    bootstrap_max_attempts: int
    health_check_on_start: bool
    persist_prices: bool
    heartbeat_interval_seconds: float
    private_keys: list[str] = field(repr=False, default_factory=list)
    disabled_wallets: frozenset[str] = frozenset()

    @classmethod
    def from_env(cls) -> "AppSettings":
        reference = AssetSpec(
            address=os.getenv("REFERENCE_TOKEN_ADDRESS", DEFAULT_REFERENCE_TOKEN_ADDRESS).strip(),
            symbol=os.getenv("REFERENCE_TOKEN_SYMBOL", "VIRTUAL").strip() or "VIRTUAL",
            decimals=max(0, to_int(os.getenv("REFERENCE_TOKEN_DECIMALS"), 18)),
        )
        return cls(
            strategy=normalize_strategy(os.getenv("TRADING_STRATEGY", STRATEGY_DEFAULT)),
            router_address=os.getenv("ROUTER_ADDRESS", DEFAULT_ROUTER_ADDRESS).strip(),
            reference=reference,
            trade_pools=parse_trade_pools(os.getenv("TRADE_TOKENS", ""), reference=reference),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
            bootstrap_max_attempts=max(1, to_int(os.getenv("BOOTSTRAP_MAX_ATTEMPTS"), 5)),
            health_check_on_start=to_bool(os.getenv("HEALTH_CHECK_ON_START"), True),
            persist_prices=to_bool(os.getenv("PERSIST_PRICES"), True),
            heartbeat_interval_seconds=max(1.0, to_float(os.getenv("HEARTBEAT_INTERVAL_SECONDS"), 15.0)),
            private_keys=_split_csv(os.getenv("PRIVATE_KEYS", "")),
            disabled_wallets=frozenset(normalize_address(item) for item in _split_csv(os.getenv("DISABLED_WALLETS", ""))),
        )

    def load_wallets(self) -> list[Wallet]:
        if not self.private_keys:
            raise ConfigurationError("PRIVATE_KEYS is empty")

        wallets: list[Wallet] = []
        for index, private_key in enumerate(self.private_keys, start=1):
            try:
                wallet = Wallet.from_private_key(private_key, label=f"W{index}")
            except (ValueError, TypeError) as error:
                raise ConfigurationError(f"PRIVATE_KEYS entry #{index} is not a valid key") from error
            if normalize_address(wallet.address) in self.disabled_wallets:
                wallet = Wallet(address=wallet.address, account=wallet.account, label=wallet.label, enabled=False)
            wallets.append(wallet)
        return wallets

    def log_summary(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "router_address": self.router_address,
            "reference_symbol": self.reference.symbol,
            "trade_pools": [pool.symbol for pool in self.trade_pools],
            "wallets": len(self.private_keys),
            "disabled_wallets": len(self.disabled_wallets),
        }
