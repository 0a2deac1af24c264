from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

from swapbot.common import ConfigurationError


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


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(slots=True, frozen=True)
class EndpointConfig:
    name: str
    rpc_url: str
    ws_url: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, index: int) -> "EndpointConfig":
        rpc_url = str(payload.get("rpc_url") or payload.get("http") or "").strip()
        if not rpc_url:
            raise ConfigurationError(f"RPC endpoint #{index} has no rpc_url")
        ws_url = str(payload.get("ws_url") or payload.get("ws") or "").strip() or None
        return cls(
            name=str(payload.get("name") or f"endpoint-{index}").strip(),
            rpc_url=rpc_url,
            ws_url=ws_url,
        )


def parse_endpoint_configs(raw: str) -> tuple[EndpointConfig, ...]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ConfigurationError(f"RPC_ENDPOINTS is not valid JSON: {error}") from error
    if not isinstance(payload, list):
        raise ConfigurationError("RPC_ENDPOINTS must be a JSON list")

    configs: list[EndpointConfig] = []
    for index, item in enumerate(payload, start=1):
        if isinstance(item, str):
            configs.append(EndpointConfig(name=f"endpoint-{index}", rpc_url=item.strip()))
            continue
        if not isinstance(item, dict):
            raise ConfigurationError(f"RPC endpoint #{index} must be an object or a URL string")
        configs.append(EndpointConfig.from_dict(item, index=index))
    return tuple(configs)


@dataclass(slots=True, frozen=True)
class EndpointPoolSettings:
    endpoints: tuple[EndpointConfig, ...]
    preferred_endpoints: tuple[str, ...]
    failure_cooldown_seconds: float
    max_call_attempts: int
    request_timeout_seconds: float
    probe_timeout_seconds: float
    chain_id: int | None

    @classmethod
    def from_env(cls) -> "EndpointPoolSettings":
        raw_endpoints = os.getenv("RPC_ENDPOINTS", "").strip()
        if raw_endpoints:
            endpoints = parse_endpoint_configs(raw_endpoints)
        else:
            rpc_url = os.getenv("RPC_URL", "").strip()
            endpoints = (
                (EndpointConfig(name="primary", rpc_url=rpc_url, ws_url=os.getenv("WS_URL", "").strip() or None),)
                if rpc_url
                else ()
            )
        if not endpoints:
            raise ConfigurationError("Configure RPC_ENDPOINTS or RPC_URL")

        chain_id = to_int(os.getenv("CHAIN_ID"), 0)
        return cls(
            endpoints=endpoints,
            preferred_endpoints=_split_csv(os.getenv("PREFERRED_ENDPOINTS", "")),
            failure_cooldown_seconds=max(
                0.0,
                to_float(os.getenv("ENDPOINT_FAILURE_COOLDOWN_SECONDS"), 1200.0),
            ),
            max_call_attempts=max(1, to_int(os.getenv("ENDPOINT_MAX_CALL_ATTEMPTS"), 2)),
            request_timeout_seconds=max(1.0, to_float(os.getenv("RPC_TIMEOUT_SECONDS"), 10.0)),
            probe_timeout_seconds=max(0.5, to_float(os.getenv("ENDPOINT_PROBE_TIMEOUT_SECONDS"), 5.0)),
            chain_id=chain_id if chain_id > 0 else None,
        )
