from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from swapbot.trading.types import DetectedAsset, normalize_address


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def serialize_for_redis(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def parse_detected_asset(payload: Any, *, fallback_address: str = "") -> DetectedAsset | None:
    """Build a DetectedAsset from one detection record; None when it has no pool."""
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            return None
    if not isinstance(payload, dict):
        return None

    address = str(payload.get("address") or fallback_address).strip()
    pool_address = str(payload.get("poolAddress") or payload.get("pool_address") or "").strip()
    if not address or not pool_address:
        return None

    return DetectedAsset(
        address=address,
        symbol=str(payload.get("symbol") or address[:8]),
        decimals=to_int(payload.get("decimals"), 18),
        pool_address=pool_address,
        name=str(payload.get("name") or ""),
        detected_at=str(payload.get("detectedAt") or payload.get("detected_at") or ""),
    )


def parse_detected_tokens_document(document: Any) -> list[DetectedAsset]:
    """Parse a ``{"tokens": {address: record}}`` detection database document."""
    if not isinstance(document, dict):
        return []
    tokens = document.get("tokens") or {}
    if not isinstance(tokens, dict):
        return []

    assets: list[DetectedAsset] = []
    for key, record in tokens.items():
        asset = parse_detected_asset(record, fallback_address=str(key))
        if asset is not None:
            assets.append(asset)
    return assets


def detected_asset_field(asset: DetectedAsset) -> str:
    return normalize_address(asset.address)
