#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from dotenv import load_dotenv

from swapbot.bot_runtime import setup_logger
from swapbot.common import log_event
from swapbot.storage import StorageGateway, StorageSettings, parse_detected_tokens_document


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Load a detected-tokens.json database into the Redis detected-asset hash.",
    )
    parser.add_argument(
        "path",
        nargs="?",
        default="detected-tokens.json",
        help="Detection database file with a top-level 'tokens' object.",
    )
    parser.add_argument(
        "--print-only",
        action="store_true",
        help="Print the parsed assets without writing to Redis.",
    )
    return parser.parse_args()


async def seed(path: Path, *, print_only: bool) -> int:
    logger = setup_logger()
    document = json.loads(path.read_text(encoding="utf-8"))
    assets = parse_detected_tokens_document(document)

    if print_only:
        print(json.dumps([asset.to_dict() for asset in assets], ensure_ascii=False, indent=2))
        return len(assets)

    storage = StorageGateway(StorageSettings.from_env(), logger)
    await storage.connect()
    try:
        written = await storage.upsert_detected_assets(assets)
    finally:
        await storage.close()

    log_event(
        logger,
        level="info",
        event="detected_assets_seeded",
        message="Detected assets written to Redis",
        source=str(path),
        assets=written,
        key=storage.settings.detected_assets_key,
    )
    return written


def main() -> None:
    load_dotenv()
    args = parse_args()
    asyncio.run(seed(Path(args.path), print_only=args.print_only))


if __name__ == "__main__":
    main()
