"""Command-line entry point.

Usage:
    python -m nft_auction_indexer run
    python -m nft_auction_indexer auction COLLECTION ITEM [--block-hash HASH]
    python -m nft_auction_indexer active
    python -m nft_auction_indexer init-db
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Sequence

from pydantic import ValidationError

from nft_auction_indexer.config import Settings, get_settings
from nft_auction_indexer.errors import ReconnectExhaustedError
from nft_auction_indexer.service import IndexerService
from nft_auction_indexer.storage.database import DatabaseManager

logger = logging.getLogger("nft_auction_indexer")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nft_auction_indexer",
        description="Mirror NFT auction pallet storage into a relational store.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Index new blocks until interrupted")

    auction = sub.add_parser("auction", help="Show one auction from the mirrored tables")
    auction.add_argument("collection_id")
    auction.add_argument("item_id")
    auction.add_argument("--block-hash", default=None, help="Historical block hash")

    sub.add_parser("active", help="List auctions that have not ended")
    sub.add_parser("init-db", help="Create the database schema and exit")
    return parser


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _run(settings: Settings) -> int:
    service = IndexerService(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.request_stop)

    logger.info("Substrate indexer starting. Press Ctrl+C to stop.")
    try:
        await service.run()
    except ReconnectExhaustedError as e:
        logger.critical("%s", e)
        return 1
    return 0


async def _show_auction(settings: Settings, collection_id: str, item_id: str, block_hash: str | None) -> int:
    service = IndexerService(settings)
    try:
        data = await service.get_auction_data(collection_id, item_id, block_hash)
    finally:
        await service.db.dispose_async()
    if data is None:
        print(json.dumps(None))
        return 1
    print(json.dumps(data.to_dict(), indent=2))
    return 0


async def _show_active(settings: Settings) -> int:
    service = IndexerService(settings)
    try:
        auctions = await service.get_all_active_auctions()
    finally:
        await service.db.dispose_async()
    print(json.dumps([a.to_dict() for a in auctions], indent=2))
    return 0


async def _init_db(settings: Settings) -> int:
    db = DatabaseManager.from_settings(settings.database)
    try:
        await db.ping()
        await db.init_schema_async()
        logger.info("Schema created on %s", db.dialect_name)
    finally:
        await db.dispose_async()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    _configure_logging(settings)

    if args.command == "run":
        return asyncio.run(_run(settings))
    if args.command == "auction":
        return asyncio.run(_show_auction(settings, args.collection_id, args.item_id, args.block_hash))
    if args.command == "active":
        return asyncio.run(_show_active(settings))
    return asyncio.run(_init_db(settings))


if __name__ == "__main__":
    sys.exit(main())
