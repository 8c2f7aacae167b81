"""Storage extractor for the auction pallet.

Reads the pallet's storage as it existed at a given block hash and converts it
into row-shaped records. Queries are always pinned to the block hash, never
to the chain tip, so re-extracting a historical block is reproducible.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from nft_auction_indexer.chain.client import ChainClient
from nft_auction_indexer.chain.models import (
    AuctionRecord,
    BidRecord,
    PalletSettings,
    StatusRecord,
    StorageSnapshot,
    canonical_text,
    scale_value,
)
from nft_auction_indexer.errors import ExtractionError

logger = logging.getLogger(__name__)

AUCTIONS_STORAGE = "Auctions"
BIDS_STORAGE = "Bids"
IN_AUCTION_STORAGE = "InAuction"
FEE_PERCENTAGE_STORAGE = "FeePercentage"
ACCUMULATED_FEES_STORAGE = "AccumulatedFees"


def decode_item_key(key: Any) -> tuple[str, str]:
    """Decode the ``(collection_id, item_id)`` key of a storage map entry.

    The pallet keys its maps by a single tuple, which decodes either as one
    object holding a two-element sequence or as a tuple of two objects.
    """
    value = scale_value(key)
    if isinstance(value, dict):
        value = list(value.values())
    if not isinstance(value, (list, tuple)):
        raise ExtractionError(f"Unexpected storage key shape: {value!r}")
    if len(value) == 1:
        return decode_item_key(value[0])
    if len(value) != 2:
        raise ExtractionError(f"Expected (collection_id, item_id) key, got {value!r}")
    collection_id, item_id = value
    return canonical_text(collection_id), canonical_text(item_id)


class StorageExtractor:
    """Extracts a ``StorageSnapshot`` of the auction pallet at a block."""

    def __init__(self, client_provider: Callable[[], ChainClient]) -> None:
        """Initialize the extractor.

        Args:
            client_provider: Returns the current chain client. Resolved on
                every call so a reconnect is picked up transparently.
        """
        self._client_provider = client_provider

    async def extract(self, block_hash: str) -> StorageSnapshot:
        """Read auctions, bids, in-auction flags and settings at ``block_hash``.

        Raises:
            ExtractionError: If any storage query or decode fails.
        """
        try:
            client = self._client_provider()
            auctions = [
                AuctionRecord.from_storage(*decode_item_key(key), scale_value(value))
                for key, value in await client.query_map(AUCTIONS_STORAGE, block_hash=block_hash)
            ]
            bids = [
                BidRecord.from_storage(*decode_item_key(key), scale_value(value))
                for key, value in await client.query_map(BIDS_STORAGE, block_hash=block_hash)
            ]
            status_flags = [
                StatusRecord(*decode_item_key(key), in_auction=bool(scale_value(value)))
                for key, value in await client.query_map(IN_AUCTION_STORAGE, block_hash=block_hash)
            ]
            fee_percentage = await client.query_value(FEE_PERCENTAGE_STORAGE, block_hash=block_hash)
            accumulated_fees = await client.query_value(ACCUMULATED_FEES_STORAGE, block_hash=block_hash)
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(
                f"Failed to extract storage at {block_hash}: {e}", block_hash=block_hash
            ) from e

        snapshot = StorageSnapshot(
            block_hash=block_hash,
            auctions=tuple(auctions),
            bids=tuple(bids),
            status_flags=tuple(status_flags),
            settings=PalletSettings(
                fee_percentage=str(0 if fee_percentage is None else fee_percentage),
                accumulated_fees=str(0 if accumulated_fees is None else accumulated_fees),
            ),
        )
        logger.debug(
            "Extracted %d auctions, %d bid lists, %d status flags at %s",
            len(snapshot.auctions),
            len(snapshot.bids),
            len(snapshot.status_flags),
            block_hash,
        )
        return snapshot
