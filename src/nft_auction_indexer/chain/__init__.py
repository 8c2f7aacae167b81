"""Chain access layer - Substrate client and storage extraction."""

from nft_auction_indexer.chain.client import (
    ChainClient,
    SubstrateChainClient,
)
from nft_auction_indexer.chain.extractor import StorageExtractor
from nft_auction_indexer.chain.models import (
    AuctionRecord,
    BidRecord,
    BlockHeader,
    ChainInfo,
    PalletSettings,
    StatusRecord,
    StorageSnapshot,
)

__all__ = [
    "AuctionRecord",
    "BidRecord",
    "BlockHeader",
    "ChainClient",
    "ChainInfo",
    "PalletSettings",
    "StatusRecord",
    "StorageExtractor",
    "StorageSnapshot",
    "SubstrateChainClient",
]
