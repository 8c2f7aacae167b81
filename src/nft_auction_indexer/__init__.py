"""NFT Auction Indexer - mirrors auction pallet storage into a relational store."""

__version__ = "0.1.0"
