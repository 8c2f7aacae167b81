"""Storage layer - Database schema and repositories."""

from nft_auction_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from nft_auction_indexer.storage.models import (
    AuctionModel,
    AuctionStatusModel,
    Base,
    BidModel,
    BlockModel,
    PalletSettingModel,
)
from nft_auction_indexer.storage.repos import (
    AuctionData,
    AuctionDTO,
    AuctionQueries,
    AuctionRepository,
    AuctionStatusDTO,
    AuctionStatusRepository,
    BidDTO,
    BidRepository,
    BlockDTO,
    BlockRepository,
    PalletSettingDTO,
    PalletSettingRepository,
    ProjectionResult,
    project_snapshot,
)

__all__ = [
    "AuctionData",
    "AuctionDTO",
    "AuctionModel",
    "AuctionQueries",
    "AuctionRepository",
    "AuctionStatusDTO",
    "AuctionStatusModel",
    "AuctionStatusRepository",
    "Base",
    "BidDTO",
    "BidModel",
    "BidRepository",
    "BlockDTO",
    "BlockModel",
    "BlockRepository",
    "DatabaseManager",
    "PalletSettingDTO",
    "PalletSettingModel",
    "PalletSettingRepository",
    "ProjectionResult",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "project_snapshot",
]
