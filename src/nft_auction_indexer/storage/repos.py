"""Repository pattern implementations for the row store.

This module provides one repository per mirrored entity, each with the
conflict policy of its table:
- blocks: insert, ignore on conflict (written once)
- auctions / auction_status: upsert keyed by (collection, item, block)
- bids: replace the whole set for (collection, item, block)
- pallet_settings: upsert keyed by setting name, latest write wins

``project_snapshot`` applies a block's full storage snapshot inside the
caller's session, and ``AuctionQueries`` serves the read side.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from nft_auction_indexer.chain.models import AuctionRecord, BidEntry, StorageSnapshot
from nft_auction_indexer.storage.models import (
    AuctionModel,
    AuctionStatusModel,
    BidModel,
    BlockModel,
    PalletSettingModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class BlockDTO:
    """Data transfer object for indexed blocks."""

    number: int
    hash: str
    parent_hash: str | None
    extrinsics_count: int = 0
    indexed_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BlockModel) -> BlockDTO:
        return cls(
            number=model.number,
            hash=model.hash,
            parent_hash=model.parent_hash,
            extrinsics_count=model.extrinsics_count,
            indexed_at=model.indexed_at,
        )


@dataclass
class AuctionDTO:
    """Data transfer object for auction snapshots."""

    collection_id: str
    item_id: str
    owner_account: str
    start_block: int
    highest_bid: int
    highest_bidder: str | None
    ended: bool
    observed_at_block: int
    indexed_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AuctionModel) -> AuctionDTO:
        return cls(
            collection_id=model.collection_id,
            item_id=model.item_id,
            owner_account=model.owner_account,
            start_block=model.start_block,
            highest_bid=model.highest_bid or 0,
            highest_bidder=model.highest_bidder,
            ended=model.ended,
            observed_at_block=model.observed_at_block,
            indexed_at=model.indexed_at,
        )

    @classmethod
    def from_record(cls, record: AuctionRecord, *, observed_at_block: int) -> AuctionDTO:
        return cls(
            collection_id=record.collection_id,
            item_id=record.item_id,
            owner_account=record.owner_account,
            start_block=record.start_block,
            highest_bid=record.highest_bid,
            highest_bidder=record.highest_bidder,
            ended=record.ended,
            observed_at_block=observed_at_block,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection_id": self.collection_id,
            "item_id": self.item_id,
            "owner_account": self.owner_account,
            "start_block": self.start_block,
            # Balances can exceed JSON-safe integer range.
            "highest_bid": str(self.highest_bid),
            "highest_bidder": self.highest_bidder,
            "ended": self.ended,
            "observed_at_block": self.observed_at_block,
        }


@dataclass
class BidDTO:
    """Data transfer object for a single bid in a bid snapshot."""

    collection_id: str
    item_id: str
    bidder_account: str
    amount: int
    observed_at_block: int
    position: int = 0

    @classmethod
    def from_model(cls, model: BidModel) -> BidDTO:
        return cls(
            collection_id=model.collection_id,
            item_id=model.item_id,
            bidder_account=model.bidder_account,
            amount=model.amount,
            observed_at_block=model.observed_at_block,
            position=model.position,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"bidder_account": self.bidder_account, "amount": str(self.amount)}


@dataclass
class AuctionStatusDTO:
    """Data transfer object for in-auction flags."""

    collection_id: str
    item_id: str
    in_auction: bool
    observed_at_block: int

    @classmethod
    def from_model(cls, model: AuctionStatusModel) -> AuctionStatusDTO:
        return cls(
            collection_id=model.collection_id,
            item_id=model.item_id,
            in_auction=model.in_auction,
            observed_at_block=model.observed_at_block,
        )


@dataclass
class PalletSettingDTO:
    """Data transfer object for pallet settings."""

    setting_name: str
    setting_value: str
    observed_at_block: int

    @classmethod
    def from_model(cls, model: PalletSettingModel) -> PalletSettingDTO:
        return cls(
            setting_name=model.setting_name,
            setting_value=model.setting_value,
            observed_at_block=model.observed_at_block,
        )


@dataclass
class AuctionData:
    """Point-lookup result for one auction at one block.

    ``in_auction`` is None when no status flag was recorded, which is distinct
    from an explicit False.
    """

    observed_at_block: int
    auction: AuctionDTO | None
    bids: list[BidDTO] = field(default_factory=list)
    in_auction: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "observed_at_block": self.observed_at_block,
            "auction": self.auction.to_dict() if self.auction else None,
            "bids": [bid.to_dict() for bid in self.bids],
            "in_auction": self.in_auction,
        }


class BlockRepository:
    """Repository for block headers."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_ignore(self, dto: BlockDTO) -> bool:
        """Insert a block; an existing row with the same number is left untouched.

        Returns:
            True if a new row was written.
        """
        stmt = _insert_for(self.session, BlockModel).values(
            number=dto.number,
            hash=dto.hash,
            parent_hash=dto.parent_hash,
            extrinsics_count=dto.extrinsics_count,
            indexed_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["number"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def get_by_number(self, number: int) -> BlockDTO | None:
        result = await self.session.execute(select(BlockModel).where(BlockModel.number == number))
        model = result.scalar_one_or_none()
        return BlockDTO.from_model(model) if model else None

    async def get_by_hash(self, block_hash: str) -> BlockDTO | None:
        result = await self.session.execute(
            select(BlockModel).where(BlockModel.hash == block_hash).order_by(BlockModel.number.desc())
        )
        model = result.scalars().first()
        return BlockDTO.from_model(model) if model else None

    async def get_latest(self) -> BlockDTO | None:
        result = await self.session.execute(select(BlockModel).order_by(BlockModel.number.desc()).limit(1))
        model = result.scalar_one_or_none()
        return BlockDTO.from_model(model) if model else None

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(BlockModel))
        return int(result.scalar_one())


class AuctionRepository:
    """Repository for auction snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: AuctionDTO) -> AuctionDTO:
        """Upsert by (collection_id, item_id, observed_at_block)."""
        stmt = _insert_for(self.session, AuctionModel).values(
            collection_id=dto.collection_id,
            item_id=dto.item_id,
            owner_account=dto.owner_account,
            start_block=dto.start_block,
            highest_bid=dto.highest_bid,
            highest_bidder=dto.highest_bidder,
            ended=dto.ended,
            observed_at_block=dto.observed_at_block,
            indexed_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["collection_id", "item_id", "observed_at_block"],
            set_={
                "owner_account": stmt.excluded.owner_account,
                "start_block": stmt.excluded.start_block,
                "highest_bid": stmt.excluded.highest_bid,
                "highest_bidder": stmt.excluded.highest_bidder,
                "ended": stmt.excluded.ended,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def get(self, collection_id: str, item_id: str, *, observed_at_block: int) -> AuctionDTO | None:
        result = await self.session.execute(
            select(AuctionModel).where(
                AuctionModel.collection_id == collection_id,
                AuctionModel.item_id == item_id,
                AuctionModel.observed_at_block == observed_at_block,
            )
        )
        model = result.scalar_one_or_none()
        return AuctionDTO.from_model(model) if model else None

    async def get_latest_block(self, collection_id: str, item_id: str) -> int | None:
        """Most recent block at which this auction was observed."""
        result = await self.session.execute(
            select(func.max(AuctionModel.observed_at_block)).where(
                AuctionModel.collection_id == collection_id,
                AuctionModel.item_id == item_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_active(self) -> list[AuctionDTO]:
        """Latest snapshot of every auction whose ``ended`` flag is false."""
        latest = (
            select(
                AuctionModel.collection_id,
                AuctionModel.item_id,
                func.max(AuctionModel.observed_at_block).label("latest_block"),
            )
            .group_by(AuctionModel.collection_id, AuctionModel.item_id)
            .subquery()
        )
        stmt = (
            select(AuctionModel)
            .join(
                latest,
                sa.and_(
                    AuctionModel.collection_id == latest.c.collection_id,
                    AuctionModel.item_id == latest.c.item_id,
                    AuctionModel.observed_at_block == latest.c.latest_block,
                ),
            )
            .where(AuctionModel.ended.is_(False))
            .order_by(AuctionModel.collection_id, AuctionModel.item_id)
        )
        result = await self.session.execute(stmt)
        return [AuctionDTO.from_model(m) for m in result.scalars().all()]


class BidRepository:
    """Repository for bid snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def replace_snapshot(
        self,
        collection_id: str,
        item_id: str,
        *,
        observed_at_block: int,
        entries: Sequence[BidEntry],
    ) -> int:
        """Replace the bid set for (collection, item, block) with ``entries``.

        Returns:
            Number of bid rows written.
        """
        await self.session.execute(
            delete(BidModel).where(
                BidModel.collection_id == collection_id,
                BidModel.item_id == item_id,
                BidModel.observed_at_block == observed_at_block,
            )
        )
        if entries:
            now = datetime.now(UTC)
            await self.session.execute(
                sa.insert(BidModel),
                [
                    {
                        "collection_id": collection_id,
                        "item_id": item_id,
                        "position": position,
                        "bidder_account": entry.bidder_account,
                        "amount": entry.amount,
                        "observed_at_block": observed_at_block,
                        "indexed_at": now,
                    }
                    for position, entry in enumerate(entries)
                ],
            )
        await self.session.flush()
        return len(entries)

    async def list_snapshot(self, collection_id: str, item_id: str, *, observed_at_block: int) -> list[BidDTO]:
        result = await self.session.execute(
            select(BidModel)
            .where(
                BidModel.collection_id == collection_id,
                BidModel.item_id == item_id,
                BidModel.observed_at_block == observed_at_block,
            )
            .order_by(BidModel.position, BidModel.id)
        )
        return [BidDTO.from_model(m) for m in result.scalars().all()]


class AuctionStatusRepository:
    """Repository for in-auction flags."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: AuctionStatusDTO) -> AuctionStatusDTO:
        """Upsert by (collection_id, item_id, observed_at_block)."""
        stmt = _insert_for(self.session, AuctionStatusModel).values(
            collection_id=dto.collection_id,
            item_id=dto.item_id,
            in_auction=dto.in_auction,
            observed_at_block=dto.observed_at_block,
            indexed_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["collection_id", "item_id", "observed_at_block"],
            set_={"in_auction": stmt.excluded.in_auction},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def get(self, collection_id: str, item_id: str, *, observed_at_block: int) -> AuctionStatusDTO | None:
        result = await self.session.execute(
            select(AuctionStatusModel).where(
                AuctionStatusModel.collection_id == collection_id,
                AuctionStatusModel.item_id == item_id,
                AuctionStatusModel.observed_at_block == observed_at_block,
            )
        )
        model = result.scalar_one_or_none()
        return AuctionStatusDTO.from_model(model) if model else None

    async def get_latest_block(self, collection_id: str, item_id: str) -> int | None:
        result = await self.session.execute(
            select(func.max(AuctionStatusModel.observed_at_block)).where(
                AuctionStatusModel.collection_id == collection_id,
                AuctionStatusModel.item_id == item_id,
            )
        )
        return result.scalar_one_or_none()


class PalletSettingRepository:
    """Repository for pallet settings (latest observed value per name)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: PalletSettingDTO) -> PalletSettingDTO:
        """Upsert by setting name; the last write wins regardless of block order."""
        stmt = _insert_for(self.session, PalletSettingModel).values(
            setting_name=dto.setting_name,
            setting_value=dto.setting_value,
            observed_at_block=dto.observed_at_block,
            indexed_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["setting_name"],
            set_={
                "setting_value": stmt.excluded.setting_value,
                "observed_at_block": stmt.excluded.observed_at_block,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def get(self, setting_name: str) -> PalletSettingDTO | None:
        result = await self.session.execute(
            select(PalletSettingModel).where(PalletSettingModel.setting_name == setting_name)
        )
        model = result.scalar_one_or_none()
        return PalletSettingDTO.from_model(model) if model else None

    async def list_all(self) -> list[PalletSettingDTO]:
        result = await self.session.execute(select(PalletSettingModel).order_by(PalletSettingModel.setting_name))
        return [PalletSettingDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class ProjectionResult:
    """Row counts written for one block's projection."""

    auctions: int = 0
    bid_snapshots: int = 0
    bids: int = 0
    status_flags: int = 0
    settings: int = 0


async def project_snapshot(
    session: AsyncSession, snapshot: StorageSnapshot, *, block_number: int
) -> ProjectionResult:
    """Write a block's storage snapshot through every repository.

    Runs inside the caller's session; the caller owns the transaction.
    """
    auctions = AuctionRepository(session)
    bids = BidRepository(session)
    statuses = AuctionStatusRepository(session)
    settings = PalletSettingRepository(session)
    counts = ProjectionResult()

    for record in snapshot.auctions:
        await auctions.upsert(AuctionDTO.from_record(record, observed_at_block=block_number))
        counts.auctions += 1

    for bid_record in snapshot.bids:
        counts.bids += await bids.replace_snapshot(
            bid_record.collection_id,
            bid_record.item_id,
            observed_at_block=block_number,
            entries=bid_record.bids,
        )
        counts.bid_snapshots += 1

    for flag in snapshot.status_flags:
        await statuses.upsert(
            AuctionStatusDTO(
                collection_id=flag.collection_id,
                item_id=flag.item_id,
                in_auction=flag.in_auction,
                observed_at_block=block_number,
            )
        )
        counts.status_flags += 1

    for name, value in snapshot.settings.as_items():
        await settings.upsert(PalletSettingDTO(setting_name=name, setting_value=value, observed_at_block=block_number))
        counts.settings += 1

    return counts


class AuctionQueries:
    """Read-side queries over the mirrored tables."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_auction_data(
        self,
        collection_id: str,
        item_id: str,
        *,
        block_hash: str | None = None,
    ) -> AuctionData | None:
        """Auction, bid list and in-auction flag for one item.

        With ``block_hash`` the snapshot recorded at that block is returned;
        otherwise the most recently observed one.

        Returns:
            None when nothing was recorded for the item (or the block is unknown).
        """
        auctions = AuctionRepository(self.session)
        statuses = AuctionStatusRepository(self.session)

        if block_hash is not None:
            block = await BlockRepository(self.session).get_by_hash(block_hash)
            if block is None:
                return None
            block_number = block.number
        else:
            candidates = [
                b
                for b in (
                    await auctions.get_latest_block(collection_id, item_id),
                    await statuses.get_latest_block(collection_id, item_id),
                )
                if b is not None
            ]
            if not candidates:
                return None
            block_number = max(candidates)

        auction = await auctions.get(collection_id, item_id, observed_at_block=block_number)
        status = await statuses.get(collection_id, item_id, observed_at_block=block_number)
        bids = await BidRepository(self.session).list_snapshot(
            collection_id, item_id, observed_at_block=block_number
        )
        if auction is None and status is None and not bids:
            return None
        return AuctionData(
            observed_at_block=block_number,
            auction=auction,
            bids=bids,
            in_auction=status.in_auction if status else None,
        )

    async def get_all_active_auctions(self) -> list[AuctionDTO]:
        return await AuctionRepository(self.session).list_active()
