"""SQLAlchemy models for the mirrored pallet storage.

This module defines the database schema for blocks, auction snapshots,
bid snapshots, in-auction flags and pallet settings.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
PrimaryKeyInt = BigInteger().with_variant(Integer(), "sqlite")

BALANCE_PRECISION = 40


class Balance(TypeDecorator[int]):
    """Arbitrary-precision integer balance.

    u128 balances do not fit BIGINT. PostgreSQL stores them as NUMERIC(40, 0).
    SQLite would round NUMERIC through REAL, so there they are stored as their
    decimal text.
    """

    impl = Numeric(BALANCE_PRECISION, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> Any:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(BALANCE_PRECISION))
        return dialect.type_descriptor(Numeric(BALANCE_PRECISION, 0))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        value = int(value)
        return str(value) if dialect.name == "sqlite" else Decimal(value)

    def process_result_value(self, value: Any, dialect: Dialect) -> int | None:
        return None if value is None else int(value)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BlockModel(Base):
    """A block header observed by the head subscription. Written once."""

    __tablename__ = "blocks"

    id: Mapped[int] = mapped_column(PrimaryKeyInt, primary_key=True, autoincrement=True)
    number: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    hash: Mapped[str] = mapped_column(String(66), nullable=False)
    parent_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    indexed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    extrinsics_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_blocks_hash", "hash"),)


class AuctionModel(Base):
    """Auction snapshot per (collection, item), versioned by observing block."""

    __tablename__ = "auctions"

    id: Mapped[int] = mapped_column(PrimaryKeyInt, primary_key=True, autoincrement=True)
    collection_id: Mapped[str] = mapped_column(Text, nullable=False)
    item_id: Mapped[str] = mapped_column(Text, nullable=False)
    owner_account: Mapped[str] = mapped_column(Text, nullable=False)
    start_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    highest_bid: Mapped[int] = mapped_column(Balance(), nullable=False, default=0)
    highest_bidder: Mapped[str | None] = mapped_column(Text, nullable=True)
    ended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    observed_at_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    indexed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "collection_id", "item_id", "observed_at_block", name="uq_auctions_item_block"
        ),
        Index("idx_auctions_ended", "ended"),
    )


class BidModel(Base):
    """One entry of an auction's bid list as observed at a block.

    The set of rows per (collection, item, block) is replaced as a whole.
    """

    __tablename__ = "bids"

    id: Mapped[int] = mapped_column(PrimaryKeyInt, primary_key=True, autoincrement=True)
    collection_id: Mapped[str] = mapped_column(Text, nullable=False)
    item_id: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bidder_account: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(Balance(), nullable=False)
    observed_at_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    indexed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_bids_item_block", "collection_id", "item_id", "observed_at_block"),
    )


class AuctionStatusModel(Base):
    """In-auction flag per (collection, item), versioned by observing block."""

    __tablename__ = "auction_status"

    id: Mapped[int] = mapped_column(PrimaryKeyInt, primary_key=True, autoincrement=True)
    collection_id: Mapped[str] = mapped_column(Text, nullable=False)
    item_id: Mapped[str] = mapped_column(Text, nullable=False)
    in_auction: Mapped[bool] = mapped_column(Boolean, nullable=False)
    observed_at_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    indexed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "collection_id", "item_id", "observed_at_block", name="uq_auction_status_item_block"
        ),
    )


class PalletSettingModel(Base):
    """Latest observed value of a pallet singleton (fee percentage, fees)."""

    __tablename__ = "pallet_settings"

    id: Mapped[int] = mapped_column(PrimaryKeyInt, primary_key=True, autoincrement=True)
    setting_name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    setting_value: Mapped[str] = mapped_column(Text, nullable=False)
    observed_at_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    indexed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
