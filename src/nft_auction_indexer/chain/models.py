"""Data models for chain headers and pallet storage snapshots."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

FEE_PERCENTAGE = "fee_percentage"
ACCUMULATED_FEES = "accumulated_fees"


def scale_value(obj: Any) -> Any:
    """Unwrap a decoded SCALE object to its plain Python value."""
    return getattr(obj, "value", obj)


def canonical_text(value: Any) -> str:
    """Canonical textual form of an identifier (account, collection, item)."""
    value = scale_value(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def to_balance(value: Any) -> int:
    """Convert a decoded balance into an arbitrary-precision integer."""
    value = scale_value(value)
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


@dataclass(frozen=True)
class ChainInfo:
    """Node identity reported after a successful connect."""

    chain: str
    node_name: str
    node_version: str


@dataclass(frozen=True)
class BlockHeader:
    """A new-head notification."""

    number: int
    hash: str
    parent_hash: str

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any], *, block_hash: str) -> BlockHeader:
        """Create a header from a decoded ``chain_subscribeNewHeads`` payload."""
        number = data["number"]
        if isinstance(number, str):
            number = int(number, 16) if number.startswith("0x") else int(number)
        return cls(
            number=int(number),
            hash=block_hash,
            parent_hash=str(data.get("parentHash") or data.get("parent_hash") or ""),
        )


@dataclass(frozen=True)
class AuctionRecord:
    """One entry of the ``Auctions`` storage map."""

    collection_id: str
    item_id: str
    owner_account: str
    start_block: int
    highest_bid: int = 0
    highest_bidder: str | None = None
    ended: bool = False

    @classmethod
    def from_storage(cls, collection_id: str, item_id: str, value: Mapping[str, Any]) -> AuctionRecord:
        """Create a record from a decoded ``AuctionInfo`` value."""
        bidder = value.get("highest_bidder", value.get("highestBidder"))
        return cls(
            collection_id=collection_id,
            item_id=item_id,
            owner_account=canonical_text(value["owner"]),
            start_block=int(scale_value(value.get("start_block", value.get("startBlock", 0)))),
            highest_bid=to_balance(value.get("highest_bid", value.get("highestBid", 0))),
            highest_bidder=canonical_text(bidder) if scale_value(bidder) is not None else None,
            ended=bool(scale_value(value.get("ended", False))),
        )


@dataclass(frozen=True)
class BidEntry:
    """A single (bidder, amount) pair in a bid list."""

    bidder_account: str
    amount: int


@dataclass(frozen=True)
class BidRecord:
    """The complete bid list for one auction as stored on chain."""

    collection_id: str
    item_id: str
    bids: tuple[BidEntry, ...] = ()

    @classmethod
    def from_storage(cls, collection_id: str, item_id: str, value: Sequence[Any]) -> BidRecord:
        """Create a record from a decoded ``BoundedVec<(AccountId, Balance)>``."""
        entries = []
        for pair in value or ():
            pair = scale_value(pair)
            if isinstance(pair, Mapping):
                bidder, amount = pair.get("col1", pair.get(0)), pair.get("col2", pair.get(1))
            else:
                bidder, amount = pair
            entries.append(BidEntry(bidder_account=canonical_text(bidder), amount=to_balance(amount)))
        return cls(collection_id=collection_id, item_id=item_id, bids=tuple(entries))


@dataclass(frozen=True)
class StatusRecord:
    """One entry of the ``InAuction`` storage map."""

    collection_id: str
    item_id: str
    in_auction: bool


@dataclass(frozen=True)
class PalletSettings:
    """Singleton pallet values, carried as their string encoding."""

    fee_percentage: str
    accumulated_fees: str

    def as_items(self) -> list[tuple[str, str]]:
        return [
            (FEE_PERCENTAGE, self.fee_percentage),
            (ACCUMULATED_FEES, self.accumulated_fees),
        ]


@dataclass(frozen=True)
class StorageSnapshot:
    """Pallet storage as it existed at one block."""

    block_hash: str
    auctions: tuple[AuctionRecord, ...] = ()
    bids: tuple[BidRecord, ...] = ()
    status_flags: tuple[StatusRecord, ...] = ()
    settings: PalletSettings = field(
        default_factory=lambda: PalletSettings(fee_percentage="0", accumulated_fees="0")
    )
