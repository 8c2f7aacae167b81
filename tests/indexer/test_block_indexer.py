"""Tests for the block indexer."""

from unittest.mock import MagicMock

import pytest

from nft_auction_indexer.chain.extractor import AUCTIONS_STORAGE, BIDS_STORAGE, IN_AUCTION_STORAGE, StorageExtractor
from nft_auction_indexer.chain.models import StorageSnapshot
from nft_auction_indexer.errors import ExtractionError
from nft_auction_indexer.indexer.block_indexer import BlockIndexer
from nft_auction_indexer.indexer.policy import DeadLetterPolicy
from nft_auction_indexer.storage.repos import (
    AuctionQueries,
    AuctionRepository,
    AuctionStatusRepository,
    BidRepository,
    BlockRepository,
    PalletSettingRepository,
)


def _auction_storage(highest_bid: int = 0) -> dict:
    return {
        AUCTIONS_STORAGE: [
            (
                ("C1", "I1"),
                {
                    "owner": "5Owner",
                    "start_block": 5,
                    "highest_bid": highest_bid,
                    "highest_bidder": "5A" if highest_bid else None,
                    "ended": False,
                },
            )
        ],
        BIDS_STORAGE: [(("C1", "I1"), [("5A", highest_bid)] if highest_bid else [])],
        IN_AUCTION_STORAGE: [(("C1", "I1"), True)],
        "FeePercentage": 5,
        "AccumulatedFees": 0,
    }


class FlakyExtractor:
    """Fails the first ``failures`` extractions, then delegates."""

    def __init__(self, inner: StorageExtractor, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.calls = 0

    async def extract(self, block_hash: str) -> StorageSnapshot:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ExtractionError("temporary failure", block_hash=block_hash)
        return await self.inner.extract(block_hash)


@pytest.fixture
async def connected_chain(fake_chain):
    await fake_chain.connect()
    return fake_chain


class TestBlockIndexer:
    """Tests for BlockIndexer.index."""

    @pytest.mark.asyncio
    async def test_indexes_block(self, db_manager, connected_chain, header_factory) -> None:
        header = header_factory(10)
        connected_chain.storage[header.hash] = _auction_storage(highest_bid=60)
        indexer = BlockIndexer(db_manager, StorageExtractor(lambda: connected_chain))

        assert await indexer.index(header) is True

        async with db_manager.get_async_session() as session:
            block = await BlockRepository(session).get_by_number(10)
            data = await AuctionQueries(session).get_auction_data("C1", "I1")
        assert block is not None and block.hash == header.hash
        assert data is not None
        assert data.observed_at_block == 10
        assert data.auction is not None and data.auction.highest_bid == 60
        assert [(b.bidder_account, b.amount) for b in data.bids] == [("5A", 60)]
        assert data.in_auction is True
        assert indexer.stats.blocks_indexed == 1
        assert indexer.stats.last_block_number == 10

    @pytest.mark.asyncio
    async def test_reindex_converges(self, db_manager, connected_chain, header_factory) -> None:
        header = header_factory(10)
        connected_chain.storage[header.hash] = _auction_storage(highest_bid=60)
        indexer = BlockIndexer(db_manager, StorageExtractor(lambda: connected_chain))

        await indexer.index(header)
        await indexer.index(header)

        async with db_manager.get_async_session() as session:
            assert await BlockRepository(session).count() == 1
            assert await AuctionRepository(session).get_latest_block("C1", "I1") == 10
            data = await AuctionQueries(session).get_auction_data("C1", "I1")
        assert data is not None
        assert len(data.bids) == 1

    @pytest.mark.asyncio
    async def test_extraction_failure_skips_block(self, db_manager, connected_chain, header_factory) -> None:
        header = header_factory(11)
        connected_chain.storage[header.hash] = _auction_storage()
        connected_chain.failing_hashes.add(header.hash)
        indexer = BlockIndexer(db_manager, StorageExtractor(lambda: connected_chain))

        assert await indexer.index(header) is False

        async with db_manager.get_async_session() as session:
            # The block row is committed before extraction runs.
            assert await BlockRepository(session).get_by_number(11) is not None
            assert await AuctionRepository(session).get_latest_block("C1", "I1") is None
        assert indexer.stats.blocks_skipped == 1
        assert indexer.stats.last_error is not None

    @pytest.mark.asyncio
    async def test_projection_failure_rolls_back_whole_block(
        self, db_manager, connected_chain, header_factory, monkeypatch
    ) -> None:
        header = header_factory(12)
        connected_chain.storage[header.hash] = _auction_storage(highest_bid=60)
        indexer = BlockIndexer(db_manager, StorageExtractor(lambda: connected_chain))

        async def failing_upsert(self, dto):
            raise RuntimeError("disk full")

        # Settings are written last, after auctions, bids and flags.
        monkeypatch.setattr(PalletSettingRepository, "upsert", failing_upsert)

        assert await indexer.index(header) is False

        async with db_manager.get_async_session() as session:
            assert await BlockRepository(session).get_by_number(12) is not None
            assert await AuctionRepository(session).get_latest_block("C1", "I1") is None
            assert await BidRepository(session).list_snapshot("C1", "I1", observed_at_block=12) == []
            assert await AuctionStatusRepository(session).get_latest_block("C1", "I1") is None
            assert await PalletSettingRepository(session).list_all() == []
        assert indexer.stats.blocks_skipped == 1

        monkeypatch.undo()
        assert await indexer.index(header) is True
        async with db_manager.get_async_session() as session:
            assert await AuctionRepository(session).get_latest_block("C1", "I1") == 12

    @pytest.mark.asyncio
    async def test_next_block_indexed_after_failure(self, db_manager, connected_chain, header_factory) -> None:
        failing, ok = header_factory(11), header_factory(12)
        connected_chain.failing_hashes.add(failing.hash)
        connected_chain.storage[ok.hash] = _auction_storage()
        indexer = BlockIndexer(db_manager, StorageExtractor(lambda: connected_chain))

        assert await indexer.index(failing) is False
        assert await indexer.index(ok) is True
        assert indexer.stats.blocks_indexed == 1
        assert indexer.stats.last_block_number == 12

    @pytest.mark.asyncio
    async def test_dead_letter_retries_then_records(self, db_manager, connected_chain, header_factory) -> None:
        header = header_factory(11)
        connected_chain.failing_hashes.add(header.hash)
        policy = DeadLetterPolicy(max_attempts=3, retry_delay_seconds=0.0)
        indexer = BlockIndexer(db_manager, StorageExtractor(lambda: connected_chain), policy=policy)

        assert await indexer.index(header) is False
        assert policy.dead_letters == [11]
        assert indexer.stats.retries == 2

    @pytest.mark.asyncio
    async def test_dead_letter_recovers_on_retry(self, db_manager, connected_chain, header_factory) -> None:
        header = header_factory(10)
        connected_chain.storage[header.hash] = _auction_storage()
        extractor = FlakyExtractor(StorageExtractor(lambda: connected_chain), failures=1)
        policy = DeadLetterPolicy(max_attempts=2, retry_delay_seconds=0.0)
        indexer = BlockIndexer(db_manager, extractor, policy=policy)

        assert await indexer.index(header) is True
        assert extractor.calls == 2
        assert policy.dead_letters == []

    @pytest.mark.asyncio
    async def test_not_indexed_while_shutting_down(self, db_manager, connected_chain, header_factory) -> None:
        supervisor = MagicMock()
        supervisor.is_shutting_down = True
        indexer = BlockIndexer(db_manager, StorageExtractor(lambda: connected_chain), supervisor=supervisor)

        assert await indexer.index(header_factory(10)) is False

        async with db_manager.get_async_session() as session:
            assert await BlockRepository(session).count() == 0
        assert connected_chain.queries == []
