"""Block indexer: projects one block's pallet storage into the row store.

For each header:
1. Insert the block row (ignored if the number is already present).
2. Extract the pallet storage as of the header's block hash.
3. Project the snapshot into auctions, bids, auction_status and
   pallet_settings inside a single transaction.

Every step is idempotent, so re-indexing a block converges to the same rows.
Failures never propagate out of ``index``; they go to the failure policy.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from nft_auction_indexer.chain.models import BlockHeader
from nft_auction_indexer.errors import ExtractionError, ProjectionError
from nft_auction_indexer.indexer.policy import BestEffortPolicy, FailurePolicy
from nft_auction_indexer.storage.repos import BlockDTO, BlockRepository, project_snapshot

if TYPE_CHECKING:
    from nft_auction_indexer.chain.extractor import StorageExtractor
    from nft_auction_indexer.indexer.supervisor import ConnectionSupervisor
    from nft_auction_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass
class IndexerStats:
    """Statistics for the block indexer."""

    blocks_indexed: int = 0
    blocks_skipped: int = 0
    retries: int = 0
    last_block_number: int | None = None
    last_indexed_at: datetime | None = None
    last_error: str | None = None


class BlockIndexer:
    """Indexes individual block headers."""

    def __init__(
        self,
        db: DatabaseManager,
        extractor: StorageExtractor,
        *,
        policy: FailurePolicy | None = None,
        supervisor: ConnectionSupervisor | None = None,
    ) -> None:
        """Initialize the indexer.

        Args:
            db: Database manager owning the shared connection pool.
            extractor: Storage extractor bound to the current chain client.
            policy: Failure policy; defaults to best-effort skipping.
            supervisor: Connection supervisor; indexing stops once it is
                shutting down.
        """
        self._db = db
        self._extractor = extractor
        self._policy: FailurePolicy = policy or BestEffortPolicy()
        self._supervisor = supervisor
        self._stats = IndexerStats()

    @property
    def stats(self) -> IndexerStats:
        return self._stats

    @property
    def policy(self) -> FailurePolicy:
        return self._policy

    async def index(self, header: BlockHeader) -> bool:
        """Index one header.

        Returns:
            True if the block was fully projected, False if it was skipped.
        """
        if self._supervisor is not None and self._supervisor.is_shutting_down:
            logger.debug("Shutting down; not indexing block #%d", header.number)
            return False

        attempt = 0
        while True:
            attempt += 1
            try:
                await self._index_once(header)
            except (ExtractionError, ProjectionError) as e:
                error: Exception = e
            except Exception as e:
                error = ProjectionError(f"Unexpected error indexing block: {e}", block_number=header.number)
                error.__cause__ = e
            else:
                self._stats.blocks_indexed += 1
                self._stats.last_block_number = header.number
                self._stats.last_indexed_at = datetime.now(UTC)
                return True

            self._stats.last_error = str(error)
            if attempt >= self._policy.max_attempts:
                self._stats.blocks_skipped += 1
                self._policy.on_skipped(header, error)
                return False

            delay = self._policy.retry_delay(attempt)
            self._stats.retries += 1
            logger.warning(
                "Error indexing block #%d (attempt %d/%d), retrying in %.1fs: %s",
                header.number,
                attempt,
                self._policy.max_attempts,
                delay,
                error,
            )
            await asyncio.sleep(delay)

    async def _index_once(self, header: BlockHeader) -> None:
        logger.info("Indexing block: #%d", header.number)

        try:
            async with self._db.get_async_session() as session:
                await BlockRepository(session).insert_ignore(
                    BlockDTO(number=header.number, hash=header.hash, parent_hash=header.parent_hash)
                )
        except Exception as e:
            raise ProjectionError(f"Failed to write block row: {e}", block_number=header.number) from e

        snapshot = await self._extractor.extract(header.hash)

        try:
            async with self._db.get_async_session() as session:
                counts = await project_snapshot(session, snapshot, block_number=header.number)
        except Exception as e:
            raise ProjectionError(f"Failed to project storage: {e}", block_number=header.number) from e

        logger.info(
            "Indexed block #%d with storage data (auctions=%d, bids=%d, status=%d)",
            header.number,
            counts.auctions,
            counts.bids,
            counts.status_flags,
        )
