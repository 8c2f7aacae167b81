"""Indexer service: wires the pipeline together and serves auction queries.

Pipeline flow:
    ConnectionSupervisor -> HeadSubscriber -> BlockIndexer
        -> StorageExtractor -> row store (repositories)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from nft_auction_indexer.chain.client import SubstrateChainClient
from nft_auction_indexer.chain.extractor import StorageExtractor
from nft_auction_indexer.config import Settings, get_settings
from nft_auction_indexer.indexer.block_indexer import BlockIndexer
from nft_auction_indexer.indexer.policy import build_failure_policy
from nft_auction_indexer.indexer.subscriber import HeadSubscriber
from nft_auction_indexer.indexer.supervisor import (
    ChainClientFactory,
    ConnectionSupervisor,
    ReconnectPolicy,
    SleepFunc,
)
from nft_auction_indexer.storage.database import DatabaseManager
from nft_auction_indexer.storage.repos import AuctionData, AuctionDTO, AuctionQueries

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    last_error: str | None = None


class IndexerService:
    """Main entry point for running the indexer.

    Example:
        ```python
        from nft_auction_indexer.config import get_settings
        from nft_auction_indexer.service import IndexerService

        service = IndexerService(get_settings())
        await service.run()  # until request_stop() or reconnect exhaustion
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client_factory: ChainClientFactory | None = None,
        db_manager: DatabaseManager | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the service. No I/O happens until ``start()``.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            client_factory: Creates chain clients; defaults to SubstrateChainClient.
            db_manager: Database manager; defaults to one built from settings.
            sleep: Awaitable used for reconnect backoff.
        """
        self._settings = settings or get_settings()
        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        chain = self._settings.chain
        self._client_factory: ChainClientFactory = client_factory or (
            lambda: SubstrateChainClient(chain.ws_endpoint, pallet_name=chain.pallet_name)
        )
        self._db = db_manager or DatabaseManager.from_settings(self._settings.database)

        reconnect = self._settings.reconnect
        self._supervisor = ConnectionSupervisor(
            self._client_factory,
            policy=ReconnectPolicy(
                base_delay=reconnect.base_delay_seconds,
                max_delay=reconnect.max_delay_seconds,
                max_attempts=reconnect.max_attempts,
            ),
            sleep=sleep,
        )
        indexer_settings = self._settings.indexer
        self._extractor = StorageExtractor(self._supervisor.require_client)
        self._indexer = BlockIndexer(
            self._db,
            self._extractor,
            policy=build_failure_policy(
                indexer_settings.failure_policy,
                max_attempts=indexer_settings.max_attempts,
                retry_delay_seconds=indexer_settings.retry_delay_seconds,
            ),
            supervisor=self._supervisor,
        )
        self._subscriber = HeadSubscriber(self._indexer, queue_size=indexer_settings.queue_size)
        self._supervisor.attach_subscriber(self._subscriber)

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def supervisor(self) -> ConnectionSupervisor:
        return self._supervisor

    @property
    def indexer(self) -> BlockIndexer:
        return self._indexer

    @property
    def subscriber(self) -> HeadSubscriber:
        return self._subscriber

    @property
    def db(self) -> DatabaseManager:
        return self._db

    async def start(self) -> None:
        """Create the schema, connect to the node and start indexing.

        Raises:
            RuntimeError: If the service is not stopped.
            ReconnectExhaustedError: If the node could not be reached within
                the reconnect attempts.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        logger.info("Starting indexer with settings: %s", self._settings.redacted_summary())
        try:
            await self._db.init_schema_async()
            await self._supervisor.start()
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to initialize: %s", e)
            await self._db.dispose_async()
            raise

        self._stats.started_at = datetime.now(UTC)
        self._state = ServiceState.RUNNING
        logger.info("Indexer started")

    def request_stop(self) -> None:
        """Ask a running ``run()`` to shut down. Safe to call from signal handlers."""
        self._supervisor.request_shutdown()

    async def stop(self) -> None:
        """Stop gracefully: unsubscribe, drain, disconnect, close the pool."""
        if self._state in (ServiceState.STOPPED, ServiceState.STOPPING):
            return
        self._state = ServiceState.STOPPING
        logger.info("Shutting down indexer...")

        await self._supervisor.shutdown()
        await self._db.dispose_async()

        self._state = ServiceState.STOPPED
        logger.info("Indexer stopped")

    async def run(self) -> None:
        """Start and run until stopped.

        Raises:
            ReconnectExhaustedError: If the connection could not be restored.
        """
        await self.start()
        try:
            await self._supervisor.wait_closed()
        finally:
            await self.stop()

    async def get_auction_data(
        self,
        collection_id: str,
        item_id: str,
        block_hash: str | None = None,
    ) -> AuctionData | None:
        """Auction, bids and in-auction flag, optionally at a historical block."""
        async with self._db.get_async_session() as session:
            return await AuctionQueries(session).get_auction_data(
                collection_id, item_id, block_hash=block_hash
            )

    async def get_all_active_auctions(self) -> list[AuctionDTO]:
        """Latest snapshot of every auction that has not ended."""
        async with self._db.get_async_session() as session:
            return await AuctionQueries(session).get_all_active_auctions()

    def stats_summary(self) -> dict[str, Any]:
        supervisor = self._supervisor.stats
        indexer = self._indexer.stats
        subscriber = self._subscriber.stats
        return {
            "state": self._state.value,
            "started_at": self._stats.started_at.isoformat() if self._stats.started_at else None,
            "connection": self._supervisor.state.value,
            "reconnect_attempts": self._supervisor.reconnect_attempts,
            "disconnects": supervisor.disconnects,
            "headers_received": subscriber.headers_received,
            "headers_dropped": subscriber.headers_dropped,
            "blocks_indexed": indexer.blocks_indexed,
            "blocks_skipped": indexer.blocks_skipped,
            "last_block_number": indexer.last_block_number,
            "last_error": indexer.last_error or supervisor.last_error or self._stats.last_error,
        }
