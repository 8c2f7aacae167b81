"""Head subscriber: feeds new block headers to the indexer in arrival order.

The chain client invokes the subscription callback without waiting for the
previous header's indexing to finish. Headers are therefore put on a bounded
queue drained by a single worker task, so processing order equals arrival
order and two blocks are never projected concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from nft_auction_indexer.chain.models import BlockHeader

if TYPE_CHECKING:
    from nft_auction_indexer.chain.client import ChainClient, Unsubscribe
    from nft_auction_indexer.indexer.block_indexer import BlockIndexer

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


@dataclass
class SubscriberStats:
    """Statistics for the head subscriber."""

    headers_received: int = 0
    headers_dropped: int = 0
    subscriptions: int = 0
    last_header_number: int | None = None


class HeadSubscriber:
    """Owns the new-heads subscription and the single indexing worker."""

    def __init__(self, indexer: BlockIndexer, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._indexer = indexer
        self._queue: asyncio.Queue[BlockHeader | None] = asyncio.Queue(maxsize=queue_size)
        self._unsubscribe: Unsubscribe | None = None
        self._worker_task: asyncio.Task[None] | None = None
        self._stats = SubscriberStats()

    @property
    def stats(self) -> SubscriberStats:
        return self._stats

    @property
    def is_armed(self) -> bool:
        return self._unsubscribe is not None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def arm(self, client: ChainClient) -> None:
        """Subscribe to new heads on ``client``.

        Any previous subscription is cancelled first, so at most one
        subscription ever feeds the queue.
        """
        await self.disarm()
        self._ensure_worker()
        self._unsubscribe = await client.subscribe_new_heads(self._on_header)
        self._stats.subscriptions += 1
        logger.info("Started indexing new blocks...")

    async def disarm(self) -> None:
        """Cancel the active subscription, if any. Queued headers are kept."""
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is None:
            return
        try:
            await unsubscribe()
        except Exception as e:
            logger.warning("Error cancelling header subscription: %s", e)
        logger.debug("Header subscription cancelled")

    async def close(self) -> None:
        """Cancel the subscription and wait for the worker to finish.

        The block currently being indexed is allowed to complete.
        """
        await self.disarm()
        task, self._worker_task = self._worker_task, None
        if task is None:
            return
        if not task.done():
            await self._queue.put(None)
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _ensure_worker(self) -> None:
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._run_worker())

    def _on_header(self, header: BlockHeader) -> None:
        self._stats.headers_received += 1
        self._stats.last_header_number = header.number
        try:
            self._queue.put_nowait(header)
        except asyncio.QueueFull:
            self._stats.headers_dropped += 1
            logger.warning("Header queue full; dropping block #%d", header.number)

    async def _run_worker(self) -> None:
        while True:
            header = await self._queue.get()
            try:
                if header is None:
                    return
                await self._indexer.index(header)
            except Exception as e:
                # index() handles its own failures; this keeps the worker alive.
                logger.error("Unexpected error indexing block #%d: %s", header.number if header else -1, e)
            finally:
                self._queue.task_done()
