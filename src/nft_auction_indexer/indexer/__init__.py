"""Indexing pipeline - supervisor, head subscriber and block indexer."""

from nft_auction_indexer.indexer.block_indexer import BlockIndexer, IndexerStats
from nft_auction_indexer.indexer.policy import (
    BestEffortPolicy,
    DeadLetterPolicy,
    FailurePolicy,
    build_failure_policy,
)
from nft_auction_indexer.indexer.subscriber import HeadSubscriber, SubscriberStats
from nft_auction_indexer.indexer.supervisor import (
    ConnectionSupervisor,
    ReconnectPolicy,
    SupervisorState,
    SupervisorStats,
    compute_backoff_delay,
)

__all__ = [
    "BestEffortPolicy",
    "BlockIndexer",
    "ConnectionSupervisor",
    "DeadLetterPolicy",
    "FailurePolicy",
    "HeadSubscriber",
    "IndexerStats",
    "ReconnectPolicy",
    "SubscriberStats",
    "SupervisorState",
    "SupervisorStats",
    "build_failure_policy",
    "compute_backoff_delay",
]
