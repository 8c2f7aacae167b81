"""Per-block failure policies for the block indexer.

The default ``BestEffortPolicy`` favours liveness: a block whose extraction
or projection fails is logged and skipped, never retried. A transient failure
therefore leaves a permanent gap in the mirrored history for that block.
``DeadLetterPolicy`` retries a bounded number of times and keeps the numbers
of blocks it finally gave up on, so an operator can backfill them.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Protocol

from nft_auction_indexer.chain.models import BlockHeader

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_DEAD_LETTER_CAPACITY = 10_000


class FailurePolicy(Protocol):
    """Decides what happens when indexing a block fails."""

    @property
    def max_attempts(self) -> int: ...

    def retry_delay(self, attempt: int) -> float: ...

    def on_skipped(self, header: BlockHeader, error: Exception) -> None: ...


class BestEffortPolicy:
    """Single attempt; failed blocks are logged and skipped."""

    max_attempts = 1

    def retry_delay(self, attempt: int) -> float:
        return 0.0

    def on_skipped(self, header: BlockHeader, error: Exception) -> None:
        logger.error("Skipping block #%d (%s): %s", header.number, header.hash, error)


class DeadLetterPolicy:
    """Bounded retry, then record the block number for later backfill."""

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        capacity: int = DEFAULT_DEAD_LETTER_CAPACITY,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay_seconds
        self._dead_letters: deque[int] = deque(maxlen=capacity)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def dead_letters(self) -> list[int]:
        """Block numbers given up on, oldest first."""
        return list(self._dead_letters)

    def retry_delay(self, attempt: int) -> float:
        return self._retry_delay

    def on_skipped(self, header: BlockHeader, error: Exception) -> None:
        self._dead_letters.append(header.number)
        logger.error(
            "Dead-lettered block #%d (%s) after %d attempts: %s",
            header.number,
            header.hash,
            self._max_attempts,
            error,
        )

    def drain(self) -> list[int]:
        """Return and clear the dead-lettered block numbers."""
        numbers = list(self._dead_letters)
        self._dead_letters.clear()
        return numbers


def build_failure_policy(
    name: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
) -> FailurePolicy:
    """Create a failure policy by its configured name."""
    if name == "best_effort":
        return BestEffortPolicy()
    if name == "dead_letter":
        return DeadLetterPolicy(max_attempts=max_attempts, retry_delay_seconds=retry_delay_seconds)
    raise ValueError(f"Unknown failure policy: {name!r}")
