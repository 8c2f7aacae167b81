"""Exception hierarchy for the indexer.

Only ``ReconnectExhaustedError`` is fatal; connection errors are retried with
backoff, and extraction and projection errors are handled per block by the
failure policy.
"""

from __future__ import annotations


class IndexerError(Exception):
    """Base exception for indexer errors."""


class ChainConnectionError(IndexerError):
    """Raised when connecting (or reconnecting) to the chain node fails."""


class TransportDropError(IndexerError):
    """Mid-session loss of the chain transport.

    Used internally to trigger reconnection; never surfaced to callers.
    """


class ExtractionError(IndexerError):
    """Raised when reading pallet storage for a block fails."""

    def __init__(self, message: str, *, block_hash: str | None = None) -> None:
        super().__init__(message)
        self.block_hash = block_hash


class ProjectionError(IndexerError):
    """Raised when writing a block's projection to the row store fails."""

    def __init__(self, message: str, *, block_number: int | None = None) -> None:
        super().__init__(message)
        self.block_number = block_number


class ReconnectExhaustedError(IndexerError):
    """Raised when every reconnect attempt has failed."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Max reconnection attempts reached ({attempts})")
        self.attempts = attempts
