"""Tests for per-block failure policies."""

import pytest

from nft_auction_indexer.chain.models import BlockHeader
from nft_auction_indexer.indexer.policy import BestEffortPolicy, DeadLetterPolicy, build_failure_policy


def _header(number: int) -> BlockHeader:
    return BlockHeader(number=number, hash=f"0x{number:02x}", parent_hash="0x00")


def test_best_effort_single_attempt() -> None:
    policy = BestEffortPolicy()
    assert policy.max_attempts == 1
    policy.on_skipped(_header(1), RuntimeError("boom"))


class TestDeadLetterPolicy:
    def test_records_skipped_blocks(self) -> None:
        policy = DeadLetterPolicy(max_attempts=2, retry_delay_seconds=0.5)
        policy.on_skipped(_header(7), RuntimeError("boom"))
        policy.on_skipped(_header(9), RuntimeError("boom"))

        assert policy.max_attempts == 2
        assert policy.retry_delay(1) == 0.5
        assert policy.dead_letters == [7, 9]

    def test_drain_clears(self) -> None:
        policy = DeadLetterPolicy()
        policy.on_skipped(_header(7), RuntimeError("boom"))

        assert policy.drain() == [7]
        assert policy.dead_letters == []

    def test_capacity_keeps_newest(self) -> None:
        policy = DeadLetterPolicy(capacity=2)
        for n in (1, 2, 3):
            policy.on_skipped(_header(n), RuntimeError("boom"))

        assert policy.dead_letters == [2, 3]

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            DeadLetterPolicy(max_attempts=0)


class TestBuildFailurePolicy:
    def test_by_name(self) -> None:
        assert isinstance(build_failure_policy("best_effort"), BestEffortPolicy)
        policy = build_failure_policy("dead_letter", max_attempts=4, retry_delay_seconds=0.0)
        assert isinstance(policy, DeadLetterPolicy)
        assert policy.max_attempts == 4

    def test_unknown_name(self) -> None:
        with pytest.raises(ValueError):
            build_failure_policy("retry_forever")
