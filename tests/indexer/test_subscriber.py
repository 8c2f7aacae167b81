"""Tests for the head subscriber."""

import asyncio

import pytest

from nft_auction_indexer.indexer.subscriber import HeadSubscriber


@pytest.fixture
async def connected_chain(fake_chain):
    await fake_chain.connect()
    return fake_chain


class TestHeadSubscriber:
    """Tests for HeadSubscriber."""

    @pytest.mark.asyncio
    async def test_processes_in_arrival_order(
        self, recording_indexer, connected_chain, header_factory, wait_for
    ) -> None:
        subscriber = HeadSubscriber(recording_indexer)
        await subscriber.arm(connected_chain)

        for n in (10, 11, 12, 13, 14):
            connected_chain.emit_header(header_factory(n))
        await wait_for(lambda: len(recording_indexer.headers) == 5)
        await subscriber.close()

        assert recording_indexer.numbers == [10, 11, 12, 13, 14]
        assert subscriber.stats.headers_received == 5

    @pytest.mark.asyncio
    async def test_blocks_never_indexed_concurrently(
        self, recording_indexer, connected_chain, header_factory, wait_for
    ) -> None:
        subscriber = HeadSubscriber(recording_indexer)
        await subscriber.arm(connected_chain)
        recording_indexer.release.clear()

        for n in range(1, 6):
            connected_chain.emit_header(header_factory(n))
        await wait_for(lambda: recording_indexer.started == [1])
        await asyncio.sleep(0.05)
        assert recording_indexer.started == [1]

        recording_indexer.release.set()
        await wait_for(lambda: len(recording_indexer.headers) == 5)
        await subscriber.close()

        assert recording_indexer.max_active == 1

    @pytest.mark.asyncio
    async def test_rearm_cancels_previous_subscription(
        self, recording_indexer, chain_factory, header_factory, wait_for
    ) -> None:
        first, second = chain_factory(), chain_factory()
        await first.connect()
        await second.connect()
        subscriber = HeadSubscriber(recording_indexer)

        await subscriber.arm(first)
        await subscriber.arm(second)
        first.emit_header(header_factory(1))
        second.emit_header(header_factory(2))
        await wait_for(lambda: len(recording_indexer.headers) == 1)
        await subscriber.close()

        assert first.unsubscribe_calls == 1
        assert first.active_subscriptions == 0
        assert recording_indexer.numbers == [2]
        assert subscriber.stats.subscriptions == 2

    @pytest.mark.asyncio
    async def test_full_queue_drops_newest(
        self, recording_indexer, connected_chain, header_factory, wait_for
    ) -> None:
        subscriber = HeadSubscriber(recording_indexer, queue_size=1)
        await subscriber.arm(connected_chain)
        recording_indexer.release.clear()

        connected_chain.emit_header(header_factory(1))
        await wait_for(lambda: recording_indexer.started == [1])
        connected_chain.emit_header(header_factory(2))
        connected_chain.emit_header(header_factory(3))

        assert subscriber.stats.headers_dropped == 1
        assert subscriber.pending == 1

        recording_indexer.release.set()
        await wait_for(lambda: len(recording_indexer.headers) == 2)
        await subscriber.close()

        assert recording_indexer.numbers == [1, 2]

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_block(
        self, recording_indexer, connected_chain, header_factory, wait_for
    ) -> None:
        subscriber = HeadSubscriber(recording_indexer)
        await subscriber.arm(connected_chain)
        recording_indexer.release.clear()
        connected_chain.emit_header(header_factory(1))
        await wait_for(lambda: recording_indexer.started == [1])

        close_task = asyncio.create_task(subscriber.close())
        await asyncio.sleep(0.05)
        assert not close_task.done()
        assert not subscriber.is_armed
        assert connected_chain.active_subscriptions == 0

        recording_indexer.release.set()
        await close_task

        assert recording_indexer.numbers == [1]

    @pytest.mark.asyncio
    async def test_disarm_without_subscription_is_noop(self, recording_indexer) -> None:
        subscriber = HeadSubscriber(recording_indexer)

        await subscriber.disarm()
        await subscriber.close()

        assert not subscriber.is_armed
