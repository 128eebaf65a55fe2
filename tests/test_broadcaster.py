"""Tests for the in-process update broker."""

import asyncio

import pytest

from promptwatch.execution.broadcaster import UpdateBroker


class TestPublish:
    def test_no_subscribers(self, broker):
        assert broker.publish(1, {"status": "running"}) == 0

    def test_delivers_once_per_subscriber(self, broker):
        first, second = [], []
        broker.subscribe(1, first.append)
        broker.subscribe(1, second.append)

        assert broker.publish(1, {"executionId": 7}) == 2
        assert first == [{"executionId": 7}]
        assert second == [{"executionId": 7}]

    def test_scoped_by_business(self, broker):
        received = []
        broker.subscribe(1, received.append)
        broker.publish(2, {"executionId": 7})
        assert received == []

    def test_unsubscribe(self, broker):
        received = []
        unsubscribe = broker.subscribe(1, received.append)
        unsubscribe()
        unsubscribe()  # second call is a no-op
        broker.publish(1, {"executionId": 7})
        assert received == []
        assert broker.subscriber_count(1) == 0

    def test_failing_subscriber_removed(self, broker):
        received = []

        def broken(payload):
            raise RuntimeError("socket closed")

        broker.subscribe(1, broken)
        broker.subscribe(1, received.append)

        assert broker.publish(1, {"n": 1}) == 1
        assert broker.publish(1, {"n": 2}) == 1
        assert received == [{"n": 1}, {"n": 2}]
        assert broker.subscriber_count(1) == 1

    def test_subscriber_may_unsubscribe_during_publish(self, broker):
        received = []
        holder = {}

        def once(payload):
            received.append(payload)
            holder["unsubscribe"]()

        holder["unsubscribe"] = broker.subscribe(1, once)
        broker.publish(1, {"n": 1})
        broker.publish(1, {"n": 2})
        assert received == [{"n": 1}]


class TestQueues:
    @pytest.mark.asyncio
    async def test_listen(self, broker):
        async with broker.listen(1) as subscription:
            broker.publish(1, {"status": "completed"})
            assert await asyncio.wait_for(subscription.get(), timeout=1) == {"status": "completed"}
            assert not subscription.dropped
        assert broker.subscriber_count(1) == 0

    @pytest.mark.asyncio
    async def test_full_queue_dropped(self):
        broker = UpdateBroker(queue_size=2)
        other = []
        broker.subscribe(1, other.append)
        async with broker.listen(1) as subscription:
            broker.publish(1, {"n": 1})
            broker.publish(1, {"n": 2})
            broker.publish(1, {"n": 3})  # overflows and drops the queue subscriber
            broker.publish(1, {"n": 4})
            assert subscription.qsize() == 2
            assert subscription.dropped
            assert broker.subscriber_count(1) == 1

            # queued payloads stay readable, then the subscription is spent
            assert await subscription.get() == {"n": 1}
            assert not subscription.exhausted
            assert await subscription.get() == {"n": 2}
            assert subscription.exhausted
        assert len(other) == 4

    @pytest.mark.asyncio
    async def test_stream(self, broker):
        stream = broker.stream(1)
        pending = asyncio.ensure_future(anext(stream))
        await asyncio.sleep(0)  # let the stream subscribe
        broker.publish(1, {"n": 1})
        assert await asyncio.wait_for(pending, timeout=1) == {"n": 1}
        await stream.aclose()
        assert broker.subscriber_count(1) == 0

    @pytest.mark.asyncio
    async def test_stream_ends_after_drop(self):
        broker = UpdateBroker(queue_size=1)
        stream = broker.stream(1)
        pending = asyncio.ensure_future(anext(stream))
        await asyncio.sleep(0)
        broker.publish(1, {"n": 1})
        assert await asyncio.wait_for(pending, timeout=1) == {"n": 1}

        broker.publish(1, {"n": 2})
        broker.publish(1, {"n": 3})  # overflow
        assert await asyncio.wait_for(anext(stream), timeout=1) == {"n": 2}
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(anext(stream), timeout=1)
        assert broker.subscriber_count(1) == 0
