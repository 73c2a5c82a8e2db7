# tests/unit/test_streams.py
"""进程内多订阅者事件流。"""

import asyncio

import pytest

from shoptrans.application.streams import EventStream


@pytest.mark.asyncio
async def test_every_subscriber_receives_every_event() -> None:
    stream: EventStream[int] = EventStream("numbers")
    first = stream.subscribe()
    second = stream.subscribe()

    for n in range(3):
        stream.publish(n)

    assert first.drain() == [0, 1, 2]
    assert await second.get(timeout=1) == 0
    assert stream.published == 3


@pytest.mark.asyncio
async def test_slow_subscriber_drops_oldest_events() -> None:
    stream: EventStream[int] = EventStream("numbers", maxsize=2)
    sub = stream.subscribe()
    for n in range(5):
        stream.publish(n)
    assert sub.drain() == [3, 4]
    assert sub.dropped == 3


@pytest.mark.asyncio
async def test_close_ends_async_iteration() -> None:
    stream: EventStream[str] = EventStream("words")
    sub = stream.subscribe()
    stream.publish("a")
    stream.publish("b")
    stream.close()

    received = [item async for item in sub]
    assert received == ["a", "b"]
    assert stream.subscriber_count == 0


@pytest.mark.asyncio
async def test_subscription_context_unsubscribes() -> None:
    stream: EventStream[int] = EventStream("numbers")
    async with stream.subscription() as sub:
        assert stream.subscriber_count == 1
        stream.publish(1)
        assert sub.drain() == [1]
    assert stream.subscriber_count == 0


@pytest.mark.asyncio
async def test_get_times_out_without_events() -> None:
    sub = EventStream[int]("numbers").subscribe()
    with pytest.raises(asyncio.TimeoutError):
        await sub.get(timeout=0.01)
