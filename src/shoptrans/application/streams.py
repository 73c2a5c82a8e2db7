# src/shoptrans/application/streams.py
"""
进程内的多订阅者事件流。

发布方不感知订阅方；每个订阅者拥有自己的有界队列，队列满时丢弃最旧的事件，
慢订阅者不会阻塞发布方。
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Generic, TypeVar

import structlog

T = TypeVar("T")

logger = structlog.get_logger(__name__)

_CLOSED = object()


class Subscription(Generic[T]):
    def __init__(self, stream: "EventStream[T]", maxsize: int) -> None:
        self._stream = stream
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _put(self, item: object) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    async def get(self, timeout: float | None = None) -> T:
        """取下一条事件；流关闭后抛出 StopAsyncIteration。"""
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    def drain(self) -> list[T]:
        """非阻塞地取出当前已缓冲的全部事件。"""
        items: list[T] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                break
            items.append(item)  # type: ignore[arg-type]
        return items

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        return await self.get()

    def close(self) -> None:
        self._stream._unsubscribe(self)


class EventStream(Generic[T]):
    """一个泛型事件流。"""

    def __init__(self, name: str, maxsize: int = 1000) -> None:
        self.name = name
        self._maxsize = maxsize
        self._subscribers: list[Subscription[T]] = []
        self.published = 0

    def subscribe(self) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self, self._maxsize)
        self._subscribers.append(sub)
        return sub

    @asynccontextmanager
    async def subscription(self) -> AsyncIterator[Subscription[T]]:
        sub = self.subscribe()
        try:
            yield sub
        finally:
            sub.close()

    def _unsubscribe(self, sub: Subscription[T]) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: T) -> None:
        self.published += 1
        for sub in self._subscribers:
            sub._put(event)
            if sub.dropped and sub.dropped % 100 == 1:
                logger.warning(
                    "事件流订阅者消费过慢，已丢弃旧事件",
                    stream=self.name,
                    dropped=sub.dropped,
                )

    def close(self) -> None:
        """通知所有订阅者流已结束。"""
        for sub in list(self._subscribers):
            sub._put(_CLOSED)
        self._subscribers.clear()
