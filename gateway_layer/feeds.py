"""
Bounded Async Feed

Single-producer feed consumed by one or many tasks. `put()` blocks while the
feed is full (backpressure), `close()` is idempotent and wakes every waiter,
and consumers drain whatever is buffered before seeing the end.
"""

import asyncio
from collections import deque
from typing import Deque, Generic, TypeVar

T = TypeVar("T")


class FeedClosed(Exception):
    """Raised by get() once the feed is closed and drained."""
    pass


class Feed(Generic[T]):
    """
    Usage:
        async for tick in subscription.data:
            ...
    """

    def __init__(self, capacity: int = 1, name: str = "feed"):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.name = name
        self._capacity = capacity
        self._items: Deque[T] = deque()
        self._closed = False
        self._cond = asyncio.Condition()
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return len(self._items)

    async def put(self, item: T) -> bool:
        """
        Append `item`, waiting while the feed is full.

        Returns False, dropping the item, if the feed is closed.
        """
        async with self._cond:
            while len(self._items) >= self._capacity and not self._closed:
                await self._cond.wait()
            if self._closed:
                return False
            self._items.append(item)
            self._cond.notify_all()
            return True

    async def get(self) -> T:
        async with self._cond:
            while not self._items and not self._closed:
                await self._cond.wait()
            if not self._items:
                raise FeedClosed(f"{self.name} is closed")
            item = self._items.popleft()
            self.delivered += 1
            self._cond.notify_all()
            return item

    async def close(self, discard: bool = False) -> None:
        """
        Mark the feed closed. Calling it again is a no-op.

        With discard=True anything still buffered is dropped, so consumers
        see the end immediately.
        """
        async with self._cond:
            if self._closed:
                return
            self._closed = True
            if discard:
                self._items.clear()
            self._cond.notify_all()

    async def wait_closed(self) -> None:
        async with self._cond:
            while not self._closed:
                await self._cond.wait()

    def __aiter__(self) -> "Feed[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except FeedClosed:
            raise StopAsyncIteration

    def __repr__(self) -> str:
        return f"Feed({self.name!r}, buffered={len(self._items)}, closed={self._closed})"
