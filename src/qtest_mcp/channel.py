"""Bounded FIFO channel connecting the pipeline tasks.

A ``Channel`` wraps an :class:`asyncio.Queue` with a fixed capacity.
Producers suspend while the queue is full, nothing is ever dropped.
Closing the channel wakes a blocked receiver; receivers drain whatever
was queued before the close and then get :class:`ChannelClosedError`.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Generic, TypeVar

from .errors import ChannelClosedError

CHANNEL_CAPACITY = 32

T = TypeVar("T")

_CLOSED = object()


class Channel(Generic[T]):
    """Bounded single-consumer queue with explicit close."""

    def __init__(self, name: str, maxsize: int = CHANNEL_CAPACITY) -> None:
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._cause: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def qsize(self) -> int:
        return self._queue.qsize()

    async def send(self, item: T) -> None:
        """Queue an item, waiting while the channel is full."""
        if self._closed:
            raise ChannelClosedError(f"{self.name} channel is closed")
        await self._queue.put(item)

    async def recv(self) -> T:
        """Wait for the next item.

        Raises:
            ChannelClosedError: If the channel closed and nothing is left.
        """
        if self._closed and self._queue.empty():
            self._raise_closed()
        item = await self._queue.get()
        if item is _CLOSED:
            self._raise_closed()
        return item

    def close(self, cause: BaseException | None = None) -> None:
        """Close the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._cause = cause
        # A full queue has no waiting receiver, so the marker is only
        # needed when there is room for it.
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def _raise_closed(self) -> None:
        error = ChannelClosedError(f"{self.name} channel closed")
        if self._cause is not None:
            raise error from self._cause
        raise error

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            try:
                item = await self.recv()
            except ChannelClosedError:
                return
            yield item

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"Channel({self.name!r}, {state}, {self.qsize()}/{self.maxsize})"
