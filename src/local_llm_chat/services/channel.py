"""Bounded async channel carrying stream records from a producer task."""

import asyncio
from typing import AsyncIterator, Generic, Optional, TypeVar

T = TypeVar("T")

_CLOSED = object()


class ChannelClosed(Exception):
    """Raised when sending into a closed channel."""


class RecordChannel(Generic[T]):
    """Single-producer, single-consumer channel.

    The producer calls :meth:`send` and finally :meth:`close`, optionally
    with the error that ended it. The consumer iterates; iteration stops once
    the channel is closed and drained, re-raising the producer's error if
    there was one. The consumer may :meth:`abort` at any time. Both ways of
    closing are idempotent.
    """

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._aborted = False
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, item: T) -> None:
        if self._closed:
            raise ChannelClosed("channel is closed")
        await self._queue.put(item)

    async def close(self, error: Optional[BaseException] = None) -> None:
        """Close after every item already sent."""
        if self._closed:
            return
        self._closed = True
        self._error = error
        await self._queue.put(_CLOSED)

    def abort(self) -> None:
        """Close from the consumer side, discarding undelivered items."""
        if self._aborted:
            return
        self._aborted = True
        self._closed = True
        self._error = None
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the sentinel for any later reader.
            self._queue.put_nowait(_CLOSED)
            if self._error is not None:
                error, self._error = self._error, None
                raise error
            raise StopAsyncIteration
        return item
