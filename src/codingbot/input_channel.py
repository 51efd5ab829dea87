"""Input channel: hands follow-up input to a live execution.

A single producer (the orchestrator) pushes values; a single consumer (the
execution adapter) pulls them. The channel is also an async iterator, so
the adapter can take it as its streaming prompt. Once closed it stays
closed and the iteration ends.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Generic, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InputChannelClosed(Exception):
    """Raised by pull() once the channel is closed."""


class InputChannel(Generic[T]):
    """FIFO queue with at most one suspended consumer."""

    def __init__(self, initial: Iterable[T] = ()):
        self._queue: deque[T] = deque(initial)
        self._waiter: asyncio.Future[T] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, value: T) -> None:
        """Append a value, waking a suspended consumer if there is one."""
        if self._closed:
            logger.warning("Dropping value pushed to closed input channel")
            return
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(value)
            return
        self._queue.append(value)

    async def pull(self) -> T:
        """Return the next value, suspending until one arrives.

        Raises:
            InputChannelClosed: The channel is (or becomes) closed.
            RuntimeError: Another pull is already waiting.
        """
        if self._closed:
            raise InputChannelClosed()
        if self._queue:
            return self._queue.popleft()
        if self._waiter is not None and not self._waiter.done():
            raise RuntimeError("InputChannel supports a single consumer")

        self._waiter = asyncio.get_running_loop().create_future()
        try:
            return await self._waiter
        finally:
            self._waiter = None

    def close(self) -> None:
        """End the sequence. Values not yet pulled are discarded."""
        if self._closed:
            return
        self._closed = True
        self._queue.clear()
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_exception(InputChannelClosed())

    def __aiter__(self) -> "InputChannel[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.pull()
        except InputChannelClosed:
            raise StopAsyncIteration from None
