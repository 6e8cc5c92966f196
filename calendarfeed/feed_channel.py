"""Typed messages published by fetcher sessions and the channel carrying them."""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Union

from .feed_exceptions import FeedError
from .feed_models import Page

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventsReceived:
    """A fetch cycle produced a page of events for a source."""

    source_url: str
    page: Page


@dataclass(frozen=True)
class FetchFailed:
    """A fetch cycle failed for a source."""

    source_url: str
    error: FeedError


FeedMessage = Union[EventsReceived, FetchFailed]


class FeedChannel:
    """FIFO channel of feed messages.

    Sessions publish exactly one message per completed cycle, before the next
    cycle is scheduled, so consumers observe messages in cycle order.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[FeedMessage] = asyncio.Queue()

    async def publish(self, message: FeedMessage) -> None:
        """Append a message to the channel."""
        logger.debug("Publishing %s for %s", type(message).__name__, message.source_url)
        await self._queue.put(message)

    async def receive(self) -> FeedMessage:
        """Wait for and return the next message."""
        message = await self._queue.get()
        self._queue.task_done()
        return message

    def receive_nowait(self) -> FeedMessage:
        """Return the next message immediately.

        Raises:
            asyncio.QueueEmpty: If no message is pending
        """
        message = self._queue.get_nowait()
        self._queue.task_done()
        return message

    def pending(self) -> int:
        """Number of messages not yet received."""
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[FeedMessage]:
        while True:
            yield await self.receive()
