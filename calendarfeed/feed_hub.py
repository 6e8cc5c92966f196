"""Host-side aggregation of calendar sources.

``CalendarHub`` owns one ``FetcherSession`` per source, consumes the shared
``FeedChannel`` and keeps the merged event list that consumers display.
"""

import asyncio
import contextlib
import datetime
import logging
from collections.abc import Awaitable, Iterable
from typing import Callable, Optional

from .config_loader import FeedConfig
from .feed_cache import FeedPager, MemoryCacheStore
from .feed_channel import FeedChannel, FeedMessage, FetchFailed
from .feed_client import FeedClient
from .feed_datetime import get_local_timezone, now_local
from .feed_models import CalendarEvent, FeedSource, VisibilityClass
from .feed_scheduler import FetcherSession

logger = logging.getLogger(__name__)

Broadcaster = Callable[[list[CalendarEvent]], Awaitable[None]]


class CalendarHub:
    """Aggregates events of all configured calendar sources.

    Pages of a source are kept by page number: page 1 replaces everything held for
    the source, later pages are appended after the pages before them. A page that
    is delivered again (timer reload, cache hit) replaces its earlier copy.

    ``pending_fetches`` counts fetch tasks started through the hub that have not
    finished yet; timer-driven reloads are not counted.
    """

    def __init__(
        self,
        config: Optional[FeedConfig] = None,
        client: Optional[FeedClient] = None,
        pager: Optional[FeedPager] = None,
        channel: Optional[FeedChannel] = None,
        broadcaster: Optional[Broadcaster] = None,
        now: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        """Initialize the hub.

        Args:
            config: Loaded configuration, defaults when omitted
            client: Feed client shared by all sessions
            pager: Pager/cache shared by all sessions
            channel: Channel the sessions publish on
            broadcaster: Async callback receiving the full event list after updates
            now: Reference time provider, CALENDARFEED_TEST_TIME aware by default
        """
        self.config = config or FeedConfig()
        self.tz = get_local_timezone(self.config.timezone)
        self.client = client or FeedClient()
        self.pager = pager or FeedPager(MemoryCacheStore())
        self.channel = channel or FeedChannel()
        self.broadcaster = broadcaster
        self._now = now or (lambda: now_local(self.tz))

        self.loaded = False
        self.pending_fetches = 0

        self._sessions: dict[str, FetcherSession] = {}
        self._pages: dict[str, dict[int, list[CalendarEvent]]] = {}
        self._runner: Optional[asyncio.Task] = None
        self._started = False

    @classmethod
    def from_config(cls, config: FeedConfig, **kwargs) -> "CalendarHub":
        """Create a hub with one session per configured calendar."""
        hub = cls(config, **kwargs)
        for source in config.to_sources():
            hub.add_source(source)
        return hub

    @property
    def sources(self) -> list[FeedSource]:
        return [session.source for session in self._sessions.values()]

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def session(self, url: str) -> FetcherSession:
        """Return the session of a source.

        Raises:
            KeyError: If no source with this URL is registered
        """
        return self._sessions[url]

    def add_source(self, source: FeedSource) -> FetcherSession:
        """Register a calendar source; fetching starts at once when the hub runs."""
        existing = self._sessions.get(source.url)
        if existing is not None:
            logger.warning("Calendar %s is already registered", source.url)
            return existing

        session = FetcherSession(
            source, self.client, self.pager, self.channel, now=self._now
        )
        self._sessions[source.url] = session
        logger.info("Added calendar %s", source.url)
        if self._started:
            self._track(session.start_fetch())
        return session

    async def remove_source(self, url: str) -> None:
        """Stop and forget a calendar source and its events."""
        session = self._sessions.pop(url, None)
        if session is None:
            logger.debug("Calendar %s is not registered", url)
            return
        await session.close()
        self._pages.pop(url, None)
        logger.info("Removed calendar %s", url)

    def load_next_page(self, url: str) -> Optional[asyncio.Task]:
        """Fetch the next page of one source, if it has more events."""
        return self._track(self.session(url).load_next_page())

    def reset_pagination(self, url: str) -> asyncio.Task:
        """Go back to the first page of one source."""
        task = self.session(url).reset_pagination()
        self._track(task)
        return task

    def load_more_events(self) -> list[asyncio.Task]:
        """Fetch the next page of every source that has more events."""
        tasks = []
        for url, session in self._sessions.items():
            if session.has_more_events:
                task = self.load_next_page(url)
                if task is not None:
                    tasks.append(task)
        return tasks

    def has_more_events(self) -> bool:
        """Whether any source has further pages."""
        return any(session.has_more_events for session in self._sessions.values())

    async def dispatch(self, message: FeedMessage) -> None:
        """Apply one channel message to the aggregated state."""
        url = message.source_url
        if url not in self._sessions:
            logger.debug("Ignoring message for unregistered calendar %s", url)
            return

        if isinstance(message, FetchFailed):
            logger.error("Calendar %s could not be updated: %s", url, message.error)
            return

        page = message.page
        if page.page_number == 1:
            self._pages[url] = {}
        pages = self._pages.setdefault(url, {})
        pages[page.page_number] = list(page.events)
        # A page without more events ends the list of the source
        for number in [n for n in pages if n > page.page_number and not page.has_more]:
            del pages[number]

        self.loaded = True
        logger.debug(
            "Calendar %s: page %d with %d events, %d pending fetches",
            url,
            page.page_number,
            len(page.events),
            self.pending_fetches,
        )

        if self.config.broadcast_events and self.broadcaster is not None:
            await self.broadcaster(self.broadcast_list())

    def events_for(self, url: str) -> list[CalendarEvent]:
        """Events held for one source, pages in order."""
        pages = self._pages.get(url, {})
        return [event for number in sorted(pages) for event in pages[number]]

    def create_event_list(self) -> list[CalendarEvent]:
        """Merged events for display.

        PRIVATE events are dropped when ``hide_private`` is set; the result is sorted
        by start date and truncated to ``maximum_entries``.
        """
        events = self._merged(self._sessions)
        if self.config.hide_private:
            events = [e for e in events if e.visibility_class != VisibilityClass.PRIVATE]
        return events[: self.config.maximum_entries]

    def broadcast_list(self) -> list[CalendarEvent]:
        """Merged events of all sources, sorted by start date, not truncated."""
        return self._merged(self._sessions)

    def _merged(self, urls: Iterable[str]) -> list[CalendarEvent]:
        events = [event for url in urls for event in self.events_for(url)]
        events.sort(key=lambda event: event.start_date)
        return events

    def _track(self, task: Optional[asyncio.Task]) -> Optional[asyncio.Task]:
        if task is not None:
            self.pending_fetches += 1
            task.add_done_callback(self._fetch_done)
        return task

    def _fetch_done(self, task: asyncio.Task) -> None:
        self.pending_fetches = max(0, self.pending_fetches - 1)

    async def run(self) -> None:
        """Consume the channel until cancelled."""
        async for message in self.channel:
            try:
                await self.dispatch(message)
            except Exception:
                logger.exception("Failed to handle message for %s", message.source_url)

    def start(self) -> None:
        """Start consuming the channel and fetch every source once."""
        if self._started:
            return
        self._started = True
        self._runner = asyncio.get_running_loop().create_task(
            self.run(), name="calendarfeed-hub"
        )
        for session in self._sessions.values():
            self._track(session.start_fetch())
        logger.info("Calendar hub started with %d sources", len(self._sessions))

    async def close(self) -> None:
        """Stop all sessions and the channel consumer."""
        for session in list(self._sessions.values()):
            await session.close()
        if self._runner is not None:
            self._runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._runner
            self._runner = None
        self._started = False
        logger.info("Calendar hub closed")
