"""Per-source fetch scheduling: the fetch -> normalize -> cache -> publish loop.

A ``FetcherSession`` owns one calendar source. It runs at most one cycle at a time,
publishes exactly one message per completed cycle on its ``FeedChannel`` and then
re-arms its reload timer, whatever the outcome of the cycle was.
"""

import asyncio
import contextlib
import datetime
import logging
from typing import Callable, Optional

from .feed_cache import FeedPager
from .feed_channel import EventsReceived, FeedChannel, FeedMessage, FetchFailed
from .feed_client import FeedClient
from .feed_datetime import get_local_timezone, now_local
from .feed_exceptions import FeedError
from .feed_models import CalendarEvent, FeedSource, FetchWindow, Page
from .feed_normalizer import normalize
from .feed_parser import ComponentRecord, parse_ics

logger = logging.getLogger(__name__)

Parser = Callable[[str], dict[str, ComponentRecord]]
NowProvider = Callable[[], datetime.datetime]


class FetcherSession:
    """Fetch state machine for one calendar source.

    States cycle Idle -> Fetching -> (Succeeded | Failed) -> Idle, driven by the
    reload timer and by explicit ``start_fetch``/``load_next_page``/``reset_pagination``
    calls. Explicit calls cancel a pending timer but never abort a request in flight.
    """

    def __init__(
        self,
        source: FeedSource,
        client: FeedClient,
        pager: FeedPager,
        channel: FeedChannel,
        parser: Parser = parse_ics,
        now: Optional[NowProvider] = None,
    ) -> None:
        """Initialize a session.

        Args:
            source: Calendar source configuration
            client: Client used for the network request
            pager: Pager/cache shared by all sessions
            channel: Channel receiving one message per completed cycle
            parser: Turns raw ICS text into component records
            now: Returns the aware reference time for each cycle
        """
        self.source = source
        self.client = client
        self.pager = pager
        self.channel = channel
        self.parser = parser
        self._now = now or (lambda tz=get_local_timezone(): now_local(tz))

        self.current_page = 1
        self.has_more_events = True
        self.events: list[CalendarEvent] = []
        self.normalized_events: Optional[list[CalendarEvent]] = None
        self.last_error: Optional[FeedError] = None

        self._reload_handle: Optional[asyncio.TimerHandle] = None
        self._inflight: Optional[asyncio.Task] = None
        self._restart_requested = False
        self._closed = False

    @property
    def url(self) -> str:
        return self.source.url

    @property
    def timer_active(self) -> bool:
        """Whether a reload is currently scheduled."""
        return self._reload_handle is not None

    @property
    def is_fetching(self) -> bool:
        """Whether a cycle is currently running."""
        return self._inflight is not None and not self._inflight.done()

    @property
    def closed(self) -> bool:
        return self._closed

    def start_fetch(self) -> asyncio.Task:
        """Start a fetch cycle now.

        Cancels the pending reload timer. If a cycle is already running, no second
        request is issued: the running cycle is returned and a follow-up cycle
        starts as soon as it completes.

        Returns:
            Task of the running cycle; its result is the published message
        """
        if self._closed:
            raise RuntimeError(f"Fetcher session for {self.url} is closed")

        self._cancel_timer()
        if self.is_fetching:
            logger.debug("Fetch already in flight for %s; queueing a follow-up cycle", self.url)
            self._restart_requested = True
            return self._inflight  # type: ignore[return-value]

        self._inflight = asyncio.get_running_loop().create_task(
            self._run_cycle(), name=f"calendarfeed-fetch:{self.url}"
        )
        return self._inflight

    def load_next_page(self) -> Optional[asyncio.Task]:
        """Advance to the next page and fetch it immediately.

        Returns:
            Task of the cycle, or None when there are no more events
        """
        if not self.has_more_events:
            logger.debug("No more events for %s; ignoring next page request", self.url)
            return None
        self.current_page += 1
        return self.start_fetch()

    def reset_pagination(self) -> asyncio.Task:
        """Go back to the first page and fetch it immediately."""
        self.current_page = 1
        self.has_more_events = True
        return self.start_fetch()

    async def close(self) -> None:
        """Stop the session: cancel the timer and any running cycle."""
        self._closed = True
        self._cancel_timer()
        task = self._inflight
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.debug("Fetcher session for %s closed", self.url)

    async def _run_cycle(self) -> Optional[FeedMessage]:
        message: Optional[FeedMessage]
        try:
            message = await self._fetch_cycle()
        except FeedError as e:
            message = self._failure(e)
        except Exception as e:
            logger.exception("Unexpected error in fetch cycle for %s", self.url)
            message = self._failure(FeedError(f"Unexpected error: {e}", source_url=self.url))

        if message is not None:
            await self.channel.publish(message)
        self._after_cycle()
        return message

    async def _fetch_cycle(self) -> Optional[FeedMessage]:
        source = self.source

        if self.pager.is_fresh(self.url, source.reload_interval):
            page = self._page_without_network()
            if page is None:
                logger.debug(
                    "%s fetched less than %.0fs ago and page %d is not cached; skipping",
                    self.url,
                    source.reload_interval,
                    self.current_page,
                )
                return None
            logger.debug("Serving page %d of %s from cache", page.page_number, self.url)
            self._apply_page(page)
            return EventsReceived(self.url, page)

        raw = await self.client.fetch_raw(
            source.url,
            auth=source.auth,
            self_signed_cert=source.self_signed_cert,
            timeout=source.request_timeout,
        )
        components = self.parser(raw)
        window = FetchWindow.from_reference(
            self._now(), source.maximum_number_of_days, source.include_past_events
        )
        events = normalize(components, window, source.excluded_events, symbol=source.symbol)
        page = self.pager.get_page(
            self.url, self.current_page, source.maximum_entries, events, ttl=source.reload_interval
        )

        self.normalized_events = events
        self.last_error = None
        self._apply_page(page)
        logger.info(
            "Fetched %s: page %d with %d of %d events",
            self.url,
            page.page_number,
            len(page.events),
            page.total_events,
        )
        return EventsReceived(self.url, page)

    def _page_without_network(self) -> Optional[Page]:
        page = self.pager.cached_page(self.url, self.current_page)
        if page is not None or self.normalized_events is None:
            return page

        metadata = self.pager.metadata(self.url)
        if metadata is None:
            return None
        page = self.pager.paginate(
            self.normalized_events, self.current_page, self.source.maximum_entries
        )
        # Expire together with the fetch that produced the events
        remaining = self.source.reload_interval - (
            self.pager.now() - metadata.last_fetch_timestamp
        )
        if remaining > 0:
            self.pager.store_page(self.url, page, remaining)
        return page

    def _apply_page(self, page: Page) -> None:
        self.events = list(page.events)
        self.has_more_events = page.has_more

    def _failure(self, error: FeedError) -> FetchFailed:
        if error.source_url is None:
            error.source_url = self.url
        self.last_error = error
        logger.error("Calendar fetch failed for %s: %s", self.url, error)
        return FetchFailed(self.url, error)

    def _after_cycle(self) -> None:
        if self._closed:
            return
        if self._restart_requested:
            self._restart_requested = False
            self._inflight = asyncio.get_running_loop().create_task(
                self._run_cycle(), name=f"calendarfeed-fetch:{self.url}"
            )
            return
        self._schedule_timer()

    def _schedule_timer(self) -> None:
        self._cancel_timer()
        self._reload_handle = asyncio.get_running_loop().call_later(
            self.source.reload_interval, self._on_timer
        )

    def _on_timer(self) -> None:
        self._reload_handle = None
        if not self._closed:
            self.start_fetch()

    def _cancel_timer(self) -> None:
        if self._reload_handle is not None:
            self._reload_handle.cancel()
            self._reload_handle = None
