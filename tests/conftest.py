"""Shared fixtures for calendarfeed tests."""

import datetime
from collections.abc import AsyncIterator, Generator
from typing import Any, Callable
from zoneinfo import ZoneInfo

import httpx
import pytest

from calendarfeed.feed_models import CalendarEvent, FetchWindow
from calendarfeed.http_client import close_all_clients

CALENDARFEED_ENV_VARS = (
    "CALENDARFEED_TEST_TIME",
    "CALENDARFEED_DEBUG",
    "CALENDARFEED_LOG_LEVEL",
    "CALENDARFEED_ICS_URL",
    "CALENDARFEED_RELOAD_INTERVAL",
    "CALENDARFEED_TIMEZONE",
)


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None, Any, None]:
    """Clear calendarfeed environment overrides before each test."""
    for name in CALENDARFEED_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True)
async def cleanup_shared_http_clients() -> AsyncIterator[None]:
    """Close shared httpx clients after every test."""
    yield
    await close_all_clients()


@pytest.fixture
def test_timezone() -> ZoneInfo:
    """Deterministic local timezone; DST ends inside the default window."""
    return ZoneInfo("America/Los_Angeles")


@pytest.fixture
def reference_time(test_timezone: ZoneInfo) -> datetime.datetime:
    """Monday 2025-10-27 08:20 local time (15:20 UTC)."""
    return datetime.datetime(2025, 10, 27, 8, 20, tzinfo=test_timezone)


@pytest.fixture
def window(reference_time: datetime.datetime) -> FetchWindow:
    """30-day window starting at local midnight of the reference day."""
    return FetchWindow.from_reference(reference_time, maximum_number_of_days=30)


@pytest.fixture
def make_event() -> Callable[..., CalendarEvent]:
    """Factory for canonical events starting at a given epoch-ms offset."""

    def _make(title: str = "Event", start: int = 0, **kwargs: Any) -> CalendarEvent:
        kwargs.setdefault("end_date", start + 3_600_000)
        return CalendarEvent(title=title, start_date=start, **kwargs)

    return _make


@pytest.fixture
def ics_transport() -> Callable[..., httpx.MockTransport]:
    """Factory for a MockTransport answering every request with one response.

    The returned transport keeps the received requests in ``transport.requests``.
    """

    def _make(body: str = "", status_code: int = 200) -> httpx.MockTransport:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(status_code, text=body)

        transport = httpx.MockTransport(handler)
        transport.requests = requests  # type: ignore[attr-defined]
        return transport

    return _make


def ics_calendar(*events: str) -> str:
    """Wrap VEVENT bodies into a minimal VCALENDAR document."""
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//calendarfeed test//EN"]
    for event in events:
        lines.append("BEGIN:VEVENT")
        lines.extend(line.strip() for line in event.splitlines() if line.strip())
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


@pytest.fixture
def build_ics() -> Callable[..., str]:
    """Builder turning VEVENT bodies into an ICS document."""
    return ics_calendar


@pytest.fixture
def sample_ics_simple() -> str:
    """
    Return an ICS calendar with a single event on the reference day.

    - Event: "Team Meeting" on 2025-10-27 10:00-11:00 local (17:00-18:00 UTC)
    """
    return ics_calendar(
        """
        UID:simple-001@calendarfeed.test
        DTSTAMP:20251020T090000Z
        DTSTART:20251027T170000Z
        DTEND:20251027T180000Z
        SUMMARY:Team Meeting
        LOCATION:Conference Room A
        DESCRIPTION:Weekly team sync meeting
        """
    )


@pytest.fixture
def sample_ics_many() -> str:
    """Return an ICS calendar with 25 future daily single events, one per day."""
    events = []
    for day in range(25):
        start = datetime.datetime(2025, 10, 28, 17, tzinfo=datetime.timezone.utc)
        start += datetime.timedelta(days=day)
        end = start + datetime.timedelta(hours=1)
        events.append(
            f"""
            UID:many-{day:02d}@calendarfeed.test
            DTSTAMP:20251020T090000Z
            DTSTART:{start:%Y%m%dT%H%M%SZ}
            DTEND:{end:%Y%m%dT%H%M%SZ}
            SUMMARY:Event {day:02d}
            """
        )
    return ics_calendar(*events)
