"""Date and time helpers for calendar feed processing.

All event timestamps handed to consumers are integer epoch milliseconds. ICS values
arrive as ``date`` (all-day), naive ``datetime`` (floating time) or aware ``datetime``;
naive and date-only values are interpreted in the local timezone of the feed engine.
"""

from __future__ import annotations

import datetime
import logging
import os
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
MILLISECOND = datetime.timedelta(milliseconds=1)

TEST_TIME_ENV = "CALENDARFEED_TEST_TIME"


def get_local_timezone(name: str | None = None) -> datetime.tzinfo:
    """Resolve the timezone used for "today" and floating times.

    Args:
        name: Optional IANA timezone name (e.g. "Europe/Amsterdam")

    Returns:
        ZoneInfo for a valid name, otherwise the server's local timezone
    """
    if name:
        try:
            return ZoneInfo(name)
        except Exception:
            logger.warning("Invalid timezone %r, falling back to server local time", name)
    local = datetime.datetime.now().astimezone().tzinfo
    return local if local is not None else datetime.timezone.utc


def now_local(tz: datetime.tzinfo | None = None) -> datetime.datetime:
    """Return the current time as an aware datetime in ``tz``.

    Can be overridden for testing via the CALENDARFEED_TEST_TIME environment variable
    (ISO 8601, e.g. "2025-10-27T08:20:00-07:00"). Naive override values are taken as
    being in ``tz``.
    """
    tz = tz or get_local_timezone()
    test_time = os.environ.get(TEST_TIME_ENV)
    if test_time:
        try:
            dt = date_parser.isoparse(test_time)
            if dt.tzinfo is None:
                return dt.replace(tzinfo=tz)
            return dt.astimezone(tz)
        except Exception as e:
            logger.warning("Failed to parse %s=%r: %s", TEST_TIME_ENV, test_time, e)
    return datetime.datetime.now(tz)


def start_of_day(dt: datetime.datetime) -> datetime.datetime:
    """Return midnight of the calendar day of ``dt`` in its own timezone."""
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def has_time_component(value: object) -> bool:
    """Check whether an ICS start value carries a time of day."""
    return hasattr(value, "hour")


def to_local_datetime(
    value: datetime.date | datetime.datetime, tz: datetime.tzinfo
) -> datetime.datetime:
    """Convert an ICS date/datetime value into an aware datetime in ``tz``.

    Args:
        value: ``date`` for all-day values, naive or aware ``datetime`` otherwise
        tz: Local timezone used for date-only and floating values

    Returns:
        Timezone-aware datetime in ``tz``
    """
    if not isinstance(value, datetime.datetime):
        return datetime.datetime(value.year, value.month, value.day, tzinfo=tz)
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def to_epoch_ms(dt: datetime.datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds."""
    return (dt - EPOCH) // MILLISECOND


def from_epoch_ms(value: int, tz: datetime.tzinfo) -> datetime.datetime:
    """Convert epoch milliseconds back to an aware datetime in ``tz``."""
    return (EPOCH + value * MILLISECOND).astimezone(tz)
