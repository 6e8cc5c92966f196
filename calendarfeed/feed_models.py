"""Data models for calendar feed processing."""

import base64
import datetime
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .feed_datetime import start_of_day, to_epoch_ms

NO_TITLE = "No Title"


class AuthMethod(str, Enum):
    """Supported authentication methods for calendar sources."""

    BASIC = "basic"
    BEARER = "bearer"


class FeedAuth(BaseModel):
    """Authentication configuration for a calendar source."""

    method: AuthMethod = AuthMethod.BASIC
    user: Optional[str] = None
    password: Optional[str] = Field(default=None, alias="pass")
    token: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    def get_headers(self) -> dict[str, str]:
        """Get HTTP headers for authentication.

        Bearer tokens may be supplied as ``token`` or, for older configurations,
        as ``pass``.
        """
        if self.method == AuthMethod.BEARER:
            token = self.token or self.password
            return {"Authorization": f"Bearer {token}"} if token else {}

        credentials = f"{self.user or ''}:{self.password or ''}"
        encoded = base64.b64encode(credentials.encode()).decode()
        return {"Authorization": f"Basic {encoded}"}


class FeedSource(BaseModel):
    """Configuration for one calendar source."""

    url: str = Field(..., description="ICS calendar URL")
    symbol: Optional[str] = Field(default=None, description="Symbol attached to every event")
    auth: Optional[FeedAuth] = Field(default=None, description="Authentication configuration")
    self_signed_cert: bool = Field(
        default=False, description="Skip TLS certificate validation for this source only"
    )

    maximum_entries: int = Field(default=10, gt=0, description="Events per page")
    maximum_number_of_days: int = Field(default=365, ge=0, description="Days ahead to admit")
    reload_interval: float = Field(default=300.0, gt=0, description="Reload interval in seconds")
    request_timeout: float = Field(default=10.0, gt=0, description="HTTP timeout in seconds")
    excluded_events: list[str] = Field(
        default_factory=list, description="Title phrases excluded from single events"
    )
    include_past_events: bool = Field(
        default=False, description="Also admit events from the past maximum_number_of_days"
    )


class VisibilityClass(str, Enum):
    """iCalendar CLASS values."""

    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"
    CONFIDENTIAL = "CONFIDENTIAL"

    @classmethod
    def from_ics(cls, value: object) -> "VisibilityClass":
        """Map a raw CLASS property to a member, defaulting to PUBLIC."""
        if value is None:
            return cls.PUBLIC
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.PUBLIC


class CalendarEvent(BaseModel):
    """Canonical calendar event produced by the normalizer."""

    title: str = Field(..., min_length=1, description="Event title")
    start_date: int = Field(..., description="Start as epoch milliseconds")
    end_date: int = Field(..., description="End as epoch milliseconds")
    full_day_event: bool = False
    visibility_class: VisibilityClass = VisibilityClass.PUBLIC
    location: Optional[str] = None
    description: Optional[str] = None
    is_today: bool = False
    symbol: Optional[str] = None
    recurring: bool = False

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_end_after_start(self) -> "CalendarEvent":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class Page(BaseModel):
    """One page of normalized events for a source."""

    events: list[CalendarEvent] = Field(default_factory=list)
    has_more: bool = False
    total_events: int = 0
    page_number: int = Field(default=1, ge=1)

    model_config = ConfigDict(frozen=True)

    def total_pages(self, page_size: int) -> int:
        """Number of pages needed for ``total_events`` at ``page_size``."""
        return math.ceil(self.total_events / page_size)


class FetchMetadata(BaseModel):
    """Per-source fetch bookkeeping stored next to cached pages."""

    last_fetch_timestamp: float
    total_pages: int = 0

    model_config = ConfigDict(frozen=True)


@dataclass(frozen=True)
class FetchWindow:
    """Bounded interval used to admit events, anchored on one reference time.

    Both bounds are inclusive.
    """

    reference_time: datetime.datetime
    start: datetime.datetime
    end: datetime.datetime

    @classmethod
    def from_reference(
        cls,
        reference_time: datetime.datetime,
        maximum_number_of_days: int,
        include_past_events: bool = False,
    ) -> "FetchWindow":
        """Build the window ``[today, today + days]`` for an aware reference time.

        Args:
            reference_time: Aware "now" in the local timezone
            maximum_number_of_days: Days ahead of today that are admitted
            include_past_events: Also admit the same number of days before today
        """
        if reference_time.tzinfo is None:
            raise ValueError("reference_time must be timezone-aware")
        today = start_of_day(reference_time)
        # Fixed 24h days, independent of DST transitions inside the window
        days = datetime.timedelta(days=maximum_number_of_days)
        utc_today = today.astimezone(datetime.timezone.utc)
        tz = reference_time.tzinfo
        start = (utc_today - days).astimezone(tz) if include_past_events else today
        end = (utc_today + days).astimezone(tz)
        return cls(reference_time=reference_time, start=start, end=end)

    @property
    def tz(self) -> datetime.tzinfo:
        """Local timezone of the window."""
        return self.reference_time.tzinfo  # type: ignore[return-value]

    @property
    def today(self) -> datetime.date:
        """Local calendar date of the reference time."""
        return self.reference_time.date()

    @property
    def start_ms(self) -> int:
        return to_epoch_ms(self.start)

    @property
    def end_ms(self) -> int:
        return to_epoch_ms(self.end)

    def contains_ms(self, value: int) -> bool:
        """Check whether an epoch-millisecond timestamp lies inside the window."""
        return self.start_ms <= value <= self.end_ms
