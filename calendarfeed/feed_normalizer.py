"""Normalization of parsed calendar components into canonical events.

Component records are first mapped onto one of two intermediate variants,
``SingleEntry`` or ``RecurringOccurrence``, and only then onto ``CalendarEvent``.
Everything time-relative is derived from the single reference time carried by the
``FetchWindow`` so one invocation is internally consistent.
"""

import datetime
import itertools
import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import ClassVar, Optional, Union

from dateutil.rrule import rruleset, rrulestr

from .feed_datetime import has_time_component, to_epoch_ms, to_local_datetime
from .feed_exceptions import FeedNormalizeError
from .feed_models import NO_TITLE, CalendarEvent, FetchWindow, VisibilityClass
from .feed_parser import ComponentRecord, DateValue

logger = logging.getLogger(__name__)

# Occurrences emitted per recurring event, counted from the window start
MAX_OCCURRENCES_PER_EVENT = 3

EVENT_COMPONENT = "VEVENT"

# RRULE UNTIL; the time part and the UTC marker are optional
_UNTIL_PATTERN = re.compile(r"UNTIL=(\d{8})(?:T(\d{6}))?(Z?)", re.IGNORECASE)


@dataclass(frozen=True)
class _Entry:
    title: str
    start: datetime.datetime
    end: datetime.datetime
    full_day: bool
    visibility_class: VisibilityClass
    location: Optional[str]
    description: Optional[str]
    symbol: Optional[str]

    recurring: ClassVar[bool] = False

    def to_event(self, window: FetchWindow) -> CalendarEvent:
        """Map the entry onto the canonical event model."""
        return CalendarEvent(
            title=self.title,
            start_date=to_epoch_ms(self.start),
            end_date=to_epoch_ms(self.end),
            full_day_event=self.full_day,
            visibility_class=self.visibility_class,
            location=self.location,
            description=self.description,
            is_today=self.start.date() == window.today,
            symbol=self.symbol,
            recurring=self.recurring,
        )


@dataclass(frozen=True)
class SingleEntry(_Entry):
    """A non-recurring event admitted by the window."""


@dataclass(frozen=True)
class RecurringOccurrence(_Entry):
    """One concrete occurrence generated from a recurring event."""

    recurring: ClassVar[bool] = True


Entry = Union[SingleEntry, RecurringOccurrence]


def normalize(
    components: Mapping[str, ComponentRecord],
    window: FetchWindow,
    excluded_phrases: Iterable[str] = (),
    symbol: Optional[str] = None,
) -> list[CalendarEvent]:
    """Convert parsed components into sorted canonical events.

    Only VEVENT records are considered. Single events must start inside the window
    and must not contain an excluded phrase in their title; recurring events are
    expanded into at most MAX_OCCURRENCES_PER_EVENT occurrences inside the window
    and are not subject to the exclusion filter.

    Args:
        components: Parsed component records keyed by component id
        window: Admission window holding the reference time
        excluded_phrases: Case-insensitive title phrases that drop single events
        symbol: Symbol attached to every event of this source

    Returns:
        Events sorted ascending by start date (stable)
    """
    phrases = [phrase.lower() for phrase in excluded_phrases if phrase and phrase.strip()]
    moved_instances = _moved_instance_ids(components.values())

    entries: list[Entry] = []
    for key, record in components.items():
        if record.type != EVENT_COMPONENT:
            continue
        try:
            if record.is_recurring:
                entries.extend(
                    expand_occurrences(
                        record, window, symbol, moved_instances.get(record.uid or "", [])
                    )
                )
                continue

            entry = build_single(record, window, symbol)
        except FeedNormalizeError as e:
            logger.warning("Skipping malformed event %s: %s", key, e)
            continue

        if entry is None or is_excluded(record.summary or "", phrases):
            continue
        entries.append(entry)

    events = [entry.to_event(window) for entry in entries]
    events.sort(key=lambda event: event.start_date)
    logger.debug("Normalized %d events from %d components", len(events), len(components))
    return events


def is_excluded(title: str, lowered_phrases: Iterable[str]) -> bool:
    """Check a title against already lower-cased exclusion phrases."""
    lowered = title.lower()
    return any(phrase in lowered for phrase in lowered_phrases)


def build_single(
    record: ComponentRecord, window: FetchWindow, symbol: Optional[str] = None
) -> Optional[SingleEntry]:
    """Build a single entry, or None when the event starts outside the window.

    Raises:
        FeedNormalizeError: If the record has no start
    """
    if record.start is None:
        raise FeedNormalizeError("Event missing DTSTART")

    start = to_local_datetime(record.start, window.tz)
    if not window.contains_ms(to_epoch_ms(start)):
        return None

    if record.end is not None:
        end = to_local_datetime(record.end, window.tz)
    elif record.duration is not None:
        end = start + record.duration
    else:
        end = start

    return SingleEntry(end=max(end, start), **_shared_fields(record, start, symbol))


def expand_occurrences(
    record: ComponentRecord,
    window: FetchWindow,
    symbol: Optional[str] = None,
    extra_exdates: Iterable[DateValue] = (),
) -> list[RecurringOccurrence]:
    """Expand a recurring record into its first occurrences inside the window.

    Each occurrence keeps the duration of the original event.

    Raises:
        FeedNormalizeError: If the record has no start or an unusable rule
    """
    if record.start is None:
        raise FeedNormalizeError("Recurring event missing DTSTART")

    dtstart = _rule_start(record.start)
    duration = _event_duration(record, window.tz)
    lower, upper = _window_bounds_like(dtstart, window)

    try:
        rule_set = build_rule_set(record, window.tz, extra_exdates)
        between = _occurrences_between(rule_set, lower, upper)
        occurrences = list(itertools.islice(between, MAX_OCCURRENCES_PER_EVENT))
    except (ValueError, TypeError) as e:
        raise FeedNormalizeError(f"Invalid recurrence rule {record.rrule!r}: {e}") from e

    expanded = []
    for occurrence in occurrences:
        start = to_local_datetime(occurrence, window.tz)
        expanded.append(
            RecurringOccurrence(end=start + duration, **_shared_fields(record, start, symbol))
        )
    return expanded


def build_rule_set(
    record: ComponentRecord,
    tz: datetime.tzinfo,
    extra_exdates: Iterable[DateValue] = (),
) -> rruleset:
    """Build a dateutil rule set for a recurring record, EXDATEs applied.

    Raises:
        FeedNormalizeError: If the RRULE text cannot be parsed
    """
    if record.start is None or record.rrule is None:
        raise FeedNormalizeError("Recurring event needs DTSTART and RRULE")

    dtstart = _rule_start(record.start)
    try:
        rule_set = _parse_rule(record.rrule, dtstart)
    except (ValueError, TypeError) as e:
        raise FeedNormalizeError(f"Invalid recurrence rule {record.rrule!r}: {e}") from e

    for exdate in itertools.chain(record.exdates, extra_exdates):
        rule_set.exdate(_like(exdate, dtstart, tz))
    return rule_set


def _parse_rule(text: str, dtstart: datetime.datetime) -> rruleset:
    if dtstart.tzinfo is not None:
        text = _UNTIL_PATTERN.sub(lambda match: _until_as_utc(match, dtstart.tzinfo), text)
    try:
        return rrulestr(text, dtstart=dtstart, forceset=True)
    except ValueError:
        if dtstart.tzinfo is not None:
            raise
        # Floating start with a UTC UNTIL: compare UNTIL as wall time
        return rrulestr(text, dtstart=dtstart, forceset=True, ignoretz=True)


def _until_as_utc(match: "re.Match[str]", tz: datetime.tzinfo) -> str:
    """Rewrite a date or local UNTIL in the timezone of DTSTART as UTC.

    A date-only UNTIL covers the whole day, so it becomes the end of that day.
    """
    day, time_of_day, utc_marker = match.groups()
    if utc_marker:
        return match.group(0)
    until = datetime.datetime.strptime(day + (time_of_day or "235959"), "%Y%m%d%H%M%S")
    until_utc = until.replace(tzinfo=tz).astimezone(datetime.timezone.utc)
    return f"UNTIL={until_utc:%Y%m%dT%H%M%SZ}"


def _occurrences_between(
    rule_set: rruleset, lower: datetime.datetime, upper: datetime.datetime
) -> Iterator[datetime.datetime]:
    return itertools.takewhile(
        lambda occurrence: occurrence <= upper, rule_set.xafter(lower, inc=True)
    )


def _shared_fields(
    record: ComponentRecord, start: datetime.datetime, symbol: Optional[str]
) -> dict[str, object]:
    summary = record.summary
    return {
        "title": summary if summary and summary.strip() else NO_TITLE,
        "start": start,
        "full_day": not has_time_component(record.start),
        "visibility_class": VisibilityClass.from_ics(record.visibility_class),
        "location": record.location or None,
        "description": record.description or None,
        "symbol": symbol,
    }


def _rule_start(value: DateValue) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    return datetime.datetime(value.year, value.month, value.day)


def _window_bounds_like(
    dtstart: datetime.datetime, window: FetchWindow
) -> tuple[datetime.datetime, datetime.datetime]:
    # dateutil compares occurrences with the bounds, so awareness must match dtstart
    if dtstart.tzinfo is not None:
        return window.start, window.end
    return window.start.replace(tzinfo=None), window.end.replace(tzinfo=None)


def _like(value: DateValue, dtstart: datetime.datetime, tz: datetime.tzinfo) -> datetime.datetime:
    if not isinstance(value, datetime.datetime):
        value = datetime.datetime.combine(value, dtstart.time())
    if dtstart.tzinfo is None:
        return value.astimezone(tz).replace(tzinfo=None) if value.tzinfo else value
    if value.tzinfo is None:
        return value.replace(tzinfo=dtstart.tzinfo)
    return value


def _event_duration(record: ComponentRecord, tz: datetime.tzinfo) -> datetime.timedelta:
    if record.start is None:
        return datetime.timedelta(0)
    if record.end is not None:
        duration = to_local_datetime(record.end, tz) - to_local_datetime(record.start, tz)
    elif record.duration is not None:
        duration = record.duration
    else:
        duration = datetime.timedelta(0)
    return max(duration, datetime.timedelta(0))


def _moved_instance_ids(records: Iterable[ComponentRecord]) -> dict[str, list[DateValue]]:
    """Collect RECURRENCE-ID values of overridden instances, keyed by UID.

    A moved instance is published as its own VEVENT; the slot it replaces is
    excluded from the master's expansion.
    """
    moved: dict[str, list[DateValue]] = {}
    for record in records:
        if record.type == EVENT_COMPONENT and record.recurrence_id is not None and record.uid:
            if not record.is_recurring:
                moved.setdefault(record.uid, []).append(record.recurrence_id)
    return moved
