"""iCalendar parsing into flat component records.

Wraps the ``icalendar`` library and turns raw ICS text into a mapping of
component id -> ``ComponentRecord``. Records keep the decoded property values;
interpreting them (windowing, recurrence expansion) is the normalizer's job.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from icalendar import Calendar

from .feed_exceptions import FeedParseError

logger = logging.getLogger(__name__)

DateValue = Union[datetime.date, datetime.datetime]


@dataclass
class ComponentRecord:
    """Decoded properties of one calendar component (VEVENT, VTODO, VTIMEZONE, ...)."""

    type: str
    uid: Optional[str] = None
    summary: Optional[str] = None
    start: Optional[DateValue] = None
    end: Optional[DateValue] = None
    duration: Optional[datetime.timedelta] = None
    location: Optional[str] = None
    description: Optional[str] = None
    visibility_class: Optional[str] = None
    rrule: Optional[str] = None
    exdates: list[DateValue] = field(default_factory=list)
    recurrence_id: Optional[DateValue] = None

    @property
    def is_recurring(self) -> bool:
        return self.rrule is not None


def parse_ics(raw_text: str) -> dict[str, ComponentRecord]:
    """Parse raw ICS text into component records.

    Args:
        raw_text: Raw ICS document

    Returns:
        Mapping of component id to record, in document order

    Raises:
        FeedParseError: If the text is empty or not iCalendar data
    """
    if not raw_text or not raw_text.strip():
        raise FeedParseError("Empty ICS content")
    if "BEGIN:VCALENDAR" not in raw_text:
        raise FeedParseError("Content does not appear to be iCalendar data")

    try:
        calendar = Calendar.from_ical(raw_text)
    except Exception as e:
        raise FeedParseError(f"Failed to parse ICS content: {e}") from e

    records: dict[str, ComponentRecord] = {}
    for index, component in enumerate(calendar.walk()):
        if component.name == "VCALENDAR":
            continue
        try:
            record = _to_record(component)
        except Exception as e:
            # A broken property only loses its own component
            logger.warning("Skipping malformed %s component #%d: %s", component.name, index, e)
            continue
        records[_record_key(records, record, index)] = record

    logger.debug("Parsed %d calendar components", len(records))
    return records


def _record_key(records: dict[str, ComponentRecord], record: ComponentRecord, index: int) -> str:
    base = record.uid or f"{record.type.lower()}-{index}"
    key = base
    suffix = 1
    while key in records:
        suffix += 1
        key = f"{base}/{suffix}"
    return key


def _to_record(component: Any) -> ComponentRecord:
    return ComponentRecord(
        type=str(component.name),
        uid=_text(component.get("UID")),
        summary=_text(component.get("SUMMARY")),
        start=_date_value(component.get("DTSTART")),
        end=_date_value(component.get("DTEND")),
        duration=_duration_value(component.get("DURATION")),
        location=_text(component.get("LOCATION")),
        description=_text(component.get("DESCRIPTION")),
        visibility_class=_text(component.get("CLASS")),
        rrule=_rrule_text(component.get("RRULE")),
        exdates=_exdate_values(component.get("EXDATE")),
        recurrence_id=_date_value(component.get("RECURRENCE-ID")),
    )


def _text(prop: Any) -> Optional[str]:
    if prop is None:
        return None
    if isinstance(prop, list):
        prop = prop[0] if prop else None
        if prop is None:
            return None
    return str(prop)


def _date_value(prop: Any) -> Optional[DateValue]:
    if prop is None:
        return None
    value = getattr(prop, "dt", prop)
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value
    return None


def _duration_value(prop: Any) -> Optional[datetime.timedelta]:
    if prop is None:
        return None
    value = getattr(prop, "dt", prop)
    return value if isinstance(value, datetime.timedelta) else None


def _rrule_text(prop: Any) -> Optional[str]:
    if prop is None:
        return None
    rules = prop if isinstance(prop, list) else [prop]
    lines = []
    for rule in rules:
        text = rule.to_ical().decode("utf-8") if hasattr(rule, "to_ical") else str(rule)
        lines.append(f"RRULE:{text}")
    return "\n".join(lines) if lines else None


def _exdate_values(prop: Any) -> list[DateValue]:
    if prop is None:
        return []
    values: list[DateValue] = []
    for entry in prop if isinstance(prop, list) else [prop]:
        for item in getattr(entry, "dts", [entry]):
            value = _date_value(item)
            if value is not None:
                values.append(value)
    return values
