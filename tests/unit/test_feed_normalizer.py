"""Unit tests for calendarfeed.feed_normalizer module."""

import datetime
import logging
import random

import pytest

from calendarfeed.feed_datetime import to_epoch_ms
from calendarfeed.feed_exceptions import FeedNormalizeError
from calendarfeed.feed_models import NO_TITLE, FetchWindow, VisibilityClass
from calendarfeed.feed_normalizer import (
    MAX_OCCURRENCES_PER_EVENT,
    RecurringOccurrence,
    SingleEntry,
    build_single,
    expand_occurrences,
    is_excluded,
    normalize,
)
from calendarfeed.feed_parser import ComponentRecord, parse_ics

pytestmark = pytest.mark.unit

UTC = datetime.timezone.utc
DAY_MS = 86_400_000


def utc_ms(*args: int) -> int:
    return to_epoch_ms(datetime.datetime(*args, tzinfo=UTC))


def single(uid: str, start: str, summary: str = "Event", extra: str = "") -> str:
    return f"""
    UID:{uid}
    DTSTART:{start}
    SUMMARY:{summary}
    {extra}
    """


class TestSingleEvents:
    def test_normalize_when_event_today_then_admitted(
        self, sample_ics_simple: str, window: FetchWindow
    ) -> None:
        events = normalize(parse_ics(sample_ics_simple), window)

        assert len(events) == 1
        event = events[0]
        assert event.title == "Team Meeting"
        assert event.start_date == utc_ms(2025, 10, 27, 17, 0)
        assert event.end_date == utc_ms(2025, 10, 27, 18, 0)
        assert event.full_day_event is False
        assert event.is_today is True
        assert event.recurring is False
        assert event.location == "Conference Room A"
        assert event.visibility_class is VisibilityClass.PUBLIC

    def test_normalize_when_outside_window_then_dropped(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(
            single("yesterday", "20251026T170000Z", "Yesterday"),
            single("far-future", "20251215T170000Z", "Far future"),
            single("tomorrow", "20251028T170000Z", "Tomorrow"),
        )

        events = normalize(parse_ics(text), window)

        assert [e.title for e in events] == ["Tomorrow"]
        assert events[0].is_today is False

    def test_normalize_window_bounds_are_inclusive(self, build_ics, window: FetchWindow) -> None:
        # Window: 2025-10-27 07:00Z .. 2025-11-26 07:00Z
        text = build_ics(
            single("at-start", "20251027T070000Z", "At start"),
            single("at-end", "20251126T070000Z", "At end"),
            single("before-start", "20251027T065959Z", "Before start"),
            single("after-end", "20251126T070001Z", "After end"),
        )

        events = normalize(parse_ics(text), window)

        assert [e.title for e in events] == ["At start", "At end"]
        assert events[0].start_date == window.start_ms
        assert events[1].start_date == window.end_ms

    def test_normalize_when_all_day_then_local_midnight(
        self, build_ics, window: FetchWindow, test_timezone
    ) -> None:
        text = build_ics(
            """
            UID:holiday
            DTSTART;VALUE=DATE:20251028
            DTEND;VALUE=DATE:20251029
            SUMMARY:Holiday
            """
        )

        (event,) = normalize(parse_ics(text), window)

        midnight = datetime.datetime(2025, 10, 28, tzinfo=test_timezone)
        assert event.full_day_event is True
        assert event.start_date == to_epoch_ms(midnight)
        assert event.end_date - event.start_date == DAY_MS

    def test_normalize_when_floating_time_then_local_wall_time(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(single("floating", "20251028T090000", "Floating"))

        (event,) = normalize(parse_ics(text), window)

        # 09:00 PDT
        assert event.start_date == utc_ms(2025, 10, 28, 16, 0)
        assert event.end_date == event.start_date

    def test_normalize_when_duration_then_end_from_duration(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(single("dur", "20251028T160000Z", "Timed", "DURATION:PT45M"))

        (event,) = normalize(parse_ics(text), window)

        assert event.end_date - event.start_date == 45 * 60 * 1000

    def test_normalize_when_no_summary_then_default_title(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(
            """
            UID:untitled
            DTSTART:20251028T160000Z
            """
        )

        (event,) = normalize(parse_ics(text), window)

        assert event.title == NO_TITLE

    def test_normalize_keeps_class_and_symbol(self, build_ics, window: FetchWindow) -> None:
        text = build_ics(single("private", "20251028T160000Z", "Doctor", "CLASS:PRIVATE"))

        (event,) = normalize(parse_ics(text), window, symbol="calendar")

        assert event.visibility_class is VisibilityClass.PRIVATE
        assert event.symbol == "calendar"

    def test_normalize_ignores_non_event_components(self, window: FetchWindow) -> None:
        components = {
            "todo": ComponentRecord(
                type="VTODO",
                summary="Todo",
                start=datetime.datetime(2025, 10, 28, 16, tzinfo=UTC),
            )
        }

        assert normalize(components, window) == []

    def test_normalize_when_single_without_start_then_skipped(
        self, window: FetchWindow, caplog: pytest.LogCaptureFixture
    ) -> None:
        components = {
            "broken": ComponentRecord(type="VEVENT", summary="Broken"),
            "ok": ComponentRecord(
                type="VEVENT",
                summary="Fine",
                start=datetime.datetime(2025, 10, 28, 16, tzinfo=UTC),
            ),
        }

        with caplog.at_level(logging.WARNING, logger="calendarfeed.feed_normalizer"):
            events = normalize(components, window)

        assert [e.title for e in events] == ["Fine"]
        assert "broken" in caplog.text

    def test_normalize_when_one_start_unparseable_then_rest_of_feed_kept(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(
            single("bad", "2025BADT170000Z", "Bad"),
            single("good", "20251029T170000Z", "Good"),
        )

        events = normalize(parse_ics(text), window)

        assert [e.title for e in events] == ["Good"]


class TestExclusion:
    def test_is_excluded_is_substring_match(self) -> None:
        assert is_excluded("Daily STANDUP sync", ["standup"])
        assert not is_excluded("Review", ["standup"])

    def test_normalize_excludes_single_events_case_insensitively(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(
            single("a", "20251028T160000Z", "Lunch with Bob"),
            single("b", "20251029T160000Z", "Planning"),
        )

        events = normalize(parse_ics(text), window, excluded_phrases=["LUNCH"])

        assert [e.title for e in events] == ["Planning"]

    def test_normalize_does_not_exclude_recurring_occurrences(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(
            single("single", "20251028T160000Z", "Standup (moved)"),
            single("series", "20251027T160000Z", "Standup", "RRULE:FREQ=DAILY"),
        )

        events = normalize(parse_ics(text), window, excluded_phrases=["standup"])

        assert len(events) == MAX_OCCURRENCES_PER_EVENT
        assert all(e.recurring for e in events)

    def test_normalize_when_no_summary_then_never_excluded(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(
            """
            UID:untitled
            DTSTART:20251028T160000Z
            """
        )

        events = normalize(parse_ics(text), window, excluded_phrases=["title"])

        assert [e.title for e in events] == [NO_TITLE]

    @pytest.mark.parametrize("phrases", [[""], ["   "], []])
    def test_normalize_when_blank_phrase_then_nothing_excluded(
        self, phrases: list[str], sample_ics_simple: str, window: FetchWindow
    ) -> None:
        events = normalize(parse_ics(sample_ics_simple), window, excluded_phrases=phrases)

        assert len(events) == 1


class TestRecurringEvents:
    def test_normalize_when_weekly_series_then_three_occurrences(
        self, build_ics, window: FetchWindow
    ) -> None:
        """10 weekly future occurrences inside a 30-day window yield exactly 3."""
        text = build_ics(
            single(
                "weekly",
                "20251028T160000Z",
                "Weekly sync",
                "DTEND:20251028T170000Z\nRRULE:FREQ=WEEKLY;COUNT=10",
            )
        )

        events = normalize(parse_ics(text), window)

        assert len(events) == 3
        starts = [e.start_date for e in events]
        assert starts[0] == utc_ms(2025, 10, 28, 16, 0)
        assert [b - a for a, b in zip(starts, starts[1:])] == [7 * DAY_MS, 7 * DAY_MS]
        assert all(e.end_date - e.start_date == 3_600_000 for e in events)
        assert all(e.recurring for e in events)

    def test_normalize_when_series_started_long_ago_then_counts_from_window_start(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(single("daily", "20250101T160000Z", "Daily", "RRULE:FREQ=DAILY"))

        events = normalize(parse_ics(text), window)

        assert [e.start_date for e in events] == [
            utc_ms(2025, 10, 27, 16, 0),
            utc_ms(2025, 10, 28, 16, 0),
            utc_ms(2025, 10, 29, 16, 0),
        ]
        assert events[0].is_today is True

    def test_normalize_when_series_reaches_window_end_then_clipped(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(single("late", "20251125T170000Z", "Late", "RRULE:FREQ=DAILY"))

        events = normalize(parse_ics(text), window)

        assert [e.start_date for e in events] == [utc_ms(2025, 11, 25, 17, 0)]
        assert all(window.contains_ms(e.start_date) for e in events)

    def test_normalize_when_exdate_then_occurrence_skipped(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(
            single(
                "exdate",
                "20251027T160000Z",
                "With exdate",
                "RRULE:FREQ=DAILY\nEXDATE:20251028T160000Z",
            )
        )

        events = normalize(parse_ics(text), window)

        assert [e.start_date for e in events] == [
            utc_ms(2025, 10, 27, 16, 0),
            utc_ms(2025, 10, 29, 16, 0),
            utc_ms(2025, 10, 30, 16, 0),
        ]

    def test_normalize_when_moved_instance_then_replaces_slot(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(
            single("series", "20251027T160000Z", "Series", "RRULE:FREQ=DAILY"),
            single(
                "series",
                "20251028T200000Z",
                "Moved",
                "RECURRENCE-ID:20251028T160000Z",
            ),
        )

        events = normalize(parse_ics(text), window)

        assert [(e.title, e.start_date) for e in events] == [
            ("Series", utc_ms(2025, 10, 27, 16, 0)),
            ("Moved", utc_ms(2025, 10, 28, 20, 0)),
            ("Series", utc_ms(2025, 10, 29, 16, 0)),
            ("Series", utc_ms(2025, 10, 30, 16, 0)),
        ]
        assert events[1].recurring is False

    def test_normalize_when_all_day_series_then_full_day_occurrences(
        self, build_ics, window: FetchWindow, test_timezone
    ) -> None:
        text = build_ics(
            """
            UID:weekly-all-day
            DTSTART;VALUE=DATE:20251020
            DTEND;VALUE=DATE:20251021
            SUMMARY:Trash day
            RRULE:FREQ=WEEKLY
            """
        )

        events = normalize(parse_ics(text), window)

        expected = [
            datetime.datetime(2025, 10, 27, tzinfo=test_timezone),
            datetime.datetime(2025, 11, 3, tzinfo=test_timezone),
            datetime.datetime(2025, 11, 10, tzinfo=test_timezone),
        ]
        assert [e.start_date for e in events] == [to_epoch_ms(dt) for dt in expected]
        assert all(e.full_day_event for e in events)

    def test_normalize_when_floating_series_with_utc_until_then_expanded(
        self, build_ics, window: FetchWindow
    ) -> None:
        text = build_ics(
            single(
                "floating-series",
                "20251027T090000",
                "Floating series",
                "RRULE:FREQ=DAILY;UNTIL=20251028T235959Z",
            )
        )

        events = normalize(parse_ics(text), window)

        # 09:00 PDT on both days
        assert [e.start_date for e in events] == [
            utc_ms(2025, 10, 27, 16, 0),
            utc_ms(2025, 10, 28, 16, 0),
        ]

    @pytest.mark.parametrize(
        ("until", "expected_days"),
        [("20251105", [29, 5]), ("20251105T090000", [29]), ("20251105T170000Z", [29, 5])],
    )
    def test_normalize_when_aware_start_with_local_until_then_until_in_start_zone(
        self, build_ics, window: FetchWindow, until: str, expected_days: list[int]
    ) -> None:
        text = build_ics(
            single(
                "weekly-until",
                "20251029T170000Z",
                "Weekly until",
                f"RRULE:FREQ=WEEKLY;UNTIL={until}",
            )
        )

        events = normalize(parse_ics(text), window)

        starts = [datetime.datetime.fromtimestamp(e.start_date / 1000, UTC) for e in events]
        assert [start.day for start in starts] == expected_days
        assert all(start.hour == 17 for start in starts)

    def test_normalize_when_rule_malformed_then_event_skipped(self, window: FetchWindow) -> None:
        start = datetime.datetime(2025, 10, 27, 16, tzinfo=UTC)
        components = {
            "bad-freq": ComponentRecord(
                type="VEVENT", summary="Bad", start=start, rrule="RRULE:FREQ=SOMETIMES"
            ),
            "bad-key": ComponentRecord(
                type="VEVENT", summary="Bad too", start=start, rrule="RRULE:BOGUS=1"
            ),
            "good": ComponentRecord(type="VEVENT", summary="Good", start=start),
        }

        events = normalize(components, window)

        assert [e.title for e in events] == ["Good"]

    def test_expand_occurrences_when_rule_malformed_then_raises(self, window: FetchWindow) -> None:
        record = ComponentRecord(
            type="VEVENT",
            summary="Bad",
            start=datetime.datetime(2025, 10, 27, 16, tzinfo=UTC),
            rrule="RRULE:FREQ=SOMETIMES",
        )

        with pytest.raises(FeedNormalizeError):
            expand_occurrences(record, window)

    def test_expand_occurrences_returns_recurring_variant(self, window: FetchWindow) -> None:
        record = ComponentRecord(
            type="VEVENT",
            summary="Daily",
            start=datetime.datetime(2025, 10, 27, 16, tzinfo=UTC),
            rrule="RRULE:FREQ=DAILY",
        )

        occurrences = expand_occurrences(record, window)

        assert len(occurrences) == MAX_OCCURRENCES_PER_EVENT
        assert all(isinstance(o, RecurringOccurrence) for o in occurrences)
        assert all(o.to_event(window).recurring for o in occurrences)


class TestBuildSingle:
    def test_build_single_returns_single_variant(self, window: FetchWindow) -> None:
        record = ComponentRecord(
            type="VEVENT",
            summary="One-off",
            start=datetime.datetime(2025, 10, 28, 16, tzinfo=UTC),
            end=datetime.datetime(2025, 10, 28, 15, tzinfo=UTC),
        )

        entry = build_single(record, window)

        assert isinstance(entry, SingleEntry)
        # An end before the start is clamped to the start
        assert entry.end == entry.start

    def test_build_single_when_outside_window_then_none(self, window: FetchWindow) -> None:
        record = ComponentRecord(
            type="VEVENT", start=datetime.datetime(2024, 1, 1, 10, tzinfo=UTC)
        )

        assert build_single(record, window) is None


class TestOrdering:
    def test_normalize_sorted_for_any_component_order(self, build_ics, window: FetchWindow) -> None:
        text = build_ics(
            single("c", "20251030T160000Z", "C"),
            single("a", "20251028T160000Z", "A"),
            single("series", "20251027T180000Z", "Series", "RRULE:FREQ=DAILY"),
            single("b", "20251029T090000Z", "B"),
        )
        components = parse_ics(text)
        expected = normalize(components, window)

        starts = [e.start_date for e in expected]
        assert starts == sorted(starts)

        items = list(components.items())
        rng = random.Random(42)
        for _ in range(5):
            rng.shuffle(items)
            assert normalize(dict(items), window) == expected

    def test_normalize_uses_window_reference_for_today(
        self, sample_ics_simple: str, reference_time: datetime.datetime
    ) -> None:
        next_day = FetchWindow.from_reference(reference_time - datetime.timedelta(days=1), 30)

        (event,) = normalize(parse_ics(sample_ics_simple), next_day)

        assert event.is_today is False
