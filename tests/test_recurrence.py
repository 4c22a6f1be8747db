import sys
from pathlib import Path
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from familycalendar.calendar import RecurringEvent
from familycalendar.recurrence import RecurrenceType, expand, validate

UTC = ZoneInfo("UTC")


def _recurring(**overrides) -> RecurringEvent:
    data = dict(
        id=1,
        calendar_id=1,
        title="Standup",
        start_time="2025-01-01T09:00:00+00:00",
        end_time="2025-01-01T09:30:00+00:00",
        timezone="UTC",
        recurrence_type=RecurrenceType.Daily,
        recurrence_interval=1,
    )
    data.update(overrides)
    return RecurringEvent(**data)


def _window(start: str, end: str) -> tuple[datetime, datetime]:
    return datetime.fromisoformat(start), datetime.fromisoformat(end)


def test_weekly_keeps_wall_clock_time_across_dst():
    rec = _recurring(
        start_time="2025-03-03T09:00:00-05:00",
        end_time="2025-03-03T10:00:00-05:00",
        timezone="America/New_York",
        recurrence_type=RecurrenceType.Weekly,
    )

    occurrences = list(expand(rec, *_window("2025-03-01T00:00:00+00:00", "2025-03-20T00:00:00+00:00")))

    assert [o.start for o in occurrences] == [
        datetime(2025, 3, 3, 14, 0, tzinfo=UTC),
        datetime(2025, 3, 10, 13, 0, tzinfo=UTC),
        datetime(2025, 3, 17, 13, 0, tzinfo=UTC),
    ]
    assert [o.event_id for o in occurrences] == ["r1-0", "r1-1", "r1-2"]
    assert all(o.end - o.start == timedelta(hours=1) for o in occurrences)


def test_count_limits_occurrences():
    rec = _recurring(recurrence_count=3)

    occurrences = list(expand(rec, *_window("2024-12-01T00:00:00+00:00", "2025-02-01T00:00:00+00:00")))

    assert len(occurrences) == 3


def test_identifiers_stay_stable_when_window_moves():
    rec = _recurring()

    [occurrence] = expand(rec, *_window("2025-01-05T00:00:00+00:00", "2025-01-06T00:00:00+00:00"))

    assert occurrence.event_id == "r1-4"
    assert occurrence.start == datetime(2025, 1, 5, 9, 0, tzinfo=UTC)
    assert occurrence.title == "Standup"
    assert occurrence.calendar_id == 1


def test_monthly_skips_months_without_the_day():
    rec = _recurring(
        start_time="2025-01-31T09:00:00+00:00",
        end_time="2025-01-31T10:00:00+00:00",
        recurrence_type=RecurrenceType.Monthly,
    )

    occurrences = list(expand(rec, *_window("2025-01-01T00:00:00+00:00", "2025-06-01T00:00:00+00:00")))

    assert [o.start.date().isoformat() for o in occurrences] == [
        "2025-01-31",
        "2025-03-31",
        "2025-05-31",
    ]


def test_yearly_interval():
    rec = _recurring(recurrence_type="yearly", recurrence_interval=2)

    occurrences = list(expand(rec, *_window("2025-01-01T00:00:00+00:00", "2030-01-01T00:00:00+00:00")))

    assert [o.start.year for o in occurrences] == [2025, 2027, 2029]


def test_weekly_interval_and_until():
    rec = _recurring(
        recurrence_type=RecurrenceType.Weekly,
        recurrence_interval=2,
        until="2025-02-12T23:59:59+00:00",
    )

    occurrences = list(expand(rec, *_window("2025-01-01T00:00:00+00:00", "2025-12-31T00:00:00+00:00")))

    assert [o.start.date().isoformat() for o in occurrences] == [
        "2025-01-01",
        "2025-01-15",
        "2025-01-29",
        "2025-02-12",
    ]


def test_occurrence_overlapping_window_start_is_included():
    rec = _recurring(end_time="2025-01-01T12:00:00+00:00")

    occurrences = list(expand(rec, *_window("2025-01-02T10:00:00+00:00", "2025-01-02T11:00:00+00:00")))

    assert [o.event_id for o in occurrences] == ["r1-1"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"recurrence_interval": 0},
        {"recurrence_count": 0},
        {"end_time": "2024-12-31T09:00:00+00:00"},
        {"start_time": "yesterday"},
        {"recurrence_type": "fortnightly"},
    ],
)
def test_invalid_recurrences_are_rejected(overrides):
    rec = _recurring(**overrides)

    with pytest.raises(ValueError):
        validate(rec)
    with pytest.raises(ValueError):
        list(expand(rec, *_window("2025-01-01T00:00:00+00:00", "2025-01-02T00:00:00+00:00")))


def test_unbounded_yearly_rule_stops_at_end_of_calendar():
    rec = _recurring(
        start_time="2024-02-29T09:00:00+00:00",
        end_time="2024-02-29T10:00:00+00:00",
        recurrence_type=RecurrenceType.Yearly,
    )

    occurrences = list(expand(rec, *_window("9998-12-27T00:00:00+00:00", "9999-02-07T00:00:00+00:00")))

    assert occurrences == []


def test_unbounded_daily_rule_stops_at_end_of_calendar():
    rec = _recurring(
        start_time="9999-12-30T09:00:00+00:00",
        end_time="9999-12-30T10:00:00+00:00",
    )

    occurrences = list(expand(rec, *_window("9999-12-31T00:00:00+00:00", "9999-12-31T23:00:00+00:00")))

    assert [o.event_id for o in occurrences] == ["r1-1"]
