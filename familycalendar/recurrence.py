from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import MAXYEAR, datetime, timedelta
from enum import Enum
from typing import Iterator, Optional

from .layout import ScheduledEvent
from .time_utils import parse_datetime, resolve_timezone, to_civil, to_utc


logger = logging.getLogger(__name__)


class RecurrenceType(str, Enum):
    Daily = "daily"
    Weekly = "weekly"
    Monthly = "monthly"
    Yearly = "yearly"


@dataclass
class _Rule:
    first_start: datetime
    duration: timedelta
    type: RecurrenceType
    interval: int
    count: Optional[int]
    until: Optional[datetime]


def _add_months(dt: datetime, months: int) -> Optional[datetime]:
    """Add months to a datetime, or ``None`` if the day doesn't exist then.

    Raises ``OverflowError`` once the result would fall past ``MAXYEAR``.
    """
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    if year > MAXYEAR:
        raise OverflowError(f"Year {year} is out of range")
    try:
        return dt.replace(year=year, month=month)
    except ValueError:
        return None


def _occurrence_start(rule: _Rule, step: int) -> Optional[datetime]:
    # Steps are taken from the first start on the civil clock so that
    # occurrences keep their wall-clock time across DST changes.
    first = rule.first_start
    if rule.type == RecurrenceType.Daily:
        return first + timedelta(days=step * rule.interval)
    if rule.type == RecurrenceType.Weekly:
        return first + timedelta(weeks=step * rule.interval)
    if rule.type == RecurrenceType.Monthly:
        return _add_months(first, step * rule.interval)
    if rule.type == RecurrenceType.Yearly:
        return _add_months(first, 12 * step * rule.interval)
    raise ValueError(f"Unsupported recurrence type: {rule.type}")


def _parse_rule(rec) -> _Rule:
    zone = resolve_timezone(rec.timezone)
    start = parse_datetime(rec.start_time)
    end = parse_datetime(rec.end_time)
    duration = to_utc(end) - to_utc(start)
    if duration < timedelta(0):
        raise ValueError("Recurring event ends before it starts")
    if rec.recurrence_interval is None or rec.recurrence_interval < 1:
        raise ValueError("Recurrence interval must be at least 1")
    if rec.recurrence_count is not None and rec.recurrence_count < 1:
        raise ValueError("Recurrence count must be at least 1")
    return _Rule(
        first_start=to_civil(start, zone),
        duration=duration,
        type=RecurrenceType(rec.recurrence_type),
        interval=rec.recurrence_interval,
        count=rec.recurrence_count,
        until=to_utc(parse_datetime(rec.until)) if rec.until else None,
    )


def validate(rec) -> None:
    """Raise ``ValueError`` if ``rec`` cannot be expanded."""
    _parse_rule(rec)


def expand(rec, window_start: datetime, window_end: datetime) -> Iterator[ScheduledEvent]:
    """Yield the occurrences of ``rec`` that intersect the window.

    Occurrences are numbered from the first one, whether or not it falls in
    the window, so identifiers stay stable as the window moves.
    """
    rule = _parse_rule(rec)
    window_start = to_utc(window_start)
    window_end = to_utc(window_end)
    emitted = 0
    step = 0
    while rule.count is None or emitted < rule.count:
        try:
            civil_start = _occurrence_start(rule, step)
            step += 1
            if civil_start is None:
                continue
            start = to_utc(civil_start)
            end = start + rule.duration
        except OverflowError:
            logger.debug("Recurring event %s runs past the end of the calendar", rec.id)
            return
        if rule.until is not None and start > rule.until:
            return
        if start >= window_end:
            return
        index = emitted
        emitted += 1
        if end > window_start:
            yield ScheduledEvent(
                event_id=f"r{rec.id}-{index}",
                title=rec.title,
                calendar_id=rec.calendar_id,
                start=start,
                end=end,
                all_day=bool(rec.all_day),
                description=rec.description or "",
            )
