"""Day/week/month geometry for calendar views.

Everything here is a pure function of the events handed in, the view day,
the display timezone and ``now``.  Nothing is cached between calls, so a
host may re-run a pass on every timer tick or resize.

Vertical placement maps civil time of day onto ``[0, 1]`` of the day
column.  Horizontal placement splits the column between events of the same
overlap group.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .time_utils import (
    MINUTES_PER_DAY,
    civil_minutes,
    ensure_tz,
    parse_datetime,
    resolve_timezone,
    to_civil,
    to_utc,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledEvent:
    """An event with parsed, absolute (UTC) start and end instants."""

    event_id: str
    title: str
    calendar_id: int
    start: datetime
    end: datetime
    all_day: bool = False
    description: str = ""

    @classmethod
    def from_event(cls, event) -> ScheduledEvent:
        """Build from a stored event.

        Raises ``ValueError`` if either timestamp does not parse or the event
        ends before it starts.
        """
        start = to_utc(parse_datetime(event.start_time))
        end = to_utc(parse_datetime(event.end_time))
        if end < start:
            raise ValueError(f"Event {event.id} ends before it starts")
        return cls(
            event_id=str(event.id),
            title=event.title,
            calendar_id=event.calendar_id,
            start=start,
            end=end,
            all_day=bool(event.all_day),
            description=event.description or "",
        )


@dataclass(frozen=True)
class CalendarStyle:
    name: str
    color: str


class CalendarColors:
    """Lookup of display styles by calendar id."""

    def __init__(self, styles: Mapping[int, CalendarStyle] | None = None):
        self._styles = dict(styles or {})

    def color_of(self, calendar_id: int) -> Optional[CalendarStyle]:
        """Return the style for ``calendar_id`` or ``None`` if it is unknown."""
        return self._styles.get(calendar_id)

    def __contains__(self, calendar_id: object) -> bool:
        return calendar_id in self._styles

    def __len__(self) -> int:
        return len(self._styles)


@dataclass
class LayoutSettings:
    min_height_minutes: int = 15
    # Space between adjacent columns, as a fraction of the day column width.
    gutter: float = 0.01


DEFAULT_SETTINGS = LayoutSettings()


@dataclass
class EventBox:
    event_id: str
    title: str
    calendar_id: int
    color: Optional[str]
    top_fraction: float
    height_fraction: float
    column: int
    columns_in_group: int
    left_fraction: float
    width_fraction: float
    continues_from_prev_day: bool
    continues_to_next_day: bool
    is_past: bool
    all_day: bool
    start: datetime
    end: datetime
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "title": self.title,
            "description": self.description,
            "calendar_id": self.calendar_id,
            "color": self.color,
            "top_fraction": self.top_fraction,
            "height_fraction": self.height_fraction,
            "column": self.column,
            "columns_in_group": self.columns_in_group,
            "left_fraction": self.left_fraction,
            "width_fraction": self.width_fraction,
            "continues_from_prev_day": self.continues_from_prev_day,
            "continues_to_next_day": self.continues_to_next_day,
            "is_past": self.is_past,
            "all_day": self.all_day,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }


@dataclass
class MonthEntry:
    event_id: str
    title: str
    color: str
    is_past: bool
    all_day: bool
    start: datetime

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "title": self.title,
            "color": self.color,
            "is_past": self.is_past,
            "all_day": self.all_day,
            "start": self.start.isoformat(),
        }


def load_events(events: Iterable) -> List[ScheduledEvent]:
    """Parse stored events, dropping any whose timestamps are unusable."""
    loaded: List[ScheduledEvent] = []
    for event in events:
        if isinstance(event, ScheduledEvent):
            loaded.append(event)
            continue
        try:
            loaded.append(ScheduledEvent.from_event(event))
        except (ValueError, TypeError) as exc:
            logger.warning("Skipping event %s with invalid times: %s", event.id, exc)
    return loaded


def _zone(tz: tzinfo | str | None) -> tzinfo:
    if isinstance(tz, tzinfo):
        return tz
    return resolve_timezone(tz)


def day_bounds(day: date, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Return the UTC instants of civil midnight starting and ending ``day``."""
    start = datetime.combine(day, time(), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time(), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def events_for_day(
    events: Sequence[ScheduledEvent], day: date, tz: tzinfo | str | None
) -> List[ScheduledEvent]:
    """Return the events whose ``[start, end)`` touches ``day`` in ``tz``."""
    day_start, day_end = day_bounds(day, _zone(tz))
    return [e for e in events if e.start < day_end and e.end > day_start]


def overlaps(a: ScheduledEvent, b: ScheduledEvent) -> bool:
    return a.start < b.end and a.end > b.start


def group_overlapping(day_events: Sequence[ScheduledEvent]) -> List[List[ScheduledEvent]]:
    """Greedily split ``day_events`` into groups of overlapping events.

    Each event joins the first existing group holding an event it overlaps,
    or starts a new group.  This is not a minimal partition: with A-B and
    B-C overlapping but not A-C, all three land in one group.  Order within
    and between groups follows the input order.
    """
    groups: List[List[ScheduledEvent]] = []
    for event in day_events:
        for group in groups:
            if any(overlaps(event, other) for other in group):
                group.append(event)
                break
        else:
            groups.append([event])
    return groups


def order_ties(group: Sequence[ScheduledEvent]) -> List[ScheduledEvent]:
    """Order events sharing a start instant by identifier.

    Tied events are permuted among the positions they already occupy, so
    every other event keeps its column.
    """
    ordered = list(group)
    positions: dict[datetime, List[int]] = {}
    for idx, event in enumerate(ordered):
        positions.setdefault(event.start, []).append(idx)
    for idxs in positions.values():
        if len(idxs) < 2:
            continue
        tied = sorted((ordered[i] for i in idxs), key=lambda e: e.event_id)
        for i, event in zip(idxs, tied):
            ordered[i] = event
    return ordered


def layout_event(
    event: ScheduledEvent,
    group: Sequence[ScheduledEvent],
    index: int,
    tz: tzinfo | str | None,
    day: date,
    now: datetime,
    style: CalendarStyle | None = None,
    settings: LayoutSettings | None = None,
) -> EventBox:
    """Compute the box for ``event``, the ``index``-th member of ``group``."""
    settings = settings or DEFAULT_SETTINGS
    zone = _zone(tz)
    day_start, day_end = day_bounds(day, zone)

    from_prev = event.start < day_start
    to_next = event.end > day_end
    start_minutes = 0 if from_prev else civil_minutes(to_civil(event.start, zone))
    if event.end >= day_end:
        end_minutes = MINUTES_PER_DAY
    else:
        end_minutes = civil_minutes(to_civil(event.end, zone))
    # A fall-back transition can put the civil end before the civil start.
    duration = max(end_minutes - start_minutes, 0)
    # The minimum height never runs a box past the bottom of the day.
    height_minutes = min(
        max(duration, settings.min_height_minutes), MINUTES_PER_DAY - start_minutes
    )
    height = height_minutes / MINUTES_PER_DAY

    columns = len(group)
    if columns <= 1:
        left, width = 0.0, 1.0
    else:
        width = (1.0 - (columns - 1) * settings.gutter) / columns
        left = index * (width + settings.gutter)

    return EventBox(
        event_id=event.event_id,
        title=event.title,
        calendar_id=event.calendar_id,
        color=style.color if style else None,
        top_fraction=start_minutes / MINUTES_PER_DAY,
        height_fraction=height,
        column=index,
        columns_in_group=max(columns, 1),
        left_fraction=left,
        width_fraction=width,
        continues_from_prev_day=from_prev,
        continues_to_next_day=to_next,
        is_past=event.end < ensure_tz(now),
        all_day=event.all_day,
        start=to_civil(event.start, zone),
        end=to_civil(event.end, zone),
        description=event.description,
    )


def _layout_scheduled(
    scheduled: Sequence[ScheduledEvent],
    day: date,
    zone: tzinfo,
    now: datetime,
    colors: CalendarColors,
    settings: LayoutSettings,
) -> List[EventBox]:
    boxes: List[EventBox] = []
    for group in group_overlapping(events_for_day(scheduled, day, zone)):
        group = order_ties(group)
        for index, event in enumerate(group):
            # Unknown calendars are not drawn but keep their column reserved.
            style = colors.color_of(event.calendar_id)
            if style is None:
                logger.debug(
                    "Not rendering event %s: unknown calendar %s",
                    event.event_id,
                    event.calendar_id,
                )
                continue
            try:
                boxes.append(
                    layout_event(event, group, index, zone, day, now, style, settings)
                )
            except (ValueError, OverflowError) as exc:
                logger.warning("Skipping layout of event %s: %s", event.event_id, exc)
    return boxes


def layout_day(
    events: Iterable,
    day: date,
    tz: tzinfo | str | None,
    now: datetime,
    colors: CalendarColors,
    settings: LayoutSettings | None = None,
) -> List[EventBox]:
    """Lay out every event touching ``day`` as seen from ``tz``."""
    return _layout_scheduled(
        load_events(events), day, _zone(tz), now, colors, settings or DEFAULT_SETTINGS
    )


def layout_week(
    events: Iterable,
    first_day: date,
    tz: tzinfo | str | None,
    now: datetime,
    colors: CalendarColors,
    settings: LayoutSettings | None = None,
) -> List[Tuple[date, List[EventBox]]]:
    scheduled = load_events(events)
    zone = _zone(tz)
    settings = settings or DEFAULT_SETTINGS
    days = [first_day + timedelta(days=offset) for offset in range(7)]
    return [
        (day, _layout_scheduled(scheduled, day, zone, now, colors, settings))
        for day in days
    ]


def month_grid_days(year: int, month: int) -> List[date]:
    """The Sunday-first weeks shown for ``year``/``month``.

    Six weeks are laid out, except that the sixth is dropped when none of
    its days belong to the month.
    """
    first = date(year, month, 1)
    start = first - timedelta(days=(first.weekday() + 1) % 7)
    days = [start + timedelta(days=offset) for offset in range(35)]
    sixth_week_start = start + timedelta(days=35)
    if sixth_week_start.month == month:
        days.extend(sixth_week_start + timedelta(days=offset) for offset in range(7))
    return days


def month_entries(
    events: Iterable,
    year: int,
    month: int,
    tz: tzinfo | str | None,
    now: datetime,
    colors: CalendarColors,
) -> List[Tuple[date, List[MonthEntry]]]:
    """Per-day event chips for a month grid."""
    scheduled = load_events(events)
    zone = _zone(tz)
    now = ensure_tz(now)
    grid: List[Tuple[date, List[MonthEntry]]] = []
    for day in month_grid_days(year, month):
        entries: List[MonthEntry] = []
        for event in events_for_day(scheduled, day, zone):
            style = colors.color_of(event.calendar_id)
            if style is None:
                continue
            entries.append(
                MonthEntry(
                    event_id=event.event_id,
                    title=event.title,
                    color=style.color,
                    is_past=event.end < now,
                    all_day=event.all_day,
                    start=to_civil(event.start, zone),
                )
            )
        grid.append((day, entries))
    return grid
