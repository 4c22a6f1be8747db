from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from sqlmodel import Column, Field, Session, SQLModel, select
from sqlalchemy import ForeignKey, Integer
from sqlalchemy.exc import IntegrityError

from . import recurrence
from .layout import CalendarColors, CalendarStyle, ScheduledEvent
from .recurrence import RecurrenceType
from .time_utils import format_instant, get_now, parse_datetime


logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_NAME = "Personal"
DEFAULT_CALENDAR_COLOR = "#3b82f6"


def _new_event_id() -> str:
    return uuid4().hex


class Calendar(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    color: str
    created_at: datetime = Field(default_factory=get_now)


class Event(SQLModel, table=True):
    """A single stored event.

    ``start_time`` and ``end_time`` hold ISO-8601 instants as text; rows
    written outside :class:`EventStore` are not guaranteed to parse.
    """

    id: str = Field(default_factory=_new_event_id, primary_key=True)
    calendar_id: int = Field(
        sa_column=Column(
            Integer, ForeignKey("calendar.id", ondelete="CASCADE"), index=True
        )
    )
    title: str
    description: str = ""
    start_time: str
    end_time: str
    all_day: bool = False
    created_at: datetime = Field(default_factory=get_now)


class RecurringEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    calendar_id: int = Field(
        sa_column=Column(
            Integer, ForeignKey("calendar.id", ondelete="CASCADE"), index=True
        )
    )
    title: str
    description: str = ""
    start_time: str
    end_time: str
    timezone: str = "UTC"
    recurrence_type: RecurrenceType = RecurrenceType.Weekly
    recurrence_interval: int = 1
    recurrence_count: Optional[int] = None
    until: Optional[str] = None
    all_day: bool = False
    created_at: datetime = Field(default_factory=get_now)


def _require_calendar(session: Session, calendar_id: int) -> None:
    if calendar_id is None or not session.get(Calendar, calendar_id):
        raise ValueError(f"Unknown calendar: {calendar_id}")


class CalendarStore:
    def __init__(self, engine):
        self.engine = engine

    def create(self, calendar: Calendar) -> Calendar:
        calendar.name = calendar.name.strip()
        calendar.color = calendar.color.strip()
        if not calendar.name:
            raise ValueError("Calendar must have a name")
        if not calendar.color:
            raise ValueError("Calendar must have a color")
        with Session(self.engine) as session:
            session.add(calendar)
            try:
                session.commit()
            except IntegrityError as exc:
                raise ValueError(f"Calendar {calendar.name!r} already exists") from exc
            session.refresh(calendar)
            return calendar

    def get(self, calendar_id: int) -> Optional[Calendar]:
        with Session(self.engine) as session:
            return session.get(Calendar, calendar_id)

    def list_calendars(self) -> List[Calendar]:
        with Session(self.engine) as session:
            return session.exec(select(Calendar).order_by(Calendar.id)).all()

    def delete(self, calendar_id: int) -> bool:
        with Session(self.engine) as session:
            calendar = session.get(Calendar, calendar_id)
            if not calendar:
                return False
            session.delete(calendar)
            session.commit()
            return True

    def colors(self) -> CalendarColors:
        return CalendarColors(
            {c.id: CalendarStyle(name=c.name, color=c.color) for c in self.list_calendars()}
        )


class EventStore:
    """Events are created and deleted, never edited in place."""

    def __init__(self, engine):
        self.engine = engine

    def create(self, event: Event) -> Event:
        if not event.title or not event.title.strip():
            raise ValueError("Event must have a title")
        event.title = event.title.strip()
        # Raises ValueError for unparseable times or end < start.
        ScheduledEvent.from_event(event)
        event.start_time = format_instant(parse_datetime(event.start_time))
        event.end_time = format_instant(parse_datetime(event.end_time))
        with Session(self.engine) as session:
            _require_calendar(session, event.calendar_id)
            session.add(event)
            session.commit()
            session.refresh(event)
            return event

    def get(self, event_id: str) -> Optional[Event]:
        with Session(self.engine) as session:
            return session.get(Event, event_id)

    def list_events(self) -> List[Event]:
        """All stored events, ordered by start then identifier."""
        with Session(self.engine) as session:
            return session.exec(
                select(Event).order_by(Event.start_time, Event.id)
            ).all()

    def delete(self, event_id: str) -> bool:
        with Session(self.engine) as session:
            event = session.get(Event, event_id)
            if not event:
                return False
            session.delete(event)
            session.commit()
            return True


class RecurringEventStore:
    def __init__(self, engine):
        self.engine = engine

    def create(self, rec: RecurringEvent) -> RecurringEvent:
        if not rec.title or not rec.title.strip():
            raise ValueError("Event must have a title")
        rec.title = rec.title.strip()
        recurrence.validate(rec)
        rec.recurrence_type = RecurrenceType(rec.recurrence_type)
        rec.start_time = format_instant(parse_datetime(rec.start_time))
        rec.end_time = format_instant(parse_datetime(rec.end_time))
        if rec.until:
            rec.until = format_instant(parse_datetime(rec.until))
        with Session(self.engine) as session:
            _require_calendar(session, rec.calendar_id)
            session.add(rec)
            session.commit()
            session.refresh(rec)
            return rec

    def get(self, rec_id: int) -> Optional[RecurringEvent]:
        with Session(self.engine) as session:
            return session.get(RecurringEvent, rec_id)

    def list_recurring(self) -> List[RecurringEvent]:
        with Session(self.engine) as session:
            return session.exec(select(RecurringEvent).order_by(RecurringEvent.id)).all()

    def delete(self, rec_id: int) -> bool:
        with Session(self.engine) as session:
            rec = session.get(RecurringEvent, rec_id)
            if not rec:
                return False
            session.delete(rec)
            session.commit()
            return True


def occurrences_between(
    event_store: EventStore,
    recurring_store: RecurringEventStore,
    start: datetime,
    end: datetime,
) -> list:
    """Stored events plus recurring occurrences intersecting ``[start, end)``.

    Stored events are returned unparsed; the layout pass filters them and
    skips any with bad timestamps.
    """
    events: list = list(event_store.list_events())
    for rec in recurring_store.list_recurring():
        try:
            events.extend(recurrence.expand(rec, start, end))
        except ValueError as exc:
            logger.warning("Skipping recurring event %s: %s", rec.id, exc)
    return events


def init_db(engine) -> None:
    """Create tables and a default calendar on first run."""
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        if session.exec(select(Calendar)).first() is None:
            session.add(Calendar(name=DEFAULT_CALENDAR_NAME, color=DEFAULT_CALENDAR_COLOR))
            session.commit()
