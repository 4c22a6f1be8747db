from datetime import datetime, timedelta, date, time
from pathlib import Path
from zoneinfo import ZoneInfo, available_timezones
import asyncio
import contextlib
import json
import os
import logging
import posixpath

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, RedirectResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from sqlmodel import create_engine
from sqlalchemy import event
from markdown import markdown as md
from markupsafe import Markup
import bleach
from jinja2 import pass_context

from .time_utils import (
    civil_minutes,
    end_of_day,
    get_now,
    MINUTES_PER_DAY,
    resolve_timezone,
)
from .calendar import (
    Calendar,
    CalendarStore,
    Event,
    EventStore,
    RecurringEvent,
    RecurringEventStore,
    init_db,
    occurrences_between,
)
from .layout import (
    EventBox,
    LayoutSettings,
    day_bounds,
    layout_day,
    layout_week,
    month_entries,
    month_grid_days,
)
from .recurrence import RecurrenceType
from .settings import SettingsStore
from .ticker import Ticker


REFRESH_SECONDS = float(os.getenv("FAMILYCALENDAR_REFRESH_SECONDS", "60"))
LAYOUT_SETTINGS = LayoutSettings()

db_path = os.getenv("FAMILYCALENDAR_DB", "familycalendar.db")
engine = create_engine(
    f"sqlite:///{db_path}",
    connect_args={"check_same_thread": False},
)
@event.listens_for(engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
init_db(engine)
calendar_store = CalendarStore(engine)
event_store = EventStore(engine)
recurring_store = RecurringEventStore(engine)
settings_store = SettingsStore(engine)

app = FastAPI()

logger = logging.getLogger(__name__)

BASE_PATH = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_PATH / "templates"))
templates.env.globals["ALL_TIMEZONES"] = sorted(available_timezones())
templates.env.globals["RecurrenceType"] = RecurrenceType


def _make_relative(current_path: str, target_path: str) -> str:
    """Return ``target_path`` relative to ``current_path``."""
    cur_dir = current_path if current_path.endswith("/") else current_path.rsplit("/", 1)[0] + "/"
    rel_path = posixpath.relpath(target_path, start=cur_dir)
    if rel_path == ".":
        # ``posixpath.relpath`` collapses ``/day/`` relative to ``/day/x`` to
        # ``.``; the absolute target keeps forms posting to the right place.
        return target_path
    if not rel_path.startswith("."):
        rel_path = "./" + rel_path
    return rel_path


def relative_url_for(request: Request, name: str, /, **path_params: str) -> str:
    target = str(request.app.url_path_for(name, **path_params))
    return _make_relative(request.url.path, target)


@pass_context
def _jinja_url_for(context, name: str, /, **path_params: str) -> str:  # type: ignore[override]
    request: Request = context["request"]
    return relative_url_for(request, name, **path_params)


templates.env.globals["url_for"] = _jinja_url_for


def format_time(dt: datetime | None) -> str:
    if not dt:
        return ""
    hour = dt.hour % 12 or 12
    suffix = "AM" if dt.hour < 12 else "PM"
    return f"{hour}:{dt.minute:02d} {suffix}"


templates.env.filters["format_time"] = format_time


def as_percent(fraction: float) -> str:
    return f"{fraction * 100:.4f}%"


templates.env.filters["percent"] = as_percent


ALLOWED_TAGS = bleach.sanitizer.ALLOWED_TAGS | {"p", "pre", "code", "br"}

ALLOWED_ATTRIBUTES = {
    **bleach.sanitizer.ALLOWED_ATTRIBUTES,
    "a": ["href", "title", "rel"],
}


def render_markdown(text: str) -> Markup:
    if not text:
        return Markup("")
    html = md(text)
    sanitized = bleach.clean(html, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)
    return Markup(sanitized)


templates.env.filters["markdown"] = render_markdown


def parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid day: {value}")


def display_zone(tz: str | None) -> ZoneInfo:
    """Zone for a view: the explicit ``tz`` if given, else the saved default."""
    return resolve_timezone(tz or settings_store.get_display_timezone())


def window_events(start: datetime, end: datetime) -> list:
    return occurrences_between(event_store, recurring_store, start, end)


def day_layout(view_day: date, zone: ZoneInfo, now: datetime | None = None) -> list[EventBox]:
    if now is None:
        now = get_now()
    start, end = day_bounds(view_day, zone)
    return layout_day(
        window_events(start, end), view_day, zone, now, calendar_store.colors(), LAYOUT_SETTINGS
    )


def day_payload(view_day: date, zone: ZoneInfo) -> dict:
    return {
        "day": view_day.isoformat(),
        "timezone": zone.key,
        "events": [box.to_dict() for box in day_layout(view_day, zone)],
    }


def week_start(view_day: date) -> date:
    """Sunday on or before ``view_day``."""
    return view_day - timedelta(days=(view_day.weekday() + 1) % 7)


@app.get("/")
async def index(request: Request):
    zone = display_zone(None)
    today = get_now().astimezone(zone).date()
    return RedirectResponse(
        url=relative_url_for(request, "view_day", day=today.isoformat()), status_code=303
    )


@app.get("/day/{day}", response_class=HTMLResponse)
async def view_day(request: Request, day: str, tz: str | None = None):
    view_date = parse_day(day)
    zone = display_zone(tz)
    now = get_now()
    boxes = day_layout(view_date, zone, now)
    civil_now = now.astimezone(zone)
    now_fraction = None
    if civil_now.date() == view_date:
        now_fraction = civil_minutes(civil_now) / MINUTES_PER_DAY
    return templates.TemplateResponse(
        request,
        "day.html",
        {
            "day": view_date,
            "prev_day": (view_date - timedelta(days=1)).isoformat(),
            "next_day": (view_date + timedelta(days=1)).isoformat(),
            "timezone": zone.key,
            "boxes": boxes,
            "now_fraction": now_fraction,
            "calendars": calendar_store.list_calendars(),
            "refresh_seconds": int(REFRESH_SECONDS),
        },
    )


@app.get("/api/day/{day}")
async def api_day(day: str, tz: str | None = None):
    return day_payload(parse_day(day), display_zone(tz))


@app.get("/api/week/{day}")
async def api_week(day: str, tz: str | None = None):
    first = week_start(parse_day(day))
    zone = display_zone(tz)
    start, _ = day_bounds(first, zone)
    _, end = day_bounds(first + timedelta(days=6), zone)
    days = layout_week(
        window_events(start, end), first, zone, get_now(), calendar_store.colors(), LAYOUT_SETTINGS
    )
    return {
        "timezone": zone.key,
        "days": [
            {"day": d.isoformat(), "events": [box.to_dict() for box in boxes]}
            for d, boxes in days
        ],
    }


@app.get("/api/month/{year}/{month}")
async def api_month(year: int, month: int, tz: str | None = None):
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail=f"Invalid month: {month}")
    zone = display_zone(tz)
    try:
        grid_days = month_grid_days(year, month)
        start, _ = day_bounds(grid_days[0], zone)
        _, end = day_bounds(grid_days[-1], zone)
    except (ValueError, OverflowError):
        raise HTTPException(status_code=400, detail=f"Invalid month: {year}-{month}")
    grid = month_entries(
        window_events(start, end), year, month, zone, get_now(), calendar_store.colors()
    )
    return {
        "timezone": zone.key,
        "days": [
            {
                "day": d.isoformat(),
                "in_month": d.month == month,
                "events": [entry.to_dict() for entry in entries],
            }
            for d, entries in grid
        ],
    }


@app.get("/api/calendars")
async def api_calendars():
    return [
        {"id": c.id, "name": c.name, "color": c.color}
        for c in calendar_store.list_calendars()
    ]


@app.post("/calendars/new")
async def create_calendar(request: Request):
    form = await request.form()
    name = form.get("name", "")
    color = form.get("color", "")
    try:
        calendar_store.create(Calendar(name=name, color=color))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return RedirectResponse(url=relative_url_for(request, "index"), status_code=303)


@app.post("/calendars/{calendar_id}/delete")
async def delete_calendar(request: Request, calendar_id: int):
    if not calendar_store.delete(calendar_id):
        raise HTTPException(status_code=404)
    return RedirectResponse(url=relative_url_for(request, "index"), status_code=303)


@app.get("/api/events")
async def api_events():
    return {
        "events": [
            {
                "id": e.id,
                "calendar_id": e.calendar_id,
                "title": e.title,
                "description": e.description,
                "start_time": e.start_time,
                "end_time": e.end_time,
                "all_day": e.all_day,
            }
            for e in event_store.list_events()
        ],
        "recurring": [
            {
                "id": r.id,
                "calendar_id": r.calendar_id,
                "title": r.title,
                "start_time": r.start_time,
                "end_time": r.end_time,
                "timezone": r.timezone,
                "recurrence_type": RecurrenceType(r.recurrence_type).value,
                "recurrence_interval": r.recurrence_interval,
                "recurrence_count": r.recurrence_count,
                "until": r.until,
            }
            for r in recurring_store.list_recurring()
        ],
    }


def _form_instant(value: str, zone: ZoneInfo, field: str) -> datetime:
    """Interpret a ``datetime-local`` form value in ``zone``."""
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {field}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=zone)
    return dt


def _form_int(value: str | None, field: str, default: int | None = None) -> int | None:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {field}")


@app.post("/events/new")
async def create_event(request: Request):
    form = await request.form()
    title = form.get("title", "").strip()
    description = form.get("description", "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    calendar_id = _form_int(form.get("calendar_id"), "calendar")
    if calendar_id is None or not calendar_store.get(calendar_id):
        raise HTTPException(status_code=400, detail="Please select a valid calendar")
    zone = resolve_timezone(form.get("timezone") or settings_store.get_display_timezone())
    all_day = form.get("all_day") in {"on", "true", "1"}

    if all_day:
        try:
            first_day = date.fromisoformat(form.get("date", ""))
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid date")
        start = datetime.combine(first_day, time(), tzinfo=zone)
        end = end_of_day(start)
    else:
        start = _form_instant(form.get("start", ""), zone, "start")
        end_value = form.get("end", "")
        duration = _form_int(form.get("duration_minutes"), "duration")
        if end_value:
            end = _form_instant(end_value, zone, "end")
        elif duration:
            end = start + timedelta(minutes=duration)
        else:
            raise HTTPException(status_code=400, detail="An end time or duration is required")
        if end < start:
            raise HTTPException(status_code=400, detail="Event must end after it starts")

    try:
        if form.get("recurring") in {"on", "true", "1"}:
            until = None
            if form.get("until"):
                try:
                    until_day = date.fromisoformat(form.get("until"))
                except ValueError:
                    raise HTTPException(status_code=400, detail="Invalid end date")
                until = end_of_day(datetime.combine(until_day, time(), tzinfo=zone)).isoformat()
            try:
                rtype = RecurrenceType(form.get("recurrence_type", "weekly"))
            except ValueError:
                raise HTTPException(status_code=400, detail="Invalid recurrence type")
            recurring_store.create(
                RecurringEvent(
                    calendar_id=calendar_id,
                    title=title,
                    description=description,
                    start_time=start.isoformat(),
                    end_time=end.isoformat(),
                    timezone=zone.key,
                    recurrence_type=rtype,
                    recurrence_interval=_form_int(
                        form.get("recurrence_interval"), "interval", default=1
                    ),
                    recurrence_count=_form_int(form.get("recurrence_count"), "count"),
                    until=until,
                    all_day=all_day,
                )
            )
        else:
            event_store.create(
                Event(
                    calendar_id=calendar_id,
                    title=title,
                    description=description,
                    start_time=start.isoformat(),
                    end_time=end.isoformat(),
                    all_day=all_day,
                )
            )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    url = relative_url_for(request, "view_day", day=start.astimezone(zone).date().isoformat())
    return RedirectResponse(url=f"{url}?tz={zone.key}", status_code=303)


@app.post("/events/{event_id}/delete")
async def delete_event(request: Request, event_id: str):
    if not event_store.delete(event_id):
        raise HTTPException(status_code=404)
    return RedirectResponse(url=relative_url_for(request, "index"), status_code=303)


@app.post("/recurring/{rec_id}/delete")
async def delete_recurring(request: Request, rec_id: int):
    if not recurring_store.delete(rec_id):
        raise HTTPException(status_code=404)
    return RedirectResponse(url=relative_url_for(request, "index"), status_code=303)


@app.get("/settings/timezone")
async def get_display_timezone():
    return JSONResponse({"timezone": settings_store.get_display_timezone()})


@app.post("/settings/timezone")
async def update_display_timezone(request: Request):
    data = await request.json()
    name = data.get("timezone") if isinstance(data, dict) else None
    if not isinstance(name, str):
        return JSONResponse({"error": "Invalid value"}, status_code=400)
    try:
        settings_store.set_display_timezone(name)
    except ValueError:
        return JSONResponse({"error": "Unknown timezone"}, status_code=400)
    return JSONResponse({"ok": True})


@app.websocket("/ws/day/{day}")
async def day_feed(websocket: WebSocket, day: str, tz: str | None = None):
    """Push the day's layout on connect, every tick and on client request.

    Any client message triggers a fresh layout (e.g. after a resize); a JSON
    object with a ``tz`` key also switches the display timezone.
    """
    try:
        view_date = date.fromisoformat(day)
    except ValueError:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    state = {"tz": tz}

    async def push() -> None:
        await websocket.send_json(day_payload(view_date, display_zone(state["tz"])))

    ticker = Ticker(push, REFRESH_SECONDS)
    task = asyncio.create_task(ticker.run())
    try:
        await push()
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                message = None
            if isinstance(message, dict) and message.get("tz"):
                state["tz"] = str(message["tz"])
            await push()
    except WebSocketDisconnect:
        logger.info("Day feed for %s disconnected", view_date)
    finally:
        ticker.stop()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
