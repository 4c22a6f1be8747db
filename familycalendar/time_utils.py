from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")
MINUTES_PER_DAY = 24 * 60


def _configured_tz() -> tzinfo:
    """Return the timezone configured for the application."""
    tz_name = os.getenv("FAMILYCALENDAR_TZ")
    if tz_name:
        return resolve_timezone(tz_name)
    system_tz = datetime.now().astimezone().tzinfo
    return system_tz if system_tz is not None else UTC


def get_now() -> datetime:
    """Return the current time in the configured timezone.

    Uses the ``FAMILYCALENDAR_TZ`` environment variable if set, otherwise
    defaults to the system timezone.
    """
    return datetime.now(_configured_tz())


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Return the ``ZoneInfo`` for ``name``, falling back to UTC.

    Views must keep rendering when handed a bogus zone, so unknown or
    malformed identifiers are logged and replaced by UTC rather than raised.
    """
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        logger.warning("Unknown timezone %r, falling back to UTC: %s", name, exc)
        return UTC


def is_valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def parse_datetime(value: str) -> datetime:
    """Parse an ISO formatted datetime string.

    A trailing ``Z`` is accepted as UTC.  If ``value`` lacks timezone
    information, apply the timezone configured via ``FAMILYCALENDAR_TZ``
    (default system timezone).  Raises ``ValueError`` if ``value`` is not a
    valid ISO-8601 timestamp.
    """
    if not isinstance(value, str):
        raise ValueError(f"Expected an ISO timestamp string, got {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return ensure_tz(datetime.fromisoformat(text))


def ensure_tz(dt: datetime | None) -> datetime | None:
    """Ensure ``dt`` is timezone-aware using the configured timezone."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=_configured_tz())
    return dt


def to_utc(dt: datetime) -> datetime:
    return ensure_tz(dt).astimezone(timezone.utc)


def format_instant(dt: datetime) -> str:
    """Canonical stored form of an instant: second precision UTC ISO-8601."""
    return to_utc(dt).replace(microsecond=0).isoformat()


def to_civil(instant: datetime, tz: tzinfo) -> datetime:
    """Convert ``instant`` to wall-clock time in ``tz``.

    The offset is looked up for ``instant`` itself, so historical and future
    daylight-saving rules apply rather than today's offset.
    """
    return ensure_tz(instant).astimezone(tz)


def civil_minutes(dt: datetime) -> int:
    """Minutes elapsed on the wall clock since ``dt``'s civil midnight."""
    return dt.hour * 60 + dt.minute


def end_of_day(dt: datetime) -> datetime:
    """Return the start of the next day in ``dt``'s timezone."""
    return dt.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
