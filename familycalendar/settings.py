from __future__ import annotations

import os

from sqlmodel import Field, Session, SQLModel

from .time_utils import is_valid_timezone


DISPLAY_TIMEZONE_KEY = "display_timezone"


class Setting(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value: str


def default_timezone_name() -> str:
    tz_name = os.getenv("FAMILYCALENDAR_TZ")
    if tz_name and is_valid_timezone(tz_name):
        return tz_name
    return "UTC"


class SettingsStore:
    """CRUD helper for :class:`Setting` objects."""

    def __init__(self, engine):
        self.engine = engine

    def get_display_timezone(self) -> str:
        with Session(self.engine) as session:
            setting = session.get(Setting, DISPLAY_TIMEZONE_KEY)
            if not setting:
                return default_timezone_name()

            # A zone can disappear from the tz database between releases.
            # Correct the stored value so every view agrees on the fallback.
            if not is_valid_timezone(setting.value):
                setting.value = "UTC"
                session.add(setting)
                session.commit()

            return setting.value

    def set_display_timezone(self, name: str) -> None:
        if not name or not is_valid_timezone(name):
            raise ValueError(f"Unknown timezone: {name!r}")
        with Session(self.engine) as session:
            setting = session.get(Setting, DISPLAY_TIMEZONE_KEY)
            if setting:
                setting.value = name
            else:
                setting = Setting(key=DISPLAY_TIMEZONE_KEY, value=name)
            session.add(setting)
            session.commit()
