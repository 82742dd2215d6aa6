from __future__ import annotations

from datetime import datetime
from typing import Callable, Protocol

from keytally.caldav_client import CalDAVService
from keytally.google_calendar import GoogleCalendarService
from keytally.models import AppConfig, CalendarEvent, CalendarInfo


class CalendarSource(Protocol):
    def list_calendars(self) -> list[CalendarInfo]: ...

    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CalendarEvent]: ...

    def close(self) -> None: ...


CalendarFactory = Callable[[AppConfig, "str | None"], CalendarSource]


def build_calendar_service(config: AppConfig, access_token: str | None = None) -> CalendarSource:
    """Construct a fresh calendar client for one sync pass.

    For Google, an explicit ``access_token`` wins over the one stored in config.
    Raises ``AuthenticationError`` when no credential is available.
    """
    if config.calendar.provider == "caldav":
        return CalDAVService(config.caldav)
    token = (access_token or "").strip() or config.google.access_token
    return GoogleCalendarService(token, config.google)
