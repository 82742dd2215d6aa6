from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any

import caldav
from caldav.lib.error import AuthorizationError
from icalendar import Calendar as ICalendar

from keytally.errors import AuthenticationError, CalendarError
from keytally.models import CalDAVConfig, CalendarEvent, CalendarInfo


logger = logging.getLogger(__name__)


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _to_iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return None


def parse_vevents(raw_data: Any, calendar: CalendarInfo) -> list[CalendarEvent]:
    """Turn one CalDAV resource into events; expanded recurrences may carry several VEVENTs."""
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    events: list[CalendarEvent] = []
    for component in calendar_obj.walk():
        if component.name != "VEVENT":
            continue
        dtstart = component.decoded("DTSTART") if component.get("DTSTART") is not None else None
        dtend = component.decoded("DTEND") if component.get("DTEND") is not None else None
        if dtend is None and dtstart is not None and component.get("DURATION") is not None:
            dtend = dtstart + component.decoded("DURATION")
        all_day = isinstance(dtstart, date) and not isinstance(dtstart, datetime)
        events.append(
            CalendarEvent(
                event_id=str(component.get("UID", "")).strip(),
                summary=str(component.get("SUMMARY", "")).strip(),
                start=_to_iso(dtstart),
                end=_to_iso(dtend),
                all_day=all_day,
                calendar_id=calendar.calendar_id,
                calendar_name=calendar.name,
            )
        )
    return events


class CalDAVService:
    """Read-only CalDAV event source."""

    def __init__(self, config: CalDAVConfig) -> None:
        if not config.base_url or not config.username:
            raise AuthenticationError("CalDAV config is incomplete: base_url/username required.")
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, tuple[Any, CalendarInfo]] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        try:
            self._principal = self._client.principal()
        except AuthorizationError as exc:
            raise AuthenticationError(f"CalDAV server rejected credential: {exc}") from exc

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._principal = None
        self._calendar_cache = {}

    def list_calendars(self) -> list[CalendarInfo]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[CalendarInfo] = []
        for calendar in self._principal.calendars():
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            info = CalendarInfo(calendar_id=calendar_id, name=name)
            self._calendar_cache[calendar_id] = (calendar, info)
            calendars.append(info)
        logger.debug("Listed %d CalDAV calendars", len(calendars))
        return calendars

    def _get_calendar(self, calendar_id: str) -> tuple[Any, CalendarInfo]:
        if calendar_id not in self._calendar_cache:
            self.list_calendars()
        if calendar_id not in self._calendar_cache:
            raise CalendarError(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[calendar_id]

    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        self._connect()
        calendar, info = self._get_calendar(calendar_id)
        resources = calendar.search(start=start, end=end, event=True, expand=True)
        events: list[CalendarEvent] = []
        for resource in resources:
            events.extend(parse_vevents(resource.data, info))
        return events
