"""Read-only Google Calendar v3 client used as the sync pass event source."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterator
from urllib.parse import quote

import requests

from keytally.errors import AuthenticationError, CalendarError
from keytally.models import CalendarEvent, CalendarInfo, GoogleConfig, serialize_datetime


logger = logging.getLogger(__name__)

UNKNOWN_CALENDAR_NAME = "Unknown"


def _event_time(value: dict[str, Any] | None) -> str | None:
    value = value or {}
    return value.get("dateTime") or value.get("date") or None


def parse_event_item(item: dict[str, Any], calendar: CalendarInfo) -> CalendarEvent:
    start = item.get("start") or {}
    return CalendarEvent(
        event_id=str(item.get("id") or ""),
        summary=str(item.get("summary") or ""),
        start=_event_time(start),
        end=_event_time(item.get("end")),
        all_day=not start.get("dateTime"),
        calendar_id=calendar.calendar_id,
        calendar_name=calendar.name or UNKNOWN_CALENDAR_NAME,
    )


class GoogleCalendarService:
    """One instance per sync pass; holds the caller's access token."""

    def __init__(
        self,
        access_token: str,
        config: GoogleConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        if not str(access_token or "").strip():
            raise AuthenticationError("Not authenticated: Google access token missing.")
        self.access_token = str(access_token).strip()
        self.config = config or GoogleConfig()
        self._owns_session = session is None
        self.session = session or requests.Session()
        self._calendars: dict[str, CalendarInfo] = {}

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.config.api_base_url.rstrip('/')}{path}"
        try:
            response = self.session.get(
                url,
                headers={"Authorization": f"Bearer {self.access_token}"},
                params=params,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise CalendarError(f"Calendar API network error: {exc}") from exc
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Calendar API rejected credential ({response.status_code}): {response.text[:300]}"
            )
        if not response.ok:
            raise CalendarError(f"Calendar API request failed ({response.status_code}): {response.text[:300]}")
        payload = response.json()
        if not isinstance(payload, dict):
            raise CalendarError("Calendar API response root must be an object.")
        return payload

    def _paginate(self, path: str, params: dict[str, Any]) -> Iterator[dict[str, Any]]:
        page_token: str | None = None
        while True:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            payload = self._get(path, page_params)
            for item in payload.get("items", []) or []:
                if isinstance(item, dict):
                    yield item
            page_token = payload.get("nextPageToken")
            if not page_token:
                break

    def list_calendars(self) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []
        for item in self._paginate("/users/me/calendarList", {}):
            calendar_id = str(item.get("id") or "")
            if not calendar_id:
                continue
            info = CalendarInfo(
                calendar_id=calendar_id,
                name=str(item.get("summary") or UNKNOWN_CALENDAR_NAME),
                primary=bool(item.get("primary", False)),
                color=str(item.get("backgroundColor") or ""),
            )
            self._calendars[calendar_id] = info
            calendars.append(info)
        logger.debug("Listed %d Google calendars", len(calendars))
        return calendars

    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        calendar = self._calendars.get(calendar_id) or CalendarInfo(
            calendar_id=calendar_id, name=UNKNOWN_CALENDAR_NAME
        )
        params = {
            "timeMin": serialize_datetime(start),
            "timeMax": serialize_datetime(end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": self.config.max_results,
        }
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        return [parse_event_item(item, calendar) for item in self._paginate(path, params)]
