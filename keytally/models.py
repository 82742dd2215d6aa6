from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


DEFAULT_KEY_COLOR = "#000000"
AGGREGATE_MODES = {"atomic", "increment"}
CALENDAR_PROVIDERS = {"google", "caldav"}


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def has_time_component(value: str | None) -> bool:
    return bool(value) and "T" in str(value)


def duration_minutes(start: str | datetime, end: str | datetime) -> int:
    start_dt = parse_iso_datetime(start)
    end_dt = parse_iso_datetime(end)
    if start_dt is None or end_dt is None:
        return 0
    seconds = (end_dt - start_dt).total_seconds()
    # Half-up, so 89.5 minutes becomes 90 regardless of parity.
    return int(math.floor(seconds / 60.0 + 0.5))


def event_date_of(start_time: str) -> str:
    return str(start_time or "").split("T")[0]


@dataclass
class GoogleConfig:
    access_token: str = ""
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    max_results: int = 2500
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            access_token=str(data.get("access_token", "") or "").strip(),
            api_base_url=str(data.get("api_base_url", "")).strip().rstrip("/")
            or "https://www.googleapis.com/calendar/v3",
            max_results=min(2500, max(1, int(data.get("max_results", 2500)))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )


@dataclass
class CalendarSourceConfig:
    provider: str = "google"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarSourceConfig":
        data = data or {}
        provider = str(data.get("provider", "google")).strip().lower()
        if provider not in CALENDAR_PROVIDERS:
            provider = "google"
        return cls(provider=provider)


@dataclass
class SyncConfig:
    window_past_days: int = 90
    window_future_days: int = 30
    max_samples: int = 10
    aggregate_mode: str = "atomic"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        aggregate_mode = str(data.get("aggregate_mode", "atomic")).strip().lower()
        if aggregate_mode not in AGGREGATE_MODES:
            aggregate_mode = "atomic"
        return cls(
            window_past_days=max(0, int(data.get("window_past_days", 90))),
            window_future_days=max(0, int(data.get("window_future_days", 30))),
            max_samples=max(0, int(data.get("max_samples", 10))),
            aggregate_mode=aggregate_mode,
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    calendar: CalendarSourceConfig = field(default_factory=CalendarSourceConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            calendar=CalendarSourceConfig.from_dict(data.get("calendar")),
            google=GoogleConfig.from_dict(data.get("google")),
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TrackingKey:
    key_id: str
    name: str
    search_key: str = ""
    calendar_id: str = ""
    color: str = DEFAULT_KEY_COLOR
    total_minutes: int = 0
    event_count: int = 0
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackingKey":
        return cls(
            key_id=str(data.get("key_id", data.get("id", ""))),
            name=str(data.get("name", "") or ""),
            search_key=str(data.get("search_key", "") or ""),
            calendar_id=str(data.get("calendar_id", "") or ""),
            color=str(data.get("color", "") or DEFAULT_KEY_COLOR),
            total_minutes=int(data.get("total_minutes", 0) or 0),
            event_count=int(data.get("event_count", 0) or 0),
            created_at=str(data.get("created_at", "") or ""),
        )

    def effective_search_term(self) -> str:
        return (self.search_key or "").strip() or (self.name or "").strip()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    primary: bool = False
    color: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarEvent:
    event_id: str
    summary: str = ""
    start: str | None = None
    end: str | None = None
    all_day: bool = False
    calendar_id: str = ""
    calendar_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MatchedEventRecord:
    summary: str
    key_id: str
    key_name: str
    start_time: str
    end_time: str
    duration_minutes: int
    event_date: str

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.key_id, self.summary, self.start_time)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MatchedEventRecord":
        start_time = str(data.get("start_time", "") or "")
        return cls(
            summary=str(data.get("summary", "") or ""),
            key_id=str(data.get("key_id", "") or ""),
            key_name=str(data.get("key_name", "") or ""),
            start_time=start_time,
            end_time=str(data.get("end_time", "") or ""),
            duration_minutes=int(data.get("duration_minutes", 0) or 0),
            event_date=str(data.get("event_date", "") or "") or event_date_of(start_time),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class KeyDelta:
    add_minutes: int = 0
    add_events: int = 0

    def add(self, minutes: int) -> None:
        self.add_minutes += int(minutes)
        self.add_events += 1


@dataclass
class SyncReport:
    status: str
    message: str
    total_calendar_events: int = 0
    matched: int = 0
    new_events: int = 0
    skipped_duplicates: int = 0
    skipped_all_day: int = 0
    keys_updated: int = 0
    matched_samples: list[str] = field(default_factory=list)
    debug: list[str] = field(default_factory=list)
    error: str = ""
    details: str = ""
    duration_ms: int = 0
    trigger: str = "manual"
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status in {"success", "empty"}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "message": self.message,
            "totalCalendarEventsScanned": self.total_calendar_events,
            "matched": self.matched,
            "newEvents": self.new_events,
            "skippedDuplicates": self.skipped_duplicates,
            "skippedAllDay": self.skipped_all_day,
            "keysUpdated": self.keys_updated,
            "matchedSamples": list(self.matched_samples),
            "debugTrace": list(self.debug),
            "durationMs": self.duration_ms,
            "trigger": self.trigger,
            "runAt": serialize_datetime(self.run_at),
        }
        if self.error:
            payload["error"] = self.error
        if self.details:
            payload["details"] = self.details
        return payload


def default_app_config() -> AppConfig:
    return AppConfig()


def sync_window(now: datetime, past_days: int, future_days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    return now_utc - timedelta(days=max(0, past_days)), now_utc + timedelta(days=max(0, future_days))
