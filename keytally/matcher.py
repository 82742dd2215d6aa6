from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from keytally.models import (
    CalendarEvent,
    KeyDelta,
    MatchedEventRecord,
    TrackingKey,
    duration_minutes,
    event_date_of,
    has_time_component,
)


DedupKey = tuple[str, str, str]


@dataclass
class MatchOutcome:
    records: list[MatchedEventRecord] = field(default_factory=list)
    matched: int = 0
    skipped_duplicates: int = 0
    skipped_all_day: int = 0
    invalid_events: list[CalendarEvent] = field(default_factory=list)
    pairs: list[tuple[MatchedEventRecord, TrackingKey]] = field(default_factory=list)


def dedup_key(key_id: str, summary: str, start: str) -> DedupKey:
    return (str(key_id), str(summary), str(start))


def is_timed_event(event: CalendarEvent) -> bool:
    if event.all_day or not event.start or not event.end:
        return False
    return has_time_component(event.start)


def key_matches(key: TrackingKey, summary_lower: str, calendar_id: str) -> bool:
    term = key.effective_search_term()
    if not term:
        return False
    if term.lower() not in summary_lower:
        return False
    return not key.calendar_id or key.calendar_id == calendar_id


def match_events(
    keys: list[TrackingKey],
    events: Iterable[CalendarEvent],
    existing: set[DedupKey] | None = None,
) -> MatchOutcome:
    """Match calendar events against tracking keys.

    Every key is checked independently, so one event can produce one record
    per matching key. ``existing`` is not modified; records emitted during the
    call are added to a working copy so a repeated (key, summary, start) is
    counted as a duplicate even inside a single batch. Events whose timestamps
    cannot be parsed are collected in ``invalid_events`` and skipped.
    """
    seen: set[DedupKey] = set(existing or ())
    outcome = MatchOutcome()

    for event in events:
        if not event.summary:
            continue
        if not is_timed_event(event):
            outcome.skipped_all_day += 1
            continue

        try:
            minutes = duration_minutes(event.start, event.end)
        except ValueError:
            outcome.invalid_events.append(event)
            continue
        if minutes <= 0:
            continue

        summary_lower = event.summary.lower()
        for key in keys:
            if not key_matches(key, summary_lower, event.calendar_id):
                continue
            outcome.matched += 1

            identity = dedup_key(key.key_id, event.summary, event.start)
            if identity in seen:
                outcome.skipped_duplicates += 1
                continue

            record = MatchedEventRecord(
                summary=event.summary,
                key_id=key.key_id,
                key_name=key.name,
                start_time=event.start,
                end_time=event.end,
                duration_minutes=minutes,
                event_date=event_date_of(event.start),
            )
            seen.add(identity)
            outcome.records.append(record)
            outcome.pairs.append((record, key))

    return outcome


def deltas_for(records: Iterable[MatchedEventRecord]) -> dict[str, KeyDelta]:
    deltas: dict[str, KeyDelta] = {}
    for record in records:
        deltas.setdefault(record.key_id, KeyDelta()).add(record.duration_minutes)
    return deltas
