from __future__ import annotations

import logging
import threading
import traceback
from datetime import datetime, timezone

from keytally.config_manager import ConfigManager
from keytally.errors import (
    AggregateUpdateError,
    AuthenticationError,
    PerCalendarFetchError,
    PerRecordPersistenceError,
    PersistenceLoadError,
    RemoteFetchError,
)
from keytally.matcher import DedupKey, MatchOutcome, deltas_for, match_events
from keytally.models import (
    CalendarEvent,
    KeyDelta,
    MatchedEventRecord,
    SyncReport,
    TrackingKey,
    sync_window,
)
from keytally.sources import CalendarFactory, CalendarSource, build_calendar_service
from keytally.state_store import StateStore


logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def _describe_keys(keys: list[TrackingKey]) -> str:
    return ", ".join(f'"{key.name}" (search: "{key.effective_search_term()}")' for key in keys)


def _close_source(calendar_service: CalendarSource | None) -> None:
    if calendar_service is None:
        return
    try:
        calendar_service.close()
    except Exception:
        logger.warning("Closing calendar source failed", exc_info=True)


def _sample_line(record: MatchedEventRecord, key: TrackingKey) -> str:
    return f'"{record.summary}" → {key.name} ({record.duration_minutes}min)'


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        calendar_factory: CalendarFactory | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.calendar_factory = calendar_factory or build_calendar_service
        self._pass_lock = threading.Lock()

    def run_once(
        self,
        access_token: str | None = None,
        *,
        trigger: str = "manual",
        now: datetime | None = None,
    ) -> SyncReport:
        """Run one synchronization pass and always return a report.

        Passes against the same state store are serialized, whatever credential
        triggered them, so two triggers cannot both read the dedup ledger before
        either has written to it.
        """
        with self._pass_lock:
            return self._run_pass(access_token=access_token, trigger=trigger, now=now)

    def _run_pass(self, *, access_token: str | None, trigger: str, now: datetime | None) -> SyncReport:
        started_at = datetime.now(timezone.utc)
        report = SyncReport(status="running", message="", trigger=trigger)
        debug = report.debug
        calendar_service: CalendarSource | None = None

        try:
            config = self.config_manager.load()
            calendar_service = self.calendar_factory(config, access_token)

            try:
                keys = self.state_store.load_keys()
            except Exception as exc:
                raise PersistenceLoadError(f"Loading tracking keys failed: {exc}") from exc
            if not keys:
                debug.append("No tracking keys found in the registry.")
                return self._finish(report, started_at, status="empty", message="No tracking keys found")
            debug.append(f"{len(keys)} keys loaded: {_describe_keys(keys)}")

            existing = self._load_existing(debug)
            debug.append(f"{len(existing)} events already tracked.")

            window_start, window_end = sync_window(
                now or datetime.now(timezone.utc),
                config.sync.window_past_days,
                config.sync.window_future_days,
            )
            events = self._fetch_all_events(calendar_service, window_start, window_end, debug)
            report.total_calendar_events = len(events)
            all_day = sum(1 for event in events if event.all_day)
            debug.append(
                f"{len(events)} calendar events fetched ({len(events) - all_day} timed, {all_day} all-day)."
            )

            outcome = match_events(keys, events, existing)
            report.matched = outcome.matched
            report.skipped_duplicates = outcome.skipped_duplicates
            report.skipped_all_day = outcome.skipped_all_day
            for event in outcome.invalid_events:
                logger.warning(
                    "Skipping event %s with unparseable time %r - %r", event.event_id, event.start, event.end
                )
                debug.append(f'⚠ Skipped "{event.summary}": unparseable time {event.start!r} - {event.end!r}')

            persisted = self._persist_records(outcome, report, config.sync.max_samples)
            report.new_events = len(persisted)
            debug.append(
                f"Matching: {report.matched} matches, {report.new_events} new, "
                f"{report.skipped_duplicates} duplicates skipped, {report.skipped_all_day} all-day skipped."
            )

            deltas = deltas_for(persisted)
            report.keys_updated = self._apply_deltas(deltas, config.sync.aggregate_mode, debug)
            debug.append(f"{report.keys_updated} keys updated.")

            return self._finish(report, started_at, status="success", message="Tracking sync complete")
        except AuthenticationError as exc:
            logger.warning("Sync pass not authenticated: %s", exc)
            report.error = "Not authenticated"
            report.details = str(exc)
            return self._finish(report, started_at, status="unauthorized", message="Not authenticated")
        except (PersistenceLoadError, RemoteFetchError) as exc:
            logger.error("Sync pass aborted: %s", exc)
            report.error = "Failed to sync tracking"
            report.details = str(exc)
            debug.append(f"Fatal: {exc}")
            return self._finish(report, started_at, status="error", message=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error during sync pass")
            error_message = f"{type(exc).__name__}: {exc}"
            report.error = "Failed to sync tracking"
            report.details = error_message
            debug.append(f"Fatal: {error_message}")
            self._audit_fatal(trigger, error_message)
            return self._finish(report, started_at, status="error", message=error_message)
        finally:
            _close_source(calendar_service)

    def _load_existing(self, debug: list[str]) -> set[DedupKey]:
        try:
            return set(self.state_store.load_existing_tuples())
        except Exception as exc:
            logger.warning("Loading tracked events failed, continuing with empty dedup set: %s", exc)
            debug.append(f"⚠ Tracked events could not be loaded, continuing without them: {exc}")
            return set()

    def _fetch_all_events(
        self,
        calendar_service: CalendarSource,
        window_start: datetime,
        window_end: datetime,
        debug: list[str],
    ) -> list[CalendarEvent]:
        try:
            calendars = calendar_service.list_calendars()
        except AuthenticationError:
            raise
        except Exception as exc:
            raise RemoteFetchError(f"Listing calendars failed: {exc}") from exc
        debug.append(f"{len(calendars)} calendars found: {', '.join(cal.name for cal in calendars)}")

        events: list[CalendarEvent] = []
        for calendar in calendars:
            try:
                fetched = self._fetch_calendar(calendar_service, calendar.calendar_id, window_start, window_end)
            except PerCalendarFetchError as exc:
                logger.warning("Calendar %s could not be read: %s", calendar.calendar_id, exc)
                debug.append(f'⚠ Calendar "{calendar.name}" could not be read: {exc}')
                continue
            events.extend(fetched)
        return events

    @staticmethod
    def _fetch_calendar(
        calendar_service: CalendarSource,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[CalendarEvent]:
        try:
            return calendar_service.fetch_events(calendar_id, window_start, window_end)
        except Exception as exc:
            raise PerCalendarFetchError(str(exc)) from exc

    def _insert_record(self, record: MatchedEventRecord) -> None:
        try:
            self.state_store.insert_tracked_event(record)
        except Exception as exc:
            raise PerRecordPersistenceError(str(exc)) from exc

    def _persist_records(
        self,
        outcome: MatchOutcome,
        report: SyncReport,
        max_samples: int,
    ) -> list[MatchedEventRecord]:
        persisted: list[MatchedEventRecord] = []
        for record, key in outcome.pairs:
            try:
                self._insert_record(record)
            except PerRecordPersistenceError as exc:
                logger.warning("Insert failed for %r (key %s): %s", record.summary, record.key_id, exc)
                report.debug.append(f'⚠ Insert failed for "{record.summary}": {exc}')
                continue
            persisted.append(record)
            if len(report.matched_samples) < max_samples:
                report.matched_samples.append(_sample_line(record, key))
        return persisted

    def _apply_deltas(self, deltas: dict[str, KeyDelta], aggregate_mode: str, debug: list[str]) -> int:
        updated = 0
        for key_id, delta in deltas.items():
            try:
                self.apply_aggregate_delta(key_id, delta, aggregate_mode)
            except AggregateUpdateError as exc:
                logger.warning("Stats update failed for key %s: %s", key_id, exc)
                debug.append(f"⚠ Stats update failed for key {key_id}: {exc}")
                continue
            updated += 1
        return updated

    def apply_aggregate_delta(self, key_id: str, delta: KeyDelta, aggregate_mode: str = "atomic") -> None:
        """Apply one key's delta exactly once.

        In ``increment`` mode the registry only offers "add N minutes and one
        event", so it is called once per event with the whole minute total on
        the first call and zero afterwards. The first failure abandons the rest.
        """
        try:
            if aggregate_mode == "increment":
                for index in range(delta.add_events):
                    self.state_store.increment_key_stats(key_id, delta.add_minutes if index == 0 else 0)
            else:
                self.state_store.apply_key_delta(key_id, delta.add_minutes, delta.add_events)
        except Exception as exc:
            raise AggregateUpdateError(str(exc)) from exc

    def _audit_fatal(self, trigger: str, error_message: str) -> None:
        try:
            self.state_store.record_audit_event(
                subject="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
        except Exception:
            logger.exception("Recording run_error audit event failed")

    def _finish(self, report: SyncReport, started_at: datetime, *, status: str, message: str) -> SyncReport:
        report.status = status
        report.message = message
        report.duration_ms = _elapsed_ms(started_at)
        try:
            run_id = self.state_store.record_sync_run(
                trigger=report.trigger,
                status=status,
                message=message,
                duration_ms=report.duration_ms,
                matched=report.matched,
                new_events=report.new_events,
                skipped_duplicates=report.skipped_duplicates,
            )
        except Exception:
            logger.exception("Recording sync run failed")
        else:
            logger.info(
                "Sync run %s finished: status=%s matched=%d new=%d duplicates=%d",
                run_id,
                status,
                report.matched,
                report.new_events,
                report.skipped_duplicates,
            )
        return report
