import tempfile
import threading
import unittest
from datetime import datetime, timezone
from pathlib import Path

from keytally.config_manager import ConfigManager
from keytally.models import CalendarEvent, CalendarInfo
from keytally.state_store import StateStore
from keytally.sync_engine import SyncEngine


NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)


class _FakeCalendarService:
    def __init__(self) -> None:
        self.events_by_calendar: dict[str, list[CalendarEvent]] = {
            "c1": [
                CalendarEvent(
                    event_id="evt-1",
                    summary="GPM Vorlesung",
                    start="2026-02-01T10:00:00Z",
                    end="2026-02-01T11:30:00Z",
                    calendar_id="c1",
                    calendar_name="Uni",
                ),
                CalendarEvent(
                    event_id="evt-2",
                    summary="Team Holiday",
                    start="2026-02-03",
                    end="2026-02-04",
                    all_day=True,
                    calendar_id="c1",
                    calendar_name="Uni",
                ),
            ],
            "c2": [],
        }
        self.fetch_gate: threading.Event | None = None
        self.closed = 0

    def close(self) -> None:
        self.closed += 1

    def list_calendars(self) -> list[CalendarInfo]:
        return [CalendarInfo(calendar_id=cid, name=cid) for cid in self.events_by_calendar]

    def fetch_events(self, calendar_id: str, _start: datetime, _end: datetime) -> list[CalendarEvent]:
        if self.fetch_gate is not None:
            self.fetch_gate.wait(timeout=0.2)
        return list(self.events_by_calendar[calendar_id])


class SyncEngineStateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        config_manager = ConfigManager(Path(self.temp_dir.name) / "config.yaml")
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.calendar_service = _FakeCalendarService()
        self.engine = SyncEngine(
            config_manager,
            self.state_store,
            calendar_factory=lambda _config, _token: self.calendar_service,
        )
        self.key = self.state_store.create_key(name="GPM")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_first_pass_records_match_and_updates_stats(self) -> None:
        report = self.engine.run_once("token", now=NOW)

        self.assertEqual(report.status, "success")
        self.assertEqual(report.total_calendar_events, 2)
        self.assertEqual(report.matched, 1)
        self.assertEqual(report.new_events, 1)
        self.assertEqual(report.skipped_all_day, 1)
        events = self.state_store.list_tracked_events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["duration_minutes"], 90)
        self.assertEqual(events[0]["event_date"], "2026-02-01")
        key = self.state_store.get_key(self.key.key_id)
        self.assertEqual((key.total_minutes, key.event_count), (90, 1))

    def test_second_pass_is_idempotent(self) -> None:
        self.engine.run_once("token", now=NOW)
        second = self.engine.run_once("token", now=NOW)

        self.assertEqual(second.matched, 1)
        self.assertEqual(second.new_events, 0)
        self.assertEqual(second.skipped_duplicates, 1)
        self.assertEqual(second.keys_updated, 0)
        self.assertEqual(len(self.state_store.list_tracked_events()), 1)
        key = self.state_store.get_key(self.key.key_id)
        self.assertEqual((key.total_minutes, key.event_count), (90, 1))

    def test_aggregates_match_ledger_in_increment_mode(self) -> None:
        self.engine.config_manager.update({"sync": {"aggregate_mode": "increment"}})
        self.calendar_service.events_by_calendar["c2"] = [
            CalendarEvent(
                event_id=f"evt-c2-{day}",
                summary="gpm tutorial",
                start=f"2026-02-0{day}T08:00:00Z",
                end=f"2026-02-0{day}T08:30:00Z",
                calendar_id="c2",
                calendar_name="c2",
            )
            for day in (4, 5)
        ]

        self.engine.run_once("token", now=NOW)

        key = self.state_store.get_key(self.key.key_id)
        stats = self.state_store.key_stats_from_ledger()[self.key.key_id]
        self.assertEqual((key.total_minutes, key.event_count), (150, 3))
        self.assertEqual(stats, {"total_minutes": 150, "event_count": 3})

    def _run_concurrently(self, tokens: list[str]) -> list:
        self.calendar_service.fetch_gate = threading.Event()
        reports = []

        def run(token: str) -> None:
            reports.append(self.engine.run_once(token, now=NOW))

        threads = [threading.Thread(target=run, args=(token,)) for token in tokens]
        for thread in threads:
            thread.start()
        self.calendar_service.fetch_gate.set()
        for thread in threads:
            thread.join(timeout=5)
        return reports

    def test_concurrent_passes_with_same_token_do_not_double_record(self) -> None:
        reports = self._run_concurrently(["token", "token"])

        self.assertEqual(sorted(report.new_events for report in reports), [0, 1])
        self.assertEqual(len(self.state_store.list_tracked_events()), 1)
        key = self.state_store.get_key(self.key.key_id)
        self.assertEqual(key.event_count, 1)

    def test_concurrent_passes_with_different_tokens_share_the_ledger_lock(self) -> None:
        reports = self._run_concurrently(["token-1", "token-2"])

        self.assertEqual(sorted(report.new_events for report in reports), [0, 1])
        self.assertEqual(sorted(report.skipped_duplicates for report in reports), [0, 1])
        for report in reports:
            self.assertFalse(any("Insert failed" in line for line in report.debug))
        key = self.state_store.get_key(self.key.key_id)
        self.assertEqual((key.total_minutes, key.event_count), (90, 1))

    def test_calendar_source_closed_once_per_pass(self) -> None:
        self.engine.run_once("token", now=NOW)
        self.engine.run_once("token", now=NOW)
        self.assertEqual(self.calendar_service.closed, 2)

    def test_deleted_key_cascades_and_rematches_on_new_key(self) -> None:
        self.engine.run_once("token", now=NOW)
        self.state_store.delete_key(self.key.key_id)
        self.assertEqual(self.state_store.list_tracked_events(), [])

        renamed = self.state_store.create_key(name="Lectures", search_key="vorlesung")
        report = self.engine.run_once("token", now=NOW)

        self.assertEqual(report.new_events, 1)
        events = self.state_store.list_tracked_events()
        self.assertEqual(events[0]["key_name"], "Lectures")
        self.assertEqual(events[0]["key_id"], renamed.key_id)


if __name__ == "__main__":
    unittest.main()
