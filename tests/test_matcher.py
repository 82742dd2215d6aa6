import unittest

from keytally.matcher import dedup_key, deltas_for, match_events
from keytally.models import CalendarEvent, TrackingKey


def _event(
    summary: str,
    start: str | None = "2026-02-01T10:00:00Z",
    end: str | None = "2026-02-01T11:30:00Z",
    calendar_id: str = "c1",
    all_day: bool = False,
) -> CalendarEvent:
    return CalendarEvent(
        event_id=f"evt-{summary}-{start}",
        summary=summary,
        start=start,
        end=end,
        all_day=all_day,
        calendar_id=calendar_id,
        calendar_name=calendar_id,
    )


class MatchEventsTests(unittest.TestCase):
    def test_single_match_produces_record(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM", search_key="GPM")]
        outcome = match_events(keys, [_event("GPM Vorlesung")], set())

        self.assertEqual(outcome.matched, 1)
        self.assertEqual(outcome.skipped_duplicates, 0)
        self.assertEqual(len(outcome.records), 1)
        record = outcome.records[0]
        self.assertEqual(record.duration_minutes, 90)
        self.assertEqual(record.key_id, "k1")
        self.assertEqual(record.key_name, "GPM")
        self.assertEqual(record.start_time, "2026-02-01T10:00:00Z")
        self.assertEqual(record.end_time, "2026-02-01T11:30:00Z")
        self.assertEqual(record.event_date, "2026-02-01")
        deltas = deltas_for(outcome.records)
        self.assertEqual(deltas["k1"].add_minutes, 90)
        self.assertEqual(deltas["k1"].add_events, 1)

    def test_existing_tuple_is_skipped_as_duplicate(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM")]
        existing = {dedup_key("k1", "GPM Vorlesung", "2026-02-01T10:00:00Z")}
        outcome = match_events(keys, [_event("GPM Vorlesung")], existing)

        self.assertEqual(outcome.matched, 1)
        self.assertEqual(outcome.skipped_duplicates, 1)
        self.assertEqual(outcome.records, [])
        self.assertEqual(deltas_for(outcome.records), {})

    def test_existing_set_is_not_mutated(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM")]
        existing: set[tuple[str, str, str]] = set()
        match_events(keys, [_event("GPM Vorlesung")], existing)
        self.assertEqual(existing, set())

    def test_substring_match_is_case_insensitive(self) -> None:
        keys = [TrackingKey(key_id="k1", name="Course", search_key="GPM")]
        outcome = match_events(keys, [_event("gpm review session")])
        self.assertEqual(len(outcome.records), 1)

    def test_calendar_restriction(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM", calendar_id="cal-A")]
        outcome = match_events(keys, [_event("GPM", calendar_id="cal-B"), _event("GPM", calendar_id="cal-A")])
        self.assertEqual(outcome.matched, 1)
        self.assertEqual(len(outcome.records), 1)

    def test_one_event_matches_multiple_keys_independently(self) -> None:
        keys = [
            TrackingKey(key_id="k1", name="GPM"),
            TrackingKey(key_id="k2", name="Exam", search_key="klausur"),
        ]
        outcome = match_events(keys, [_event("GPM Klausur")])

        self.assertEqual(outcome.matched, 2)
        self.assertEqual([record.key_id for record in outcome.records], ["k1", "k2"])
        deltas = deltas_for(outcome.records)
        self.assertEqual(deltas["k1"].add_minutes, 90)
        self.assertEqual(deltas["k2"].add_minutes, 90)

    def test_zero_and_negative_durations_are_dropped_silently(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM")]
        events = [
            _event("GPM zero", end="2026-02-01T10:00:00Z"),
            _event("GPM inverted", end="2026-02-01T09:00:00Z"),
        ]
        outcome = match_events(keys, events)
        self.assertEqual(outcome.matched, 0)
        self.assertEqual(outcome.skipped_all_day, 0)
        self.assertEqual(outcome.records, [])

    def test_all_day_and_missing_bounds_are_counted(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM")]
        events = [
            _event("GPM day", start="2026-02-01", end="2026-02-02", all_day=True),
            _event("GPM no end", end=None),
            _event("GPM no start", start=None),
            _event("GPM date only", start="2026-02-01", end="2026-02-02"),
        ]
        outcome = match_events(keys, events)
        self.assertEqual(outcome.skipped_all_day, 4)
        self.assertEqual(outcome.matched, 0)

    def test_empty_summary_is_ignored_everywhere(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM")]
        outcome = match_events(keys, [_event(""), _event("", start="2026-02-01", all_day=True)])
        self.assertEqual(outcome.matched, 0)
        self.assertEqual(outcome.skipped_all_day, 0)
        self.assertEqual(outcome.skipped_duplicates, 0)

    def test_key_without_usable_term_never_matches(self) -> None:
        keys = [TrackingKey(key_id="k1", name="   ", search_key="  ")]
        outcome = match_events(keys, [_event("anything at all")])
        self.assertEqual(outcome.matched, 0)

    def test_duplicate_within_same_batch_is_caught(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM")]
        events = [_event("GPM", calendar_id="c1"), _event("GPM", calendar_id="c2")]
        outcome = match_events(keys, events)
        self.assertEqual(outcome.matched, 2)
        self.assertEqual(outcome.skipped_duplicates, 1)
        self.assertEqual(len(outcome.records), 1)

    def test_records_have_unique_dedup_tuples(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM"), TrackingKey(key_id="k2", name="Vorlesung")]
        events = [
            _event("GPM Vorlesung"),
            _event("GPM Vorlesung"),
            _event("GPM Vorlesung", start="2026-02-02T10:00:00Z", end="2026-02-02T11:00:00Z"),
        ]
        outcome = match_events(keys, events)
        identities = [record.dedup_key for record in outcome.records]
        self.assertEqual(len(identities), len(set(identities)))
        self.assertEqual(len(identities), 4)

    def test_deltas_accumulate_per_key(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM")]
        events = [
            _event("GPM a", start="2026-02-01T10:00:00Z", end="2026-02-01T11:00:00Z"),
            _event("GPM b", start="2026-02-02T10:00:00Z", end="2026-02-02T11:00:00Z"),
            _event("GPM c", start="2026-02-03T10:00:00Z", end="2026-02-03T11:00:00Z"),
        ]
        outcome = match_events(keys, events)
        deltas = deltas_for(outcome.records)
        self.assertEqual(deltas["k1"].add_minutes, 180)
        self.assertEqual(deltas["k1"].add_events, 3)

    def test_unparseable_times_skip_only_that_event(self) -> None:
        keys = [TrackingKey(key_id="k1", name="GPM")]
        bad = _event("GPM broken", start="2026-02-02Tnot-a-time", end="2026-02-02T11:00:00Z")
        events = [
            _event("GPM good", start="2026-02-01T10:00:00Z", end="2026-02-01T11:00:00Z"),
            bad,
            _event("GPM bad end", start="2026-02-03T10:00:00Z", end="2026-02-03T25:00"),
        ]
        outcome = match_events(keys, events)

        self.assertEqual([record.summary for record in outcome.records], ["GPM good"])
        self.assertEqual(outcome.matched, 1)
        self.assertEqual(outcome.skipped_all_day, 0)
        self.assertEqual([event.summary for event in outcome.invalid_events], ["GPM broken", "GPM bad end"])
        self.assertIs(outcome.invalid_events[0], bad)


if __name__ == "__main__":
    unittest.main()
