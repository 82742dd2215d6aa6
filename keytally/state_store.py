from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from keytally.models import DEFAULT_KEY_COLOR, MatchedEventRecord, TrackingKey


KEY_COLUMNS = "id, name, search_key, calendar_id, color, total_minutes, event_count, created_at"
EVENT_COLUMNS = (
    "id, summary, key_id, key_name, start_time, end_time, duration_minutes, event_date, created_at"
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _key_from_row(row: sqlite3.Row) -> TrackingKey:
    return TrackingKey(
        key_id=str(row["id"]),
        name=str(row["name"] or ""),
        search_key=str(row["search_key"] or ""),
        calendar_id=str(row["calendar_id"] or ""),
        color=str(row["color"] or DEFAULT_KEY_COLOR),
        total_minutes=int(row["total_minutes"] or 0),
        event_count=int(row["event_count"] or 0),
        created_at=str(row["created_at"] or ""),
    )


class StateStore:
    """sqlite-backed tracking key registry, dedup ledger and run history."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS tracking_keys (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            search_key TEXT NOT NULL DEFAULT '',
            calendar_id TEXT,
            color TEXT NOT NULL DEFAULT '#000000',
            total_minutes INTEGER NOT NULL DEFAULT 0,
            event_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS tracked_events (
            id TEXT PRIMARY KEY,
            summary TEXT NOT NULL,
            key_id TEXT NOT NULL REFERENCES tracking_keys(id) ON DELETE CASCADE,
            key_name TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            duration_minutes INTEGER NOT NULL,
            event_date TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (key_id, summary, start_time)
        );

        CREATE INDEX IF NOT EXISTS idx_tracked_events_start ON tracked_events(start_time);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            matched INTEGER NOT NULL,
            new_events INTEGER NOT NULL,
            skipped_duplicates INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            subject TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Tracking key registry

    def load_keys(self) -> list[TrackingKey]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT {KEY_COLUMNS} FROM tracking_keys ORDER BY created_at ASC, rowid ASC"
                ).fetchall()
        return [_key_from_row(row) for row in rows]

    def get_key(self, key_id: str) -> TrackingKey | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {KEY_COLUMNS} FROM tracking_keys WHERE id = ?",
                    (str(key_id),),
                ).fetchone()
        return _key_from_row(row) if row else None

    def create_key(
        self,
        *,
        name: str,
        search_key: str = "",
        calendar_id: str = "",
        color: str = "",
    ) -> TrackingKey:
        name = str(name or "").strip()
        if not name:
            raise ValueError("name is required")
        key_id = uuid.uuid4().hex
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tracking_keys(id, name, search_key, calendar_id, color, total_minutes, event_count, created_at)
                    VALUES (?, ?, ?, ?, ?, 0, 0, ?)
                    """,
                    (
                        key_id,
                        name,
                        str(search_key or "").strip() or name,
                        str(calendar_id or "").strip() or None,
                        str(color or "").strip() or DEFAULT_KEY_COLOR,
                        _utc_now(),
                    ),
                )
                conn.commit()
        created = self.get_key(key_id)
        assert created is not None
        return created

    def update_key(self, key_id: str, **changes: Any) -> TrackingKey:
        allowed = {"name", "search_key", "calendar_id", "color"}
        updates = {k: v for k, v in changes.items() if k in allowed and v is not None}
        if "name" in updates and not str(updates["name"]).strip():
            raise ValueError("name must not be empty")
        with self._lock:
            if self.get_key(key_id) is None:
                raise KeyError(key_id)
            if updates:
                assignments = ", ".join(f"{column} = ?" for column in updates)
                values = [
                    (str(value).strip() or None) if column == "calendar_id" else str(value).strip()
                    for column, value in updates.items()
                ]
                with self._connect() as conn:
                    conn.execute(
                        f"UPDATE tracking_keys SET {assignments} WHERE id = ?",
                        (*values, str(key_id)),
                    )
                    conn.commit()
            updated = self.get_key(key_id)
        assert updated is not None
        return updated

    def delete_key(self, key_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM tracking_keys WHERE id = ?", (str(key_id),))
                conn.commit()
                return cursor.rowcount > 0

    def increment_key_stats(self, key_id: str, minutes: int) -> None:
        """Add ``minutes`` to the key's total and bump its event count by one."""
        self.apply_key_delta(key_id, minutes, 1)

    def apply_key_delta(self, key_id: str, minutes: int, events: int) -> None:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE tracking_keys
                    SET total_minutes = total_minutes + ?, event_count = event_count + ?
                    WHERE id = ?
                    """,
                    (int(minutes), int(events), str(key_id)),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    raise KeyError(key_id)

    # Dedup ledger

    def load_existing_tuples(self) -> set[tuple[str, str, str]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT key_id, summary, start_time FROM tracked_events").fetchall()
        return {(str(row["key_id"]), str(row["summary"]), str(row["start_time"])) for row in rows}

    def insert_tracked_event(self, record: MatchedEventRecord) -> str:
        event_id = uuid.uuid4().hex
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO tracked_events({EVENT_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event_id,
                        record.summary,
                        record.key_id,
                        record.key_name,
                        record.start_time,
                        record.end_time,
                        int(record.duration_minutes),
                        record.event_date,
                        _utc_now(),
                    ),
                )
                conn.commit()
        return event_id

    def delete_tracked_event(self, event_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM tracked_events WHERE id = ?", (str(event_id),))
                conn.commit()
                return cursor.rowcount > 0

    def list_tracked_events(
        self,
        *,
        key_id: str | None = None,
        search: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if key_id:
            clauses.append("key_id = ?")
            params.append(str(key_id))
        if search:
            clauses.append("instr(lower(summary), ?) > 0")
            params.append(str(search).lower())
        sql = f"SELECT {EVENT_COLUMNS} FROM tracked_events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY start_time DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(1, int(limit)))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def key_stats_from_ledger(self) -> dict[str, dict[str, int]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT key_id, COUNT(*) AS event_count, COALESCE(SUM(duration_minutes), 0) AS total_minutes
                    FROM tracked_events
                    GROUP BY key_id
                    """
                ).fetchall()
        return {
            str(row["key_id"]): {
                "event_count": int(row["event_count"]),
                "total_minutes": int(row["total_minutes"]),
            }
            for row in rows
        }

    # Run history

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        matched: int,
        new_events: int,
        skipped_duplicates: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, matched, new_events, skipped_duplicates)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        trigger,
                        status,
                        message,
                        int(duration_ms),
                        int(matched),
                        int(new_events),
                        int(skipped_duplicates),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, matched, new_events, skipped_duplicates
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        subject: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, subject, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), subject, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_id, created_at, subject, action, details_json
                    FROM audit_events
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
