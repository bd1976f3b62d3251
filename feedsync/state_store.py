from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from feedsync.models import (
    MISSING_FROM_FEED_REASON,
    USER_DELETE_REASON,
    ExternalEventRow,
    FetchedEvent,
    SyncOperations,
    serialize_datetime,
    utc_now,
)
from feedsync.reconciler import needs_update


CategoryChooser = Callable[[FetchedEvent], Optional[str]]


def _utc_now() -> str:
    return utc_now().isoformat()


@dataclass
class ApplySummary:
    created: int = 0
    updated: int = 0
    skipped_updates: int = 0
    restored: int = 0
    soft_deleted: int = 0
    immediately_deleted: int = 0
    misses_recorded: int = 0
    metadata_created: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class StateStore:
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
        CREATE TABLE IF NOT EXISTS external_events (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL,
            provider_event_uid TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            start_date TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_date TEXT,
            end_time TEXT,
            is_all_day INTEGER NOT NULL DEFAULT 0,
            external_last_modified TEXT,
            raw_payload_json TEXT NOT NULL DEFAULT '{}',
            miss_count INTEGER NOT NULL DEFAULT 0,
            deleted INTEGER NOT NULL DEFAULT 0,
            deleted_reason TEXT,
            fetched_at TEXT,
            last_seen_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_external_events_calendar
            ON external_events(calendar_id, provider_event_uid);

        CREATE TABLE IF NOT EXISTS event_local_meta (
            external_event_id TEXT PRIMARY KEY
                REFERENCES external_events(id) ON DELETE CASCADE,
            category_id TEXT,
            manually_set_category INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            calendar_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            counts_json TEXT NOT NULL DEFAULT '{}'
        );

        CREATE TABLE IF NOT EXISTS event_sync_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            external_event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    @staticmethod
    def _row_to_model(row: sqlite3.Row) -> ExternalEventRow:
        data = dict(row)
        data["raw_payload"] = json.loads(data.pop("raw_payload_json") or "{}")
        return ExternalEventRow.from_dict(data)

    def load_rows(self, calendar_id: str, include_deleted: bool = True) -> list[ExternalEventRow]:
        query = "SELECT * FROM external_events WHERE calendar_id = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        query += " ORDER BY created_at, id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, (calendar_id,)).fetchall()
        return [self._row_to_model(row) for row in rows]

    def get_row(self, row_id: str) -> ExternalEventRow | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM external_events WHERE id = ?", (row_id,)).fetchone()
        return self._row_to_model(row) if row else None

    @staticmethod
    def _event_columns(event: FetchedEvent, now_iso: str) -> dict[str, Any]:
        return {
            "provider_event_uid": event.uid,
            "title": event.summary,
            "description": event.description,
            "location": event.location,
            "start_date": event.start_date_string,
            "start_time": event.start_time_string,
            "end_date": event.end_date_string,
            "end_time": event.end_time_string,
            "is_all_day": int(bool(event.is_all_day)),
            "external_last_modified": serialize_datetime(event.last_modified) or now_iso,
            "raw_payload_json": json.dumps(event.raw_payload(), ensure_ascii=False),
        }

    @staticmethod
    def _update_row(conn: sqlite3.Connection, row_id: str, values: dict[str, Any]) -> None:
        assignments = ", ".join(f"{column} = ?" for column in values)
        conn.execute(
            f"UPDATE external_events SET {assignments} WHERE id = ?",  # nosec B608
            (*values.values(), row_id),
        )

    @staticmethod
    def _log(
        conn: sqlite3.Connection,
        *,
        run_id: int | None,
        calendar_id: str,
        row_id: str,
        action: str,
        details: dict[str, Any],
        now_iso: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO event_sync_log(run_id, created_at, calendar_id, external_event_id, action, details_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (run_id, now_iso, calendar_id, row_id, action, json.dumps(details, ensure_ascii=False)),
        )

    def apply_operations(
        self,
        calendar_id: str,
        ops: SyncOperations,
        *,
        run_id: int | None = None,
        category_for: CategoryChooser | None = None,
        now: datetime | None = None,
    ) -> ApplySummary:
        """Apply a planned batch inside a single transaction.

        Besides the five mutation lists this increments ``miss_count`` for
        every row in ``ops.misses``. Any error rolls the whole batch back.
        """
        now_iso = serialize_datetime(now) if now is not None else _utc_now()
        summary = ApplySummary()
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    for op in ops.creates:
                        row_id = uuid.uuid4().hex
                        columns = self._event_columns(op.event, now_iso)
                        columns.update(
                            {
                                "id": row_id,
                                "calendar_id": calendar_id,
                                "miss_count": 0,
                                "deleted": 0,
                                "fetched_at": now_iso,
                                "last_seen_at": now_iso,
                                "created_at": now_iso,
                                "updated_at": now_iso,
                            }
                        )
                        placeholders = ", ".join("?" for _ in columns)
                        conn.execute(
                            f"INSERT INTO external_events({', '.join(columns)}) VALUES ({placeholders})",  # nosec B608
                            tuple(columns.values()),
                        )
                        summary.created += 1
                        if category_for is not None:
                            category_id = category_for(op.event)
                            conn.execute(
                                """
                                INSERT INTO event_local_meta(external_event_id, category_id, manually_set_category,
                                                             created_at, updated_at)
                                VALUES (?, ?, 0, ?, ?)
                                """,
                                (row_id, category_id, now_iso, now_iso),
                            )
                            summary.metadata_created += 1
                        self._log(
                            conn,
                            run_id=run_id,
                            calendar_id=calendar_id,
                            row_id=row_id,
                            action="created",
                            details={"title": op.event.summary, "reason": op.reason},
                            now_iso=now_iso,
                        )

                    for op in ops.updates:
                        current = conn.execute("SELECT * FROM external_events WHERE id = ?", (op.db_row_id,)).fetchone()
                        if current is None:
                            continue
                        values: dict[str, Any] = {"miss_count": 0, "last_seen_at": now_iso, "fetched_at": now_iso}
                        if needs_update(op.event, self._row_to_model(current)):
                            values.update(self._event_columns(op.event, now_iso))
                            values["updated_at"] = now_iso
                            summary.updated += 1
                            self._log(
                                conn,
                                run_id=run_id,
                                calendar_id=calendar_id,
                                row_id=op.db_row_id,
                                action="updated",
                                details={"title": op.event.summary, "reason": op.reason},
                                now_iso=now_iso,
                            )
                        else:
                            summary.skipped_updates += 1
                        self._update_row(conn, op.db_row_id, values)

                    for op in ops.restores:
                        values = self._event_columns(op.event, now_iso)
                        values.update(
                            {
                                "miss_count": 0,
                                "deleted": 0,
                                "deleted_reason": None,
                                "last_seen_at": now_iso,
                                "fetched_at": now_iso,
                                "updated_at": now_iso,
                            }
                        )
                        self._update_row(conn, op.db_row_id, values)
                        summary.restored += 1
                        self._log(
                            conn,
                            run_id=run_id,
                            calendar_id=calendar_id,
                            row_id=op.db_row_id,
                            action="restored",
                            details={"title": op.event.summary, "reason": op.reason},
                            now_iso=now_iso,
                        )

                    for op in ops.soft_deletes:
                        self._update_row(
                            conn,
                            op.db_row_id,
                            {"deleted": 1, "deleted_reason": MISSING_FROM_FEED_REASON, "updated_at": now_iso},
                        )
                        summary.soft_deleted += 1
                        self._log(
                            conn,
                            run_id=run_id,
                            calendar_id=calendar_id,
                            row_id=op.db_row_id,
                            action="deleted",
                            details={"reason": op.reason, "soft_delete": True},
                            now_iso=now_iso,
                        )

                    for op in ops.immediate_deletes:
                        conn.execute("DELETE FROM external_events WHERE id = ?", (op.db_row_id,))
                        summary.immediately_deleted += 1
                        self._log(
                            conn,
                            run_id=run_id,
                            calendar_id=calendar_id,
                            row_id=op.db_row_id,
                            action="deleted",
                            details={"reason": op.reason, "cancelled": True},
                            now_iso=now_iso,
                        )

                    for op in ops.misses:
                        conn.execute(
                            "UPDATE external_events SET miss_count = COALESCE(miss_count, 0) + 1 WHERE id = ?",
                            (op.db_row_id,),
                        )
                        summary.misses_recorded += 1
            finally:
                conn.close()
        return summary

    def get_local_meta(self, row_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT external_event_id, category_id, manually_set_category, created_at, updated_at
                    FROM event_local_meta
                    WHERE external_event_id = ?
                    """,
                    (row_id,),
                ).fetchone()
        if row is None:
            return None
        item = dict(row)
        item["manually_set_category"] = bool(item["manually_set_category"])
        return item

    def set_category(self, row_id: str, category_id: str | None, *, manual: bool = True) -> None:
        now_iso = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO event_local_meta(external_event_id, category_id, manually_set_category,
                                                 created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(external_event_id) DO UPDATE SET
                        category_id = excluded.category_id,
                        manually_set_category = excluded.manually_set_category,
                        updated_at = excluded.updated_at
                    """,
                    (row_id, category_id, int(manual), now_iso, now_iso),
                )
                conn.commit()

    def meta_backfill_candidates(self, calendar_id: str) -> list[tuple[ExternalEventRow, dict[str, Any] | None]]:
        """Active rows whose category was not set by hand, with their metadata if any."""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT e.*, m.category_id AS meta_category_id,
                           m.manually_set_category AS meta_manual,
                           m.external_event_id AS meta_event_id
                    FROM external_events e
                    LEFT JOIN event_local_meta m ON m.external_event_id = e.id
                    WHERE e.calendar_id = ? AND e.deleted = 0
                      AND (m.external_event_id IS NULL OR m.manually_set_category = 0)
                    ORDER BY e.created_at, e.id
                    """,
                    (calendar_id,),
                ).fetchall()
        output: list[tuple[ExternalEventRow, dict[str, Any] | None]] = []
        for row in rows:
            data = dict(row)
            meta_event_id = data.pop("meta_event_id")
            meta = None
            if meta_event_id is not None:
                meta = {"category_id": data["meta_category_id"], "manually_set_category": bool(data["meta_manual"])}
            data.pop("meta_category_id")
            data.pop("meta_manual")
            data["raw_payload"] = json.loads(data.pop("raw_payload_json") or "{}")
            output.append((ExternalEventRow.from_dict(data), meta))
        return output

    def mark_user_deleted(self, row_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE external_events SET deleted = 1, deleted_reason = ?, updated_at = ? WHERE id = ?",
                    (USER_DELETE_REASON, _utc_now(), row_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    def start_sync_run(self, *, calendar_id: str, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(calendar_id, run_at, trigger, status, message, duration_ms, counts_json)
                    VALUES (?, ?, ?, 'running', ?, 0, '{}')
                    """,
                    (calendar_id, _utc_now(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        counts: dict[str, int] | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, counts_json = ?
                    WHERE id = ?
                    """,
                    (str(status), str(message), int(duration_ms), json.dumps(counts or {}), int(run_id)),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20, calendar_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if calendar_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, calendar_id, run_at, trigger, status, message, duration_ms, counts_json
                        FROM sync_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, calendar_id, run_at, trigger, status, message, duration_ms, counts_json
                        FROM sync_runs
                        WHERE calendar_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (calendar_id, max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["counts"] = json.loads(item.pop("counts_json") or "{}")
            output.append(item)
        return output

    def recent_sync_log(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, calendar_id, external_event_id, action, details_json
                        FROM event_sync_log
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, calendar_id, external_event_id, action, details_json
                        FROM event_sync_log
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
