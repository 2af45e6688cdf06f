from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tasksync.models import SyncMapping

_MAPPING_COLUMNS = (
    "local_id",
    "remote_uid",
    "last_sync_time",
    "last_known_fingerprint",
    "last_known_local_modified",
    "last_known_remote_modified",
    "remote_concurrency_token",
    "remote_location",
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            changes_applied INTEGER NOT NULL,
            conflicts INTEGER NOT NULL,
            failed INTEGER NOT NULL DEFAULT 0,
            errors_json TEXT NOT NULL DEFAULT '[]'
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            local_id TEXT NOT NULL,
            remote_uid TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_mappings (
            local_id TEXT PRIMARY KEY,
            remote_uid TEXT NOT NULL UNIQUE,
            last_sync_time TEXT NOT NULL,
            last_known_fingerprint TEXT NOT NULL,
            last_known_local_modified TEXT NOT NULL,
            last_known_remote_modified TEXT NOT NULL,
            remote_concurrency_token TEXT NOT NULL DEFAULT '',
            remote_location TEXT NOT NULL DEFAULT ''
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        conflicts: int,
        failed: int = 0,
        errors: list[str] | None = None,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, trigger, status, message, duration_ms, changes_applied, conflicts, failed, errors_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        trigger,
                        status,
                        message,
                        duration_ms,
                        changes_applied,
                        conflicts,
                        failed,
                        json.dumps(errors or [], ensure_ascii=False),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        return self.record_sync_run(
            trigger=trigger,
            status="running",
            message=message,
            duration_ms=0,
            changes_applied=0,
            conflicts=0,
        )

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        conflicts: int,
        failed: int = 0,
        errors: list[str] | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, changes_applied = ?, conflicts = ?,
                        failed = ?, errors_json = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(changes_applied),
                        int(conflicts),
                        int(failed),
                        json.dumps(errors or [], ensure_ascii=False),
                        int(run_id),
                    ),
                )
                conn.commit()

    def _run_from_row(self, row: sqlite3.Row) -> dict[str, Any]:
        item = dict(row)
        item["errors"] = json.loads(item.pop("errors_json") or "[]")
        return item

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, changes_applied, conflicts,
                           failed, errors_json
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [self._run_from_row(row) for row in rows]

    def get_sync_run(self, run_id: int) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, changes_applied, conflicts,
                           failed, errors_json
                    FROM sync_runs
                    WHERE id = ?
                    """,
                    (int(run_id),),
                ).fetchone()
        return self._run_from_row(row) if row else None

    def record_audit_event(
        self,
        *,
        local_id: str,
        remote_uid: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, local_id, remote_uid, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        _utc_now(),
                        local_id,
                        remote_uid,
                        action,
                        json.dumps(details, ensure_ascii=False, default=str),
                    ),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, local_id, remote_uid, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, local_id, remote_uid, action, details_json
                        FROM audit_events
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

    def load_mappings(self) -> list[SyncMapping]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT {', '.join(_MAPPING_COLUMNS)} FROM sync_mappings ORDER BY local_id"
                ).fetchall()
        return [SyncMapping.from_dict(dict(row)) for row in rows]

    def save_mappings(self, rows: list[dict[str, Any]]) -> None:
        """Replace the whole mapping table with ``rows`` in one transaction."""
        placeholders = ", ".join("?" for _ in _MAPPING_COLUMNS)
        values = [tuple(row.get(column) or "" for column in _MAPPING_COLUMNS) for row in rows]
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM sync_mappings")
                conn.executemany(
                    f"INSERT INTO sync_mappings({', '.join(_MAPPING_COLUMNS)}) VALUES ({placeholders})",
                    values,
                )
                conn.commit()
