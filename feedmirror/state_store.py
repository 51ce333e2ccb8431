from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

RUN_COUNT_FIELDS = ("created", "updated", "migrated", "unchanged", "removed", "failed")

_RUN_INSERT_COLUMNS = ("run_at", "trigger", "status", "message", "duration_ms", *RUN_COUNT_FIELDS)
_RUN_COLUMNS = ", ".join(("id", *_RUN_INSERT_COLUMNS))
_AUDIT_COLUMNS = "id, run_id, created_at, identity, action, details_json"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    duration_ms INTEGER NOT NULL,
    created INTEGER NOT NULL DEFAULT 0,
    updated INTEGER NOT NULL DEFAULT 0,
    migrated INTEGER NOT NULL DEFAULT 0,
    unchanged INTEGER NOT NULL DEFAULT 0,
    removed INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    created_at TEXT NOT NULL,
    identity TEXT NOT NULL,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_events_run ON audit_events(run_id);

CREATE TABLE IF NOT EXISTS app_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _counts_tuple(counts: dict[str, int] | None) -> tuple[int, ...]:
    counts = counts or {}
    return tuple(int(counts.get(name, 0) or 0) for name in RUN_COUNT_FIELDS)


def _audit_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["details"] = json.loads(item.pop("details_json") or "{}")
    return item


class StateStore:
    """Run history, the per-mutation audit trail and small key/value metadata."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        with self._session() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    def _fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._session() as conn:
            return conn.execute(sql, params).fetchall()

    def _fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        with self._session() as conn:
            return conn.execute(sql, params).fetchone()

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        counts: dict[str, int] | None = None,
    ) -> int:
        placeholders = ", ".join("?" for _ in _RUN_INSERT_COLUMNS)
        with self._session() as conn:
            cursor = conn.execute(
                f"INSERT INTO sync_runs({', '.join(_RUN_INSERT_COLUMNS)}) VALUES ({placeholders})",
                (_utc_now(), trigger, status, message, int(duration_ms), *_counts_tuple(counts)),
            )
            return int(cursor.lastrowid)

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        return self.record_sync_run(trigger=trigger, status="running", message=message, duration_ms=0)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        counts: dict[str, int] | None = None,
    ) -> None:
        assignments = ", ".join(f"{name} = ?" for name in RUN_COUNT_FIELDS)
        with self._session() as conn:
            conn.execute(
                f"UPDATE sync_runs SET status = ?, message = ?, duration_ms = ?, {assignments} WHERE id = ?",
                (str(status), str(message), int(duration_ms), *_counts_tuple(counts), int(run_id)),
            )

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._fetch_all(
            f"SELECT {_RUN_COLUMNS} FROM sync_runs ORDER BY id DESC LIMIT ?",
            (max(1, limit),),
        )
        return [dict(row) for row in rows]

    def get_sync_run(self, run_id: int) -> dict[str, Any] | None:
        row = self._fetch_one(f"SELECT {_RUN_COLUMNS} FROM sync_runs WHERE id = ?", (int(run_id),))
        return dict(row) if row else None

    def record_audit_event(
        self,
        *,
        identity: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._session() as conn:
            conn.execute(
                "INSERT INTO audit_events(run_id, created_at, identity, action, details_json) VALUES (?, ?, ?, ?, ?)",
                (run_id, _utc_now(), identity, action, json.dumps(details, ensure_ascii=False, default=str)),
            )

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        if run_id is None:
            rows = self._fetch_all(
                f"SELECT {_AUDIT_COLUMNS} FROM audit_events ORDER BY id DESC LIMIT ?",
                (max(1, limit),),
            )
        else:
            rows = self._fetch_all(
                f"SELECT {_AUDIT_COLUMNS} FROM audit_events WHERE run_id = ? ORDER BY id DESC LIMIT ?",
                (int(run_id), max(1, limit)),
            )
        return [_audit_row(row) for row in rows]

    def audit_summary(self, run_id: int) -> dict[str, int]:
        """Number of audit events per action for one run."""
        rows = self._fetch_all(
            "SELECT action, COUNT(*) AS total FROM audit_events WHERE run_id = ? GROUP BY action ORDER BY action",
            (int(run_id),),
        )
        return {str(row["action"]): int(row["total"]) for row in rows}

    def set_meta(self, key: str, value: str) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO app_meta(key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (str(key), str(value), _utc_now()),
            )

    def get_meta(self, key: str) -> str | None:
        row = self._fetch_one("SELECT value FROM app_meta WHERE key = ?", (str(key),))
        if row is None:
            return None
        return str(row["value"])
