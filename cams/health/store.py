"""Result reporter: persists run outcomes and a bounded per-application history.

Each recorded run updates the schedule's last-run fields and appends one
row per probed connection. Only the newest ``history_limit`` rows per
application are kept.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from ..schedules.store import ScheduleStore
from .engine import FailureKind, RunResult, TestResult

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


def _result_from_row(row: sqlite3.Row) -> TestResult:
    details = row["details"]
    return TestResult(
        application_id=row["application_id"],
        connection_id=row["connection_id"],
        connection_type=row["connection_type"],
        success=bool(row["success"]),
        latency_ms=row["latency_ms"],
        error=FailureKind(row["error"]) if row["error"] else None,
        error_code=row["error_code"],
        message=row["message"] or "",
        details=json.loads(details) if details else None,
        timestamp=row["timestamp"],
    )


class ResultHistory:
    """Most-recent-first results for one application.

    Iterating runs a fresh query each time, so the sequence can be walked
    again after new results arrive. Rows are fetched lazily from the cursor.
    """

    def __init__(self, store: "ResultStore", application_id: str, limit: int | None = None) -> None:
        self._store = store
        self.application_id = application_id
        self.limit = limit

    def __iter__(self) -> Iterator[TestResult]:
        cursor = self._store._get_conn().execute(
            "SELECT * FROM test_results WHERE application_id = ? "
            "ORDER BY timestamp DESC, id DESC LIMIT ?",
            (self.application_id, self.limit if self.limit is not None else -1),
        )
        try:
            for row in cursor:
                yield _result_from_row(row)
        finally:
            cursor.close()

    def to_list(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self]


class ResultStore:
    """SQLite-backed storage for connection test results."""

    def __init__(
        self,
        schedules: ScheduleStore,
        db_path: Path | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._schedules = schedules
        self._db_path = Path(db_path) if db_path else schedules.db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.history_limit = history_limit
        self._conn: sqlite3.Connection | None = None
        self._stale: set[str] = set()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS test_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                application_id TEXT NOT NULL,
                connection_id TEXT NOT NULL,
                connection_type TEXT NOT NULL,
                success INTEGER NOT NULL,
                latency_ms REAL,
                error TEXT,
                error_code TEXT,
                message TEXT,
                details TEXT,
                timestamp TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_results_application
                ON test_results (application_id, timestamp DESC);
        """)
        conn.commit()

    @property
    def stale(self) -> set[str]:
        """Applications whose latest run could not be persisted."""
        return set(self._stale)

    def record(self, application_id: str, run: RunResult) -> bool:
        """Persist a run. Retries once; a second failure marks the application stale."""
        for attempt in (1, 2):
            try:
                self._write(application_id, run)
            except sqlite3.Error:
                if attempt == 1:
                    logger.warning("Failed to record run for %s, retrying", application_id, exc_info=True)
                    continue
                logger.error("Giving up recording run for %s, marking it stale", application_id, exc_info=True)
                self._stale.add(application_id)
                return False
            self._stale.discard(application_id)
            return True
        return False

    def _write(self, application_id: str, run: RunResult) -> None:
        self._schedules.record_run(
            application_id, run.status, run.message, run.duration_ms, run.started_at,
        )
        conn = self._get_conn()
        with conn:
            for r in run.results:
                conn.execute(
                    "INSERT INTO test_results "
                    "(application_id, connection_id, connection_type, success, latency_ms, "
                    "error, error_code, message, details, timestamp) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        application_id, r.connection_id, r.connection_type, int(r.success),
                        r.latency_ms, r.error.value if r.error else None, r.error_code,
                        r.message, json.dumps(r.details) if r.details else None, r.timestamp,
                    ),
                )
            conn.execute(
                "DELETE FROM test_results WHERE application_id = ? AND id NOT IN ("
                "  SELECT id FROM test_results WHERE application_id = ? "
                "  ORDER BY timestamp DESC, id DESC LIMIT ?"
                ")",
                (application_id, application_id, self.history_limit),
            )

    def history(self, application_id: str, limit: int | None = None) -> ResultHistory:
        """Results for an application, most recent first."""
        return ResultHistory(self, application_id, limit)

    def latest_by_connection(self, application_id: str) -> dict[str, dict[str, Any]]:
        """Latest result for each connection of an application."""
        rows = self._get_conn().execute(
            "SELECT tr.* FROM test_results tr "
            "INNER JOIN ("
            "  SELECT connection_id, MAX(id) AS max_id "
            "  FROM test_results WHERE application_id = ? "
            "  GROUP BY connection_id"
            ") latest ON tr.id = latest.max_id",
            (application_id,),
        ).fetchall()
        return {r["connection_id"]: _result_from_row(r).to_dict() for r in rows}

    def success_rate(self, application_id: str) -> float:
        """Percentage of successful probes in the retained history."""
        row = self._get_conn().execute(
            "SELECT COUNT(*) AS total, SUM(success) AS passed "
            "FROM test_results WHERE application_id = ?",
            (application_id,),
        ).fetchone()
        if not row["total"]:
            return 100.0  # No data = assume up
        return round((row["passed"] or 0) / row["total"] * 100, 1)

    def clear(self, application_id: str) -> int:
        """Drop the history of an application (used when its schedule is deleted)."""
        conn = self._get_conn()
        with conn:
            cursor = conn.execute(
                "DELETE FROM test_results WHERE application_id = ?", (application_id,),
            )
        self._stale.discard(application_id)
        return cursor.rowcount

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
