"""Schedule storage: SQLite-backed connection test schedules.

One schedule per application. Toggling a schedule off keeps the row;
only an explicit delete removes it.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .cadence import Cadence, ScheduleValidationError

logger = logging.getLogger(__name__)

DB_PATH = Path("data") / "cams.db"


class RunStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    PARTIAL = "partial"  # some connections failed
    SKIPPED = "skipped"  # no active connections
    ERROR = "error"  # the run itself could not execute
    UNKNOWN = "unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@dataclass
class Schedule:
    """Connection test schedule for one application."""

    application_id: str
    cadence: str
    enabled: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    last_run_at: datetime | None = None
    last_result: RunStatus = RunStatus.UNKNOWN
    last_message: str = ""
    last_duration_ms: float | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def parsed_cadence(self) -> Cadence:
        return Cadence.parse(self.cadence)

    def next_run_at(self) -> datetime | None:
        """When the schedule is next due. ``None`` means due immediately."""
        cadence = self.parsed_cadence
        if cadence.is_cron:
            # Cron runs are anchored to the last run or the last edit, whichever is later
            base = max(d for d in (self.last_run_at, self.updated_at) if d is not None)
            return cadence.next_after(base)
        if self.last_run_at is None:
            return None
        return cadence.next_after(self.last_run_at)

    def is_due(self, now: datetime | None = None) -> bool:
        if not self.enabled:
            return False
        next_run = self.next_run_at()
        return next_run is None or (now or utcnow()) >= next_run

    def to_dict(self) -> dict[str, Any]:
        try:
            cadence = self.parsed_cadence
            next_run = _to_iso(self.next_run_at())
            description = cadence.describe()
        except ScheduleValidationError:
            next_run, description = None, "Invalid cadence"
        return {
            "id": self.id,
            "application_id": self.application_id,
            "cadence": self.cadence,
            "description": description,
            "enabled": self.enabled,
            "last_run_at": _to_iso(self.last_run_at),
            "last_result": self.last_result.value,
            "last_message": self.last_message,
            "last_duration_ms": self.last_duration_ms,
            "next_run_at": next_run if self.enabled else None,
            "created_at": _to_iso(self.created_at),
            "updated_at": _to_iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Schedule":
        try:
            last_result = RunStatus(row.get("last_result") or "unknown")
        except ValueError:
            last_result = RunStatus.UNKNOWN
        return cls(
            id=row["id"],
            application_id=row["application_id"],
            cadence=row["cadence"],
            enabled=bool(row.get("enabled", 1)),
            last_run_at=_from_iso(row.get("last_run_at")),
            last_result=last_result,
            last_message=row.get("last_message") or "",
            last_duration_ms=row.get("last_duration_ms"),
            created_at=_from_iso(row.get("created_at")) or utcnow(),
            updated_at=_from_iso(row.get("updated_at")) or utcnow(),
        )


class ScheduleStore:
    """SQLite-backed schedule storage."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path or DB_PATH)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schedules (
                    id               TEXT PRIMARY KEY,
                    application_id   TEXT NOT NULL UNIQUE,
                    cadence          TEXT NOT NULL,
                    enabled          INTEGER NOT NULL DEFAULT 1,
                    last_run_at      TEXT,
                    last_result      TEXT NOT NULL DEFAULT 'unknown',
                    last_message     TEXT NOT NULL DEFAULT '',
                    last_duration_ms REAL,
                    created_at       TEXT NOT NULL,
                    updated_at       TEXT NOT NULL
                )
            """)

    # ── CRUD ──────────────────────────────────────────────────────────────

    def get(self, application_id: str) -> Schedule | None:
        """Get the schedule for an application."""
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM schedules WHERE application_id = ?", (application_id,)
            ).fetchone()
        return Schedule.from_row(dict(row)) if row else None

    def list(self) -> list[Schedule]:
        """List all schedules, oldest first."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM schedules ORDER BY created_at, application_id"
            ).fetchall()
        return [Schedule.from_row(dict(r)) for r in rows]

    def upsert(self, schedule: Schedule) -> Schedule:
        """Create or update the schedule for ``schedule.application_id``.

        Raises ``ScheduleValidationError`` for a missing application id or a
        malformed cadence. Updating keeps the existing run history fields.
        """
        if not schedule.application_id:
            raise ScheduleValidationError("Application id is required")
        Cadence.parse(schedule.cadence)

        now = utcnow()
        existing = self.get(schedule.application_id)
        with self._conn() as conn:
            if existing:
                conn.execute(
                    "UPDATE schedules SET cadence = ?, enabled = ?, updated_at = ? "
                    "WHERE application_id = ?",
                    (schedule.cadence.strip(), int(schedule.enabled), now.isoformat(),
                     schedule.application_id),
                )
            else:
                conn.execute("""
                    INSERT INTO schedules (id, application_id, cadence, enabled,
                                           last_run_at, last_result, last_message,
                                           last_duration_ms, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    schedule.id, schedule.application_id, schedule.cadence.strip(),
                    int(schedule.enabled), _to_iso(schedule.last_run_at),
                    schedule.last_result.value, schedule.last_message,
                    schedule.last_duration_ms, now.isoformat(), now.isoformat(),
                ))
        logger.info(
            "%s schedule for %s (cadence=%s, enabled=%s)",
            "Updated" if existing else "Created",
            schedule.application_id, schedule.cadence, schedule.enabled,
        )
        return self.get(schedule.application_id)  # type: ignore[return-value]

    def toggle(self, application_id: str, enabled: bool) -> Schedule | None:
        """Enable or disable a schedule without deleting it."""
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE schedules SET enabled = ?, updated_at = ? WHERE application_id = ?",
                (int(enabled), utcnow().isoformat(), application_id),
            )
        if cursor.rowcount == 0:
            return None
        return self.get(application_id)

    def record_run(
        self,
        application_id: str,
        status: RunStatus,
        message: str,
        duration_ms: float | None,
        ran_at: datetime,
    ) -> bool:
        """Write the outcome of a run back onto the schedule."""
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE schedules SET last_run_at = ?, last_result = ?, "
                "last_message = ?, last_duration_ms = ? WHERE application_id = ?",
                (ran_at.isoformat(), status.value, message[:1000], duration_ms, application_id),
            )
        return cursor.rowcount > 0

    def delete(self, application_id: str) -> bool:
        """Delete a schedule."""
        with self._conn() as conn:
            cursor = conn.execute(
                "DELETE FROM schedules WHERE application_id = ?", (application_id,)
            )
        return cursor.rowcount > 0

    def close(self) -> None:
        """No-op, connections are created per call."""
        pass
