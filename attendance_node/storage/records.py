"""
Attendance Record Store - SQLite-based local persistence of committed records.
"""

import sqlite3
import os
import threading
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional

from ..core.exceptions import RecordStoreError


logger = logging.getLogger(__name__)


class AttendanceStatus(Enum):
    PRESENT = "Present"
    LATE = "Late"
    ABSENT = "Absent"


class CaptureMethod(Enum):
    AUTOMATIC = "Automatic"
    MANUAL = "Manual"


@dataclass(frozen=True)
class AttendanceRecord:
    """One committed attendance entry."""
    identity_id: str
    context: str
    timestamp: str  # ISO-8601, UTC
    status: AttendanceStatus = AttendanceStatus.PRESENT
    capture_method: CaptureMethod = CaptureMethod.AUTOMATIC
    notes: Optional[str] = None

    @staticmethod
    def now() -> str:
        return datetime.now(timezone.utc).isoformat()


class RecordStore:
    """Accepts committed attendance records."""

    def save_many(self, records: List[AttendanceRecord]) -> int:
        raise NotImplementedError


class SQLiteRecordStore(RecordStore):
    """
    SQLite-backed record store.

    A commit is written in a single transaction: either every record of the
    session lands or none does.
    """

    def __init__(self, db_path: str = "data/attendance.db"):
        self.db_path = db_path
        self._lock = threading.Lock()

        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)

        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self):
        """Initialize database schema."""
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS attendance_records (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        identity_id TEXT NOT NULL,
                        context TEXT NOT NULL,
                        timestamp TEXT NOT NULL,
                        status TEXT NOT NULL,
                        capture_method TEXT NOT NULL,
                        notes TEXT,
                        created_at TEXT DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_context ON attendance_records(context)
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_identity ON attendance_records(identity_id)
                """)
                conn.commit()
            finally:
                conn.close()

        logger.info(f"Initialized attendance database at {self.db_path}")

    def save_many(self, records: List[AttendanceRecord]) -> int:
        """
        Persist records atomically.

        Returns:
            Number of records written

        Raises:
            RecordStoreError: the transaction failed; nothing was written
        """
        rows = [
            (r.identity_id, r.context, r.timestamp, r.status.value, r.capture_method.value, r.notes)
            for r in records
        ]
        if not rows:
            return 0

        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    conn.executemany("""
                        INSERT INTO attendance_records
                        (identity_id, context, timestamp, status, capture_method, notes)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, rows)
            except sqlite3.Error as e:
                raise RecordStoreError(f"Failed to save attendance records: {e}") from e
            finally:
                conn.close()

        logger.info(f"Saved {len(rows)} attendance records")
        return len(rows)

    def get_records(self, context: Optional[str] = None, limit: int = 500) -> List[AttendanceRecord]:
        """Most recent records first, optionally for one context."""
        query = """
            SELECT identity_id, context, timestamp, status, capture_method, notes
            FROM attendance_records
        """
        params: list = []
        if context is not None:
            query += " WHERE context = ?"
            params.append(context)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(query, params).fetchall()
            finally:
                conn.close()

        return [
            AttendanceRecord(
                identity_id=row[0],
                context=row[1],
                timestamp=row[2],
                status=AttendanceStatus(row[3]),
                capture_method=CaptureMethod(row[4]),
                notes=row[5],
            )
            for row in rows
        ]

    def count(self, context: Optional[str] = None) -> int:
        with self._lock:
            conn = self._connect()
            try:
                if context is None:
                    row = conn.execute("SELECT COUNT(*) FROM attendance_records").fetchone()
                else:
                    row = conn.execute(
                        "SELECT COUNT(*) FROM attendance_records WHERE context = ?", (context,)
                    ).fetchone()
            finally:
                conn.close()
        return row[0]

    def get_stats(self) -> dict:
        """Record counts overall and per status."""
        with self._lock:
            conn = self._connect()
            try:
                total = conn.execute("SELECT COUNT(*) FROM attendance_records").fetchone()[0]
                by_status = dict(conn.execute(
                    "SELECT status, COUNT(*) FROM attendance_records GROUP BY status"
                ).fetchall())
            finally:
                conn.close()

        return {"total_records": total, "records_by_status": by_status}


class MemoryRecordStore(RecordStore):
    """In-process store; used when no database is wanted (demos, tests)."""

    def __init__(self):
        self.records: List[AttendanceRecord] = []
        self._lock = threading.Lock()

    def save_many(self, records: Iterable[AttendanceRecord]) -> int:
        records = list(records)
        with self._lock:
            self.records.extend(records)
        return len(records)
