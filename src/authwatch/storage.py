"""SQLite event store.

One connection is shared by the daemon's event loop and the scheduler
thread; every statement runs under a lock, so callers on both threads can
use a Storage instance concurrently.

Timestamps are stored as UTC text in a fixed-width format so that string
comparison matches chronological order.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from authwatch.errors import StorageError
from authwatch.schema import Event, EventKind

logger = logging.getLogger(__name__)

TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

SCHEMA = """
CREATE TABLE IF NOT EXISTS ssh_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    event_type TEXT NOT NULL,
    username TEXT NOT NULL,
    ip TEXT NOT NULL,
    port INTEGER,
    method TEXT NOT NULL,
    country TEXT,
    city TEXT,
    invalid_user INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_timestamp ON ssh_events(timestamp);
CREATE INDEX IF NOT EXISTS idx_event_type ON ssh_events(event_type);
CREATE INDEX IF NOT EXISTS idx_ip ON ssh_events(ip);
CREATE INDEX IF NOT EXISTS idx_username ON ssh_events(username);
"""


@dataclass
class EventRecord:
    """A stored event row."""

    id: int
    ts: datetime
    event_type: str
    username: str
    ip: str
    port: int
    method: str
    country: str
    city: str
    invalid_user: bool


@dataclass
class FailedStats:
    total_attempts: int
    unique_ips: int
    unique_usernames: int


@dataclass
class OverallStats:
    success_count: int
    failed_count: int
    unique_ips: int
    unique_usernames: int


@dataclass
class UsernameCount:
    username: str
    count: int


@dataclass
class IPCount:
    ip: str
    country: str
    city: str
    count: int


def to_db_ts(ts: datetime) -> str:
    """Format a datetime as UTC text. Naive datetimes are taken as local time."""
    return ts.astimezone(timezone.utc).strftime(TS_FORMAT)


def from_db_ts(value: str) -> datetime:
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


class Storage:
    """SQLite-backed store for SSH events."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open database {db_path}: {e}") from e

        logger.debug(f"Opened event database {db_path}")

    def _execute(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                with self._conn:
                    return self._conn.execute(query, params)
            except sqlite3.Error as e:
                raise StorageError(f"Database error: {e}") from e

    def _fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"Database error: {e}") from e

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchone()
            except sqlite3.Error as e:
                raise StorageError(f"Database error: {e}") from e

    def insert_event(self, event: Event, country: str = "", city: str = "") -> int:
        """Store an event with its (possibly empty) location.

        Returns:
            Row ID of the inserted event.
        """
        cursor = self._execute(
            """
            INSERT INTO ssh_events
                (timestamp, event_type, username, ip, port, method,
                 country, city, invalid_user, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                to_db_ts(event.ts),
                event.kind.value,
                event.username,
                event.ip,
                event.port,
                event.method,
                country or None,
                city or None,
                int(event.invalid_user),
                to_db_ts(datetime.now(timezone.utc)),
            ),
        )
        return cursor.lastrowid

    def cleanup(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete events older than ``retention_days``.

        Returns:
            Number of deleted rows.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=retention_days)
        cursor = self._execute(
            "DELETE FROM ssh_events WHERE timestamp < ?", (to_db_ts(cutoff),)
        )
        return cursor.rowcount

    def failed_stats(self, since: datetime, until: datetime) -> FailedStats:
        row = self._fetchone(
            """
            SELECT COUNT(*) AS total,
                   COUNT(DISTINCT ip) AS unique_ips,
                   COUNT(DISTINCT username) AS unique_usernames
            FROM ssh_events
            WHERE event_type = 'failure' AND timestamp >= ? AND timestamp < ?
            """,
            (to_db_ts(since), to_db_ts(until)),
        )
        return FailedStats(
            total_attempts=row["total"],
            unique_ips=row["unique_ips"],
            unique_usernames=row["unique_usernames"],
        )

    def success_count(self, since: datetime, until: datetime) -> int:
        row = self._fetchone(
            """
            SELECT COUNT(*) AS count FROM ssh_events
            WHERE event_type = 'success' AND timestamp >= ? AND timestamp < ?
            """,
            (to_db_ts(since), to_db_ts(until)),
        )
        return row["count"]

    def top_usernames(self, since: datetime, until: datetime, limit: int = 10) -> list[UsernameCount]:
        rows = self._fetchall(
            """
            SELECT username, COUNT(*) AS count
            FROM ssh_events
            WHERE event_type = 'failure' AND timestamp >= ? AND timestamp < ?
            GROUP BY username
            ORDER BY count DESC, username ASC
            LIMIT ?
            """,
            (to_db_ts(since), to_db_ts(until), limit),
        )
        return [UsernameCount(username=r["username"], count=r["count"]) for r in rows]

    def top_ips(self, since: datetime, until: datetime, limit: int = 10) -> list[IPCount]:
        rows = self._fetchall(
            """
            SELECT ip,
                   COALESCE(MAX(country), '') AS country,
                   COALESCE(MAX(city), '') AS city,
                   COUNT(*) AS count
            FROM ssh_events
            WHERE event_type = 'failure' AND timestamp >= ? AND timestamp < ?
            GROUP BY ip
            ORDER BY count DESC, ip ASC
            LIMIT ?
            """,
            (to_db_ts(since), to_db_ts(until), limit),
        )
        return [
            IPCount(ip=r["ip"], country=r["country"], city=r["city"], count=r["count"])
            for r in rows
        ]

    def overall_stats(self, since: datetime) -> OverallStats:
        row = self._fetchone(
            """
            SELECT COUNT(CASE WHEN event_type = 'success' THEN 1 END) AS success,
                   COUNT(CASE WHEN event_type = 'failure' THEN 1 END) AS failed,
                   COUNT(DISTINCT ip) AS unique_ips,
                   COUNT(DISTINCT username) AS unique_usernames
            FROM ssh_events
            WHERE timestamp >= ?
            """,
            (to_db_ts(since),),
        )
        return OverallStats(
            success_count=row["success"],
            failed_count=row["failed"],
            unique_ips=row["unique_ips"],
            unique_usernames=row["unique_usernames"],
        )

    def successful_logins(self, since: datetime) -> list[EventRecord]:
        """Successful logins since ``since``, newest first."""
        rows = self._fetchall(
            """
            SELECT * FROM ssh_events
            WHERE event_type = ? AND timestamp >= ?
            ORDER BY timestamp DESC
            """,
            (EventKind.SUCCESS.value, to_db_ts(since)),
        )
        return [self._to_record(r) for r in rows]

    def last_login_for_user(self, username: str) -> Optional[EventRecord]:
        row = self._fetchone(
            """
            SELECT * FROM ssh_events
            WHERE event_type = ? AND username = ?
            ORDER BY timestamp DESC
            LIMIT 1
            """,
            (EventKind.SUCCESS.value, username),
        )
        return self._to_record(row) if row else None

    @staticmethod
    def _to_record(row: sqlite3.Row) -> EventRecord:
        return EventRecord(
            id=row["id"],
            ts=from_db_ts(row["timestamp"]),
            event_type=row["event_type"],
            username=row["username"],
            ip=row["ip"],
            port=row["port"] or 0,
            method=row["method"],
            country=row["country"] or "",
            city=row["city"] or "",
            invalid_user=bool(row["invalid_user"]),
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug(f"Closed event database {self.db_path}")
