# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: SQLite persistence for connection observations (Connections) and traffic events (TrafficLogs).
both tables are append-only with an autoincrement id and an index on Timestamp. timestamps are stored
as fixed-width ISO-8601 UTC strings, so string order is time order and they parse back exactly.
the store is the one place the poll thread and the retention thread meet: every call takes the lock
and runs in its own transaction. a store that was never initialized (or was closed) does nothing.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging  # for noting failed statements
import os  # for creating the database folder
import sqlite3  # the database itself
import threading  # one connection shared by two timers
from datetime import datetime, timedelta, timezone  # for timestamp text and the purge cutoff

from agent.errors import PersistenceError
from agent.models import ConnectionRecord, TrafficEvent, utc_now

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS Connections (
    Id INTEGER PRIMARY KEY AUTOINCREMENT,
    ProcessId INTEGER NOT NULL,
    ProcessName TEXT NOT NULL,
    LocalAddress TEXT NOT NULL,
    LocalPort INTEGER NOT NULL,
    RemoteAddress TEXT NOT NULL,
    RemotePort INTEGER NOT NULL,
    State TEXT NOT NULL,
    Protocol TEXT NOT NULL DEFAULT 'TCP',
    DataSent INTEGER DEFAULT 0,
    DataReceived INTEGER DEFAULT 0,
    Timestamp TEXT NOT NULL,
    IsSuspicious INTEGER DEFAULT 0,
    SuspiciousReason TEXT DEFAULT ''
);

CREATE TABLE IF NOT EXISTS TrafficLogs (
    Id INTEGER PRIMARY KEY AUTOINCREMENT,
    ProcessName TEXT NOT NULL,
    ProcessId INTEGER NOT NULL,
    RemoteAddress TEXT NOT NULL,
    RemotePort INTEGER NOT NULL,
    Action TEXT NOT NULL,
    BytesTransferred INTEGER DEFAULT 0,
    Timestamp TEXT NOT NULL,
    Details TEXT DEFAULT '',
    IsSuspicious INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_connections_timestamp ON Connections(Timestamp);
CREATE INDEX IF NOT EXISTS idx_trafficlogs_timestamp ON TrafficLogs(Timestamp);
"""


def format_timestamp(ts: datetime) -> str:
    # naive datetimes are taken as UTC
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(text: str) -> datetime:
    return datetime.fromisoformat(text)


class PersistenceStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path  # file path, or ":memory:"
        self._conn: sqlite3.Connection | None = None  # None means uninitialized
        self._lock = threading.RLock()

    @property
    def initialized(self) -> bool:
        return self._conn is not None

    def initialize(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            if self.db_path != ":memory:":
                folder = os.path.dirname(os.path.abspath(self.db_path))
                os.makedirs(folder, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            try:
                conn.executescript(SCHEMA)
            except sqlite3.Error as e:
                conn.close()
                raise PersistenceError(f"could not create schema in {self.db_path}: {e}") from e
            self._conn = conn

    def _execute(self, sql: str, params: tuple = ()) -> None:
        with self._lock:
            conn = self._conn
            if conn is None:  # uninitialized store, writes are no-ops
                return
            try:
                with conn:  # commit on success, roll back on error
                    conn.execute(sql, params)
            except sqlite3.Error as e:
                log.warning("statement failed: %s", e)
                raise PersistenceError(str(e)) from e

    def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._lock:
            conn = self._conn
            if conn is None:
                return []
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e

    def insert_connection(self, record: ConnectionRecord) -> None:
        self._execute(
            "INSERT INTO Connections (ProcessId, ProcessName, LocalAddress, LocalPort, RemoteAddress,"
            " RemotePort, State, Protocol, DataSent, DataReceived, Timestamp, IsSuspicious, SuspiciousReason)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.pid,
                record.process_name,
                record.local_address,
                record.local_port,
                record.remote_address,
                record.remote_port,
                record.state,
                record.protocol,
                record.data_sent,
                record.data_received,
                format_timestamp(record.timestamp),
                1 if record.is_suspicious else 0,
                record.suspicious_reason,
            ),
        )

    def insert_traffic_event(self, event: TrafficEvent) -> None:
        self._execute(
            "INSERT INTO TrafficLogs (ProcessName, ProcessId, RemoteAddress, RemotePort, Action,"
            " BytesTransferred, Timestamp, Details, IsSuspicious)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                event.process_name,
                event.pid,
                event.remote_address,
                event.remote_port,
                event.action,
                event.bytes_transferred,
                format_timestamp(event.timestamp),
                event.details,
                1 if event.is_suspicious else 0,
            ),
        )

    def list_recent_traffic_events(self, limit: int = 500) -> list[TrafficEvent]:
        rows = self._fetchall(
            "SELECT Id, ProcessName, ProcessId, RemoteAddress, RemotePort, Action, BytesTransferred,"
            " Timestamp, Details, IsSuspicious FROM TrafficLogs ORDER BY Timestamp DESC, Id DESC LIMIT ?",
            (int(limit),),
        )
        return [
            TrafficEvent(
                id=row[0],
                process_name=row[1],
                pid=row[2],
                remote_address=row[3],
                remote_port=row[4],
                action=row[5],
                bytes_transferred=row[6] or 0,
                timestamp=parse_timestamp(row[7]),
                details=row[8] or "",
                is_suspicious=row[9] == 1,
            )
            for row in rows
        ]

    def count_records(self) -> tuple[int, int]:
        rows = self._fetchall(
            "SELECT (SELECT COUNT(*) FROM Connections), (SELECT COUNT(*) FROM TrafficLogs)"
        )
        if not rows:
            return (0, 0)
        return (int(rows[0][0]), int(rows[0][1]))

    def delete_older_than(self, max_age: timedelta, now: datetime | None = None) -> int:
        """Delete rows older than now - max_age from both tables, then VACUUM. Returns rows deleted."""
        cutoff = format_timestamp((now or utc_now()) - max_age)
        with self._lock:
            conn = self._conn
            if conn is None:
                return 0
            try:
                with conn:
                    deleted = conn.execute("DELETE FROM Connections WHERE Timestamp < ?", (cutoff,)).rowcount
                    deleted += conn.execute("DELETE FROM TrafficLogs WHERE Timestamp < ?", (cutoff,)).rowcount
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e
            try:
                conn.execute("VACUUM")  # must run outside a transaction
            except sqlite3.Error as e:  # the delete is committed, only compaction is skipped
                log.warning("vacuum after purging %d rows failed: %s", deleted, e)
        return deleted

    def close(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
