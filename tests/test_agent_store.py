"""
Tests for agent.store - PersistenceStore functionality
Tests schema creation, inserts, recent-event reads, counts, purge and the uninitialized no-op mode.
"""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from agent.errors import PersistenceError
from agent.models import TrafficEvent
from agent.store import PersistenceStore, format_timestamp, parse_timestamp

NOW = datetime(2026, 5, 4, 10, 0, 0, tzinfo=timezone.utc)


def _event(ts: datetime, **kw) -> TrafficEvent:
    fields = {
        "process_name": "chrome.exe",
        "pid": 100,
        "remote_address": "142.250.0.1",
        "remote_port": 443,
        "action": "Connected",
        "details": "chrome.exe → 142.250.0.1:443 [ESTABLISHED]",
        "timestamp": ts,
    }
    fields.update(kw)
    return TrafficEvent(**fields)


class TestTimestamps:
    def test_fixed_width_utc(self):
        text = format_timestamp(datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc))
        assert text == "2026-01-01T00:00:00.000000+00:00"

    def test_naive_is_treated_as_utc(self):
        assert format_timestamp(datetime(2026, 1, 1, 5)) == "2026-01-01T05:00:00.000000+00:00"

    def test_other_offsets_normalized(self):
        plus_two = timezone(timedelta(hours=2))
        text = format_timestamp(datetime(2026, 1, 1, 12, tzinfo=plus_two))
        assert text.startswith("2026-01-01T10:00:00")

    def test_round_trip(self):
        ts = datetime(2026, 7, 8, 9, 10, 11, 654321, tzinfo=timezone.utc)
        assert parse_timestamp(format_timestamp(ts)) == ts


class TestSchema:
    def test_tables_and_indexes_created(self, tmp_path):
        path = tmp_path / "sub" / "logs.db"
        s = PersistenceStore(str(path))
        s.initialize()
        s.close()

        conn = sqlite3.connect(str(path))
        names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
        conn.close()
        assert {"Connections", "TrafficLogs", "idx_connections_timestamp", "idx_trafficlogs_timestamp"} <= names

    def test_initialize_twice_is_harmless(self, store):
        store.initialize()
        assert store.initialized


class TestInsertAndRead:
    def test_traffic_event_round_trip(self, store):
        """Every field comes back identical except the assigned id"""
        ev = _event(
            datetime(2026, 5, 4, 9, 59, 58, 123456, tzinfo=timezone.utc),
            bytes_transferred=98765,
            is_suspicious=True,
            action="SYN_SENT",
            details="x → y [SYN_SENT]",
        )
        store.insert_traffic_event(ev)

        (back,) = store.list_recent_traffic_events(10)

        assert back.id is not None
        assert replace(back, id=None) == ev

    def test_recent_events_newest_first_and_limited(self, store):
        for minutes in (5, 1, 3, 2, 4):
            store.insert_traffic_event(_event(NOW - timedelta(minutes=minutes), pid=minutes))

        recent = store.list_recent_traffic_events(3)

        assert [e.pid for e in recent] == [1, 2, 3]

    def test_ids_are_monotonic(self, store):
        for i in range(3):
            store.insert_traffic_event(_event(NOW, pid=i))
        ids = sorted(e.id for e in store.list_recent_traffic_events(10))
        assert ids == [ids[0], ids[0] + 1, ids[0] + 2]

    def test_insert_connection_counts(self, store, record_factory):
        store.insert_connection(record_factory())
        store.insert_connection(record_factory(is_suspicious=True, suspicious_reason="Suspicious port 4444"))
        store.insert_traffic_event(_event(NOW))

        assert store.count_records() == (2, 1)

    def test_connection_row_fields(self, store, record_factory):
        rec = record_factory(is_suspicious=True, suspicious_reason="a; b", data_sent=5, data_received=7)
        store.insert_connection(rec)

        conn = sqlite3.connect(store.db_path)
        row = conn.execute(
            "SELECT ProcessId, ProcessName, LocalAddress, LocalPort, RemoteAddress, RemotePort, State,"
            " Protocol, DataSent, DataReceived, Timestamp, IsSuspicious, SuspiciousReason FROM Connections"
        ).fetchone()
        conn.close()

        assert row == (
            rec.pid, rec.process_name, rec.local_address, rec.local_port, rec.remote_address,
            rec.remote_port, "ESTABLISHED", "TCP", 5, 7, format_timestamp(rec.timestamp), 1, "a; b",
        )

    def test_concurrent_writers(self, store):
        def writer(base):
            for i in range(50):
                store.insert_traffic_event(_event(NOW, pid=base + i))

        threads = [threading.Thread(target=writer, args=(n * 100,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.count_records() == (0, 200)


class TestPurge:
    def test_deletes_only_old_rows(self, store, record_factory):
        """10 rows at 40 minutes and 10 at 5 minutes, 30 minute window leaves the 10 recent ones"""
        for i in range(10):
            store.insert_traffic_event(_event(NOW - timedelta(minutes=40), pid=i))
            store.insert_traffic_event(_event(NOW - timedelta(minutes=5), pid=100 + i))

        deleted = store.delete_older_than(timedelta(minutes=30), now=NOW)

        assert deleted == 10
        assert store.count_records() == (0, 10)
        assert all(e.pid >= 100 for e in store.list_recent_traffic_events(50))

    def test_purges_both_tables(self, store, record_factory):
        store.insert_connection(record_factory(timestamp=NOW - timedelta(hours=2)))
        store.insert_connection(record_factory(timestamp=NOW))
        store.insert_traffic_event(_event(NOW - timedelta(hours=2)))

        assert store.delete_older_than(timedelta(minutes=30), now=NOW) == 2
        assert store.count_records() == (1, 0)

    def test_boundary_row_is_kept(self, store):
        """A row exactly at now - max_age is not older than the window"""
        store.insert_traffic_event(_event(NOW - timedelta(minutes=30)))
        assert store.delete_older_than(timedelta(minutes=30), now=NOW) == 0
        assert store.count_records() == (0, 1)


class _VacuumFails:
    """sqlite3 connection wrapper whose VACUUM is rejected"""

    def __init__(self, conn):
        self._conn = conn

    def __enter__(self):
        return self._conn.__enter__()

    def __exit__(self, *exc):
        return self._conn.__exit__(*exc)

    def execute(self, sql, *args):
        if sql == "VACUUM":
            raise sqlite3.OperationalError("cannot VACUUM - SQL statements in progress")
        return self._conn.execute(sql, *args)

    def close(self):
        self._conn.close()


class TestPurgeCompaction:
    def test_vacuum_failure_keeps_deleted_count(self, store, caplog):
        """A failed compaction is logged and the committed delete is still reported"""
        for i in range(3):
            store.insert_traffic_event(_event(NOW - timedelta(hours=1), pid=i))
        store.insert_traffic_event(_event(NOW))
        store._conn = _VacuumFails(store._conn)

        with caplog.at_level("WARNING", logger="agent.store"):
            deleted = store.delete_older_than(timedelta(minutes=30), now=NOW)

        assert deleted == 3
        assert store.count_records() == (0, 1)
        assert "vacuum" in caplog.text.lower()


class TestUninitialized:
    """A store that was never opened is a no-op"""

    def test_writes_are_noops(self, tmp_path, record_factory):
        s = PersistenceStore(str(tmp_path / "never.db"))
        s.insert_connection(record_factory())
        s.insert_traffic_event(_event(NOW))
        assert not (tmp_path / "never.db").exists()

    def test_reads_are_empty(self, tmp_path):
        s = PersistenceStore(str(tmp_path / "never.db"))
        assert s.list_recent_traffic_events(10) == []
        assert s.count_records() == (0, 0)
        assert s.delete_older_than(timedelta(minutes=30)) == 0

    def test_closed_store_is_noop(self, tmp_path):
        s = PersistenceStore(str(tmp_path / "closed.db"))
        s.initialize()
        s.close()
        s.insert_traffic_event(_event(NOW))
        assert s.count_records() == (0, 0)


class TestFailures:
    def test_failed_write_raises_persistence_error(self, store):
        store._conn.execute("DROP TABLE TrafficLogs")
        with pytest.raises(PersistenceError):
            store.insert_traffic_event(_event(NOW))
