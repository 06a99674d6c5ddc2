from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from agent.models import ConnectionRecord
from agent.store import PersistenceStore

FIXED_TS = datetime(2026, 1, 15, 12, 0, 0, 123456, tzinfo=timezone.utc)


def make_record(**overrides: Any) -> ConnectionRecord:
    """ConnectionRecord with harmless defaults; override whatever the test cares about."""
    fields: dict[str, Any] = {
        "pid": 1234,
        "process_name": "chrome.exe",
        "local_address": "192.168.1.10",
        "local_port": 51000,
        "remote_address": "93.184.216.34",
        "remote_port": 443,
        "state": "ESTABLISHED",
        "timestamp": FIXED_TS,
    }
    fields.update(overrides)
    return ConnectionRecord(**fields)


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def store(tmp_path):
    """Initialized store backed by a temp file, closed after the test."""
    s = PersistenceStore(str(tmp_path / "network_logs.db"))
    s.initialize()
    yield s
    s.close()


class FakeSource:
    """TcpTableSource that replays prepared row lists, or raises."""

    def __init__(self, *batches: Any) -> None:
        self.batches = list(batches)
        self.calls = 0

    def rows(self):
        self.calls += 1
        batch = self.batches.pop(0) if len(self.batches) > 1 else self.batches[0]
        if isinstance(batch, Exception):
            raise batch
        return batch


@pytest.fixture
def fake_source():
    return FakeSource
