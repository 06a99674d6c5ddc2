# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: compares two successive snapshots and reports which connections appeared and which went away.
identity is (pid, remote address, remote port, state), so a state change counts as one disconnect of the
old key plus one new connection under the new key. downstream consumers count events, not connections,
and rely on that pairing.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

from collections.abc import Mapping, Sequence  # type hints for the previous map and current snapshot
from dataclasses import dataclass, field  # for the diff result
from datetime import datetime  # type hint for event timestamps

from agent.models import ConnectionKey, ConnectionRecord, TcpState, TrafficEvent, utc_now

CONNECTED = "Connected"
DISCONNECTED = "Disconnected"


@dataclass
class DiffResult:
    new: list[ConnectionRecord] = field(default_factory=list)  # in snapshot order
    closed: list[ConnectionRecord] = field(default_factory=list)  # prior records, in previous order
    next_previous: dict[ConnectionKey, ConnectionRecord] = field(default_factory=dict)


def diff(
    previous: Mapping[ConnectionKey, ConnectionRecord],
    current: Sequence[ConnectionRecord],
) -> DiffResult:
    result = DiffResult()
    current_keys: set[ConnectionKey] = set()
    for record in current:
        key = record.key
        current_keys.add(key)
        if key not in previous:
            result.new.append(record)
    for key, record in previous.items():
        if key not in current_keys:
            result.closed.append(record)
    # full replacement, never merged with the old map
    result.next_previous = {record.key: record for record in current}
    return result


def connect_event(record: ConnectionRecord, now: datetime | None = None) -> TrafficEvent:
    action = CONNECTED if record.state == TcpState.ESTABLISHED.value else record.state
    return TrafficEvent(
        process_name=record.process_name,
        pid=record.pid,
        remote_address=record.remote_address,
        remote_port=record.remote_port,
        action=action,
        details=f"{record.process_name} → {record.remote_endpoint} [{record.state}]",
        timestamp=now or utc_now(),
        is_suspicious=record.is_suspicious,
    )


def disconnect_event(record: ConnectionRecord, now: datetime | None = None) -> TrafficEvent:
    return TrafficEvent(
        process_name=record.process_name,
        pid=record.pid,
        remote_address=record.remote_address,
        remote_port=record.remote_port,
        action=DISCONNECTED,
        details=f"{record.process_name} disconnected from {record.remote_endpoint}",
        timestamp=now or utc_now(),
        is_suspicious=record.is_suspicious,
    )
