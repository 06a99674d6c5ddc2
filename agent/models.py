# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: plain data types shared by every agent. ConnectionRecord is one TCP connection seen at one poll,
TrafficEvent is the derived connect/disconnect fact that gets stored and published. both are frozen so
nothing downstream can change a verdict after it was stored.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

from dataclasses import asdict, dataclass, field  # for the immutable record types
from datetime import datetime, timezone  # every timestamp is timezone-aware UTC
from enum import Enum  # for the TCP state names
from typing import Any, NamedTuple  # type hints for dict conversion and the diff key


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TcpState(str, Enum):
    """TCP states in the order the OS connection table numbers them (1..12)."""

    CLOSED = "CLOSED"
    LISTEN = "LISTEN"
    SYN_SENT = "SYN_SENT"
    SYN_RCVD = "SYN_RCVD"
    ESTABLISHED = "ESTABLISHED"
    FIN_WAIT1 = "FIN_WAIT1"
    FIN_WAIT2 = "FIN_WAIT2"
    CLOSE_WAIT = "CLOSE_WAIT"
    CLOSING = "CLOSING"
    LAST_ACK = "LAST_ACK"
    TIME_WAIT = "TIME_WAIT"
    DELETE_TCB = "DELETE_TCB"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_code(cls, code: int) -> TcpState:
        # table codes start at 1, anything out of range is UNKNOWN
        if 1 <= code <= 12:
            return _STATE_BY_CODE[code - 1]
        return cls.UNKNOWN


_STATE_BY_CODE: list[TcpState] = list(TcpState)[:12]


class ConnectionKey(NamedTuple):
    """identity of a connection across polls (the OS handle is never part of it)"""

    pid: int
    remote_address: str
    remote_port: int
    state: str


@dataclass(frozen=True)
class ConnectionRecord:
    pid: int  # owning process id
    process_name: str  # "Unknown" when the process could not be looked up
    local_address: str
    local_port: int
    remote_address: str
    remote_port: int
    state: str  # one of the TcpState values
    protocol: str = "TCP"
    data_sent: int = 0  # caller supplied, never read from live counters
    data_received: int = 0
    timestamp: datetime = field(default_factory=utc_now)
    is_suspicious: bool = False
    suspicious_reason: str = ""  # "; " joined reasons, empty when not suspicious

    @property
    def key(self) -> ConnectionKey:
        return ConnectionKey(self.pid, self.remote_address, self.remote_port, self.state)

    @property
    def remote_endpoint(self) -> str:
        return f"{self.remote_address}:{self.remote_port}"

    @property
    def local_endpoint(self) -> str:
        return f"{self.local_address}:{self.local_port}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class TrafficEvent:
    process_name: str
    pid: int
    remote_address: str
    remote_port: int
    action: str  # "Connected", "Disconnected" or a raw state name
    details: str = ""
    bytes_transferred: int = 0
    timestamp: datetime = field(default_factory=utc_now)
    is_suspicious: bool = False  # copied from the originating ConnectionRecord
    id: int | None = None  # assigned by the store, None until read back

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data
