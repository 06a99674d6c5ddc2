# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: reads one snapshot of the host's IPv4 TCP connection table and turns it into ConnectionRecords.
on Windows the table comes from GetExtendedTcpTable (owner-pid class) and is decoded field by field from
the packed buffer. elsewhere psutil provides the same rows. each call is a fresh, stateless read; a process
that exits mid-snapshot only costs its own row a name ("Unknown"), never the whole snapshot.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import ipaddress  # for turning 4 raw address bytes into dotted-quad text
import logging  # for noting rows we could not name
import struct  # for decoding the fixed-width rows of the native table
import sys  # for picking the native source on Windows
from collections.abc import Callable, Iterable  # type hints for the name lookup and row sources
from typing import NamedTuple, Protocol  # type hints for rows and sources

import psutil  # library for process names and the non-Windows connection table

from agent.errors import PlatformQueryError
from agent.models import ConnectionRecord, TcpState, utc_now

log = logging.getLogger(__name__)

AF_INET = 2  # IPv4 only
TCP_TABLE_OWNER_PID_ALL = 5  # table class that carries the owning pid
NO_ERROR = 0
ERROR_INSUFFICIENT_BUFFER = 122

UNSPECIFIED_ADDRESS = "0.0.0.0"
UNKNOWN_PROCESS = "Unknown"

# MIB_TCPTABLE_OWNER_PID: a 4-byte row count followed by MIB_TCPROW_OWNER_PID rows
_HEADER_SIZE = 4
# MIB_TCPROW_OWNER_PID, 24 bytes:
#   state      4 bytes, host byte order
#   local addr 4 bytes, network order (byte i is octet i)
#   local port 4 bytes, port in the first two bytes in network order, last two are padding
#   remote addr / remote port as above
#   owning pid 4 bytes, signed, host byte order
_ROW_LAYOUT = "I4s2s2x4s2s2xi"
ROW_SIZE = struct.calcsize("<" + _ROW_LAYOUT)


class TcpRow(NamedTuple):
    state: TcpState
    local_address: str
    local_port: int
    remote_address: str
    remote_port: int
    pid: int


class TcpTableSource(Protocol):
    def rows(self) -> Iterable[TcpRow]: ...


def _port(raw: bytes) -> int:
    # ports are stored swapped relative to the state/pid fields: always big-endian
    return int.from_bytes(raw, "big")


def decode_tcp_table(buf: bytes, byteorder: str = "little") -> list[TcpRow]:
    """Decode a packed owner-pid TCP table. byteorder is the host order used for count, state and pid."""
    prefix = "<" if byteorder == "little" else ">"
    if len(buf) < _HEADER_SIZE:
        raise PlatformQueryError(f"tcp table too short: {len(buf)} bytes")
    (count,) = struct.unpack_from(prefix + "I", buf, 0)
    needed = _HEADER_SIZE + count * ROW_SIZE
    if len(buf) < needed:
        raise PlatformQueryError(f"tcp table truncated: {count} rows need {needed} bytes, got {len(buf)}")

    rows: list[TcpRow] = []
    row_fmt = struct.Struct(prefix + _ROW_LAYOUT)
    for offset in range(_HEADER_SIZE, needed, ROW_SIZE):
        state, laddr, lport, raddr, rport, pid = row_fmt.unpack_from(buf, offset)
        rows.append(
            TcpRow(
                state=TcpState.from_code(state),
                local_address=str(ipaddress.IPv4Address(laddr)),
                local_port=_port(lport),
                remote_address=str(ipaddress.IPv4Address(raddr)),
                remote_port=_port(rport),
                pid=pid,
            )
        )
    return rows


class WindowsTcpTable:
    """two-call GetExtendedTcpTable read: size query first, then the fill into a buffer of that size."""

    def __init__(self, attempts: int = 3) -> None:
        self.attempts = attempts  # the table can grow between the two calls, so retry the fill a few times
        self._fn = None

    def _api(self):
        if self._fn is None:
            import ctypes  # only importable with windll on Windows
            from ctypes import wintypes

            fn = ctypes.WinDLL("iphlpapi.dll").GetExtendedTcpTable
            fn.argtypes = [
                ctypes.c_void_p,  # pTcpTable
                ctypes.POINTER(wintypes.DWORD),  # pdwSize
                wintypes.BOOL,  # bOrder (sorted)
                wintypes.ULONG,  # ulAf
                ctypes.c_int,  # TableClass
                wintypes.ULONG,  # Reserved
            ]
            fn.restype = wintypes.DWORD
            self._fn = fn
        return self._fn

    def read(self) -> bytes:
        import ctypes
        from ctypes import wintypes

        fn = self._api()
        size = wintypes.DWORD(0)
        status = fn(None, ctypes.byref(size), True, AF_INET, TCP_TABLE_OWNER_PID_ALL, 0)
        if status == NO_ERROR and size.value == 0:
            return b"\x00" * _HEADER_SIZE  # empty table
        if status not in (NO_ERROR, ERROR_INSUFFICIENT_BUFFER):
            raise PlatformQueryError(f"GetExtendedTcpTable size query failed ({status})", status)

        for _ in range(self.attempts):
            buf = ctypes.create_string_buffer(size.value)
            status = fn(buf, ctypes.byref(size), True, AF_INET, TCP_TABLE_OWNER_PID_ALL, 0)
            if status == NO_ERROR:
                return buf.raw
            if status != ERROR_INSUFFICIENT_BUFFER:
                break
        raise PlatformQueryError(f"GetExtendedTcpTable failed ({status})", status)

    def rows(self) -> list[TcpRow]:
        return decode_tcp_table(self.read(), sys.byteorder)


# psutil status strings -> table states
_PSUTIL_STATES: dict[str, TcpState] = {
    psutil.CONN_CLOSE: TcpState.CLOSED,
    psutil.CONN_LISTEN: TcpState.LISTEN,
    psutil.CONN_SYN_SENT: TcpState.SYN_SENT,
    psutil.CONN_SYN_RECV: TcpState.SYN_RCVD,
    psutil.CONN_ESTABLISHED: TcpState.ESTABLISHED,
    psutil.CONN_FIN_WAIT1: TcpState.FIN_WAIT1,
    psutil.CONN_FIN_WAIT2: TcpState.FIN_WAIT2,
    psutil.CONN_CLOSE_WAIT: TcpState.CLOSE_WAIT,
    psutil.CONN_CLOSING: TcpState.CLOSING,
    psutil.CONN_LAST_ACK: TcpState.LAST_ACK,
    psutil.CONN_TIME_WAIT: TcpState.TIME_WAIT,
    "DELETE_TCB": TcpState.DELETE_TCB,
}


class PsutilTcpTable:
    """same rows from psutil.net_connections, for hosts without iphlpapi"""

    def rows(self) -> list[TcpRow]:
        try:
            conns = psutil.net_connections(kind="tcp4")  # IPv4 TCP only, like the native table
        except (psutil.AccessDenied, OSError) as e:
            raise PlatformQueryError(f"net_connections failed: {e}") from e
        rows: list[TcpRow] = []
        for c in conns:
            raddr = c.raddr or None  # listening sockets have an empty tuple here
            rows.append(
                TcpRow(
                    state=_PSUTIL_STATES.get(c.status, TcpState.UNKNOWN),
                    local_address=c.laddr.ip if c.laddr else UNSPECIFIED_ADDRESS,
                    local_port=c.laddr.port if c.laddr else 0,
                    remote_address=raddr.ip if raddr else UNSPECIFIED_ADDRESS,
                    remote_port=raddr.port if raddr else 0,
                    pid=c.pid or 0,
                )
            )
        return rows


def default_source() -> TcpTableSource:
    return WindowsTcpTable() if sys.platform == "win32" else PsutilTcpTable()


def lookup_process_name(pid: int) -> str | None:
    # None when the process is gone or hidden from us
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, ValueError):
        return None


class ConnectionTableReader:
    """produces one immutable snapshot of the current TCP connections per call"""

    def __init__(
        self,
        source: TcpTableSource | None = None,
        name_lookup: Callable[[int], str | None] = lookup_process_name,
    ) -> None:
        self.source = source or default_source()  # where raw rows come from
        self.name_lookup = name_lookup  # pid -> process name or None

    def snapshot(self) -> list[ConnectionRecord]:
        rows = self.source.rows()  # PlatformQueryError propagates to the poller
        now = utc_now()  # one observation instant for the whole snapshot
        names: dict[int, str] = {}  # per-call only, pids get reused between polls
        records: list[ConnectionRecord] = []
        for row in rows:
            # listening sockets are not connections
            if row.remote_address == UNSPECIFIED_ADDRESS and row.state is TcpState.LISTEN:
                continue
            name = names.get(row.pid)
            if name is None:
                name = self.name_lookup(row.pid)
                if name is None:
                    log.debug("no process name for pid %s", row.pid)
                    name = UNKNOWN_PROCESS
                names[row.pid] = name
            records.append(
                ConnectionRecord(
                    pid=row.pid,
                    process_name=name,
                    local_address=row.local_address,
                    local_port=row.local_port,
                    remote_address=row.remote_address,
                    remote_port=row.remote_port,
                    state=row.state.value,
                    protocol="TCP",
                    timestamp=now,
                )
            )
        return records
