# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: decides whether a connection looks suspicious and says why. rules are evaluated independently, so a
connection can match several and the reasons accumulate in rule order. the port and process lists are a
compiled-in default policy; an optional JSON file can replace any of the lists without touching code.
classification is pure: same record in, same verdict out, no I/O.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import ipaddress  # for the private-range check
import json  # for loading an optional policy override
import logging  # for reporting a broken policy file
import os  # for checking if the policy file exists
from collections.abc import Iterable  # type hint for list-like JSON values
from dataclasses import dataclass, field, replace  # for the policy object and verdict copies
from typing import Any  # type hint for raw JSON values

from agent.models import ConnectionRecord, TcpState

log = logging.getLogger(__name__)

# well-known safe ports
DEFAULT_SAFE_PORTS: frozenset[int] = frozenset(
    {80, 443, 53, 993, 995, 587, 465, 143, 110, 25, 8080, 8443}
)

# ports commonly used by malware
DEFAULT_SUSPICIOUS_PORTS: frozenset[int] = frozenset(
    {
        4444, 5555, 6666, 7777, 8888, 9999,  # common reverse shells
        1337, 31337,  # hacker lore
        3389,  # RDP (if unexpected)
        4443, 8443,  # alt HTTPS
        6667, 6697,  # IRC (C2 channels)
        1080, 9050, 9051,  # SOCKS/Tor
    }
)

# living-off-the-land binaries: shell, script hosts, macro/DLL runners, cert utility
DEFAULT_SCRIPTING_PROCESSES: frozenset[str] = frozenset(
    {
        "cmd.exe",
        "powershell.exe",
        "wscript.exe",
        "cscript.exe",
        "mshta.exe",
        "regsvr32.exe",
        "rundll32.exe",
        "certutil.exe",
    }
)

_PRIVATE_NETS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
)

REASON_SEPARATOR = "; "


def _ensure_list(x: Any) -> list[Any]:
    if x is None:  # if it is None, return empty list
        return []
    if isinstance(x, (str, int)):  # a single value becomes a one-item list
        return [x]
    if isinstance(x, Iterable):
        return list(x)
    return []


def is_private_address(address: str) -> bool:
    try:
        ip = ipaddress.IPv4Address(address)
    except ValueError:  # not an IPv4 literal
        return False
    return any(ip in net for net in _PRIVATE_NETS)


@dataclass(frozen=True)
class SuspicionPolicy:
    suspicious_ports: frozenset[int] = field(default=DEFAULT_SUSPICIOUS_PORTS)
    safe_ports: frozenset[int] = field(default=DEFAULT_SAFE_PORTS)
    scripting_processes: frozenset[str] = field(default=DEFAULT_SCRIPTING_PROCESSES)

    def __post_init__(self) -> None:
        # process names are compared case-insensitively
        object.__setattr__(
            self, "scripting_processes", frozenset(p.lower() for p in self.scripting_processes)
        )


def load_policy(path: str | None) -> SuspicionPolicy:
    """Build a policy from a JSON object; keys that are absent keep their compiled-in defaults."""
    if not path or not os.path.exists(path):  # no override file, use the defaults
        return SuspicionPolicy()
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning("ignoring unreadable suspicion policy %s: %s", path, e)
        return SuspicionPolicy()
    if not isinstance(data, dict):
        log.warning("ignoring suspicion policy %s: expected a JSON object", path)
        return SuspicionPolicy()

    kwargs: dict[str, Any] = {}
    try:
        if "suspicious_ports" in data:
            kwargs["suspicious_ports"] = frozenset(int(p) for p in _ensure_list(data["suspicious_ports"]))
        if "safe_ports" in data:
            kwargs["safe_ports"] = frozenset(int(p) for p in _ensure_list(data["safe_ports"]))
        if "scripting_processes" in data:
            kwargs["scripting_processes"] = frozenset(
                str(p) for p in _ensure_list(data["scripting_processes"])
            )
    except (TypeError, ValueError) as e:
        log.warning("ignoring suspicion policy %s: %s", path, e)
        return SuspicionPolicy()
    return SuspicionPolicy(**kwargs)


class SuspicionClassifier:
    def __init__(self, policy: SuspicionPolicy | None = None) -> None:
        self.policy = policy or SuspicionPolicy()

    def classify(self, record: ConnectionRecord) -> tuple[bool, list[str]]:
        p = self.policy
        port = record.remote_port
        reasons: list[str] = []

        if port in p.suspicious_ports:
            reasons.append(f"Suspicious port {port}")

        if record.state == TcpState.ESTABLISHED.value and port < 1024 and port not in p.safe_ports:
            reasons.append(f"Unusual well-known port {port}")

        scripting = record.process_name.lower() in p.scripting_processes
        if scripting:
            reasons.append(f"Suspicious process: {record.process_name}")

        # only counts together with the scripting-process rule
        if scripting and is_private_address(record.remote_address):
            reasons.append("Internal network connection from scripting engine")

        return bool(reasons), reasons

    def apply(self, record: ConnectionRecord) -> ConnectionRecord:
        """Return a copy of the record carrying its verdict."""
        suspicious, reasons = self.classify(record)
        return replace(
            record,
            is_suspicious=suspicious,
            suspicious_reason=REASON_SEPARATOR.join(reasons),
        )


_DEFAULT = SuspicionClassifier()


def classify(record: ConnectionRecord) -> tuple[bool, list[str]]:
    return _DEFAULT.classify(record)
