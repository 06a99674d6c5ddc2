# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: in-memory view of what the monitor is publishing, for whoever renders it. keeps the latest
snapshot, the most recent traffic events and suspicious alerts (newest first, bounded, oldest dropped
from the tail), and a status line. clearing only empties the view, stored rows are untouched.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import threading  # the bus reader thread and API handlers share this view
from collections import deque  # bounded lists with O(1) insert at the head
from collections.abc import Iterable  # type hint for seeding from the store
from datetime import datetime  # for the cleanup status line
from typing import Any  # type hint for event dict values
from urllib.parse import quote_plus  # for the search link

from agent.models import ConnectionRecord, TrafficEvent

DEFAULT_EVENTS_MAX = 1000
DEFAULT_ALERTS_MAX = 200


def search_url(address: str | None) -> str | None:
    addr = (address or "").strip()
    if not addr:
        return None
    return f"https://www.google.com/search?q={quote_plus(addr)}"


def filter_connections(connections: Iterable[ConnectionRecord], query: str | None) -> list[ConnectionRecord]:
    q = (query or "").strip().lower()
    if not q:
        return list(connections)
    return [c for c in connections if q in c.process_name.lower() or q in c.remote_address.lower()]


class LiveView:
    def __init__(self, events_max: int = DEFAULT_EVENTS_MAX, alerts_max: int = DEFAULT_ALERTS_MAX) -> None:
        self._lock = threading.Lock()
        self.connections: list[ConnectionRecord] = []
        self.events: deque[TrafficEvent] = deque(maxlen=events_max)
        self.alerts: deque[TrafficEvent] = deque(maxlen=alerts_max)
        self.status_message = "Ready to monitor"
        self.last_cleanup_info = "No cleanup yet"

    def seed(self, history: Iterable[TrafficEvent]) -> None:
        """Load stored events (newest first) into the view at startup."""
        with self._lock:
            for ev in history:
                self.events.append(ev)  # history is already newest first, so append keeps that order
                if ev.is_suspicious:
                    self.alerts.append(ev)

    def handle(self, event: dict[str, Any] | None) -> None:
        if not event:  # bus iterators yield None on idle
            return
        kind = event.get("type")
        with self._lock:
            if kind == "connections_updated":
                self.connections = list(event.get("connections") or [])
            elif kind == "traffic_event":
                ev: TrafficEvent = event["event"]
                self.events.appendleft(ev)  # a full deque drops from the tail
                if ev.is_suspicious:
                    self.alerts.appendleft(ev)
            elif kind == "logs_cleaned":
                stamp = datetime.now().strftime("%H:%M:%S")
                self.last_cleanup_info = f"Cleaned {event.get('deleted', 0)} old entries at {stamp}"
                self.status_message = self.last_cleanup_info
            elif kind == "error":
                self.status_message = f"Error: {event.get('message', '')}"

    def clear(self) -> None:
        with self._lock:
            self.events.clear()
            self.alerts.clear()
            self.status_message = "Logs cleared from view"

    def filter_connections(self, query: str | None) -> list[ConnectionRecord]:
        with self._lock:
            snapshot = list(self.connections)
        return filter_connections(snapshot, query)

    def recent_events(self, limit: int | None = None, suspicious_only: bool = False) -> list[TrafficEvent]:
        with self._lock:
            items = list(self.alerts if suspicious_only else self.events)
        return items[:limit] if limit is not None else items

    def stats(self) -> dict[str, Any]:
        with self._lock:
            conns = list(self.connections)
            return {
                "active_connections": len(conns),
                "unique_processes": len({c.process_name for c in conns}),
                "suspicious": sum(1 for c in conns if c.is_suspicious) + len(self.alerts),
                "total_bytes": sum(ev.bytes_transferred for ev in self.events),
                "log_entries": len(self.events),
                "status": self.status_message,
                "last_cleanup": self.last_cleanup_info,
            }
