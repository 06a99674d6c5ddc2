# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: the poll loop. at a fixed interval it reads a connection snapshot, classifies every row, diffs it
against the previous snapshot, stores and publishes one traffic event per new or closed connection, then
publishes the full snapshot. the previous snapshot lives in a context object owned by this monitor and
is replaced whole after each successful tick. a failed read leaves it untouched so the next tick retries
cleanly. ticks never overlap: there is one poll thread, and poll_once() skips if a tick is in progress.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging  # for poll failures
import threading  # for the poll thread, stop signal and the tick guard
import time  # for the fixed-rate schedule and event timestamps
from collections.abc import Callable  # type hint for the publish callback
from dataclasses import dataclass, field  # for the poll context
from datetime import datetime  # type hint for the last poll time
from typing import Any  # type hint for event dict values

from agent.diff_engine import connect_event, diff, disconnect_event
from agent.errors import PersistenceError, PlatformQueryError
from agent.models import ConnectionKey, ConnectionRecord, TrafficEvent, utc_now
from agent.network_scan import ConnectionTableReader
from agent.rules_engine import SuspicionClassifier
from agent.store import PersistenceStore

log = logging.getLogger(__name__)

# type alias for the publish callback, takes an event dict and returns nothing
PublishFn = Callable[[dict[str, Any]], None]

DEFAULT_POLL_INTERVAL_MS = 2000


def _check_interval(poll_interval_ms: int) -> int:
    # the fixed-rate schedule divides by the period, so it has to be a positive number
    numeric = isinstance(poll_interval_ms, (int, float)) and not isinstance(poll_interval_ms, bool)
    if not numeric or poll_interval_ms <= 0:
        raise ValueError(f"poll_interval_ms must be a positive number, got {poll_interval_ms!r}")
    return poll_interval_ms


@dataclass
class PollContext:
    """state carried from one tick to the next; only the poll that holds the tick guard touches it"""

    previous: dict[ConnectionKey, ConnectionRecord] = field(default_factory=dict)
    polls: int = 0  # successful ticks
    last_poll: datetime | None = None


class ConnectionMonitor:
    """polls the TCP table and publishes normalized events"""

    def __init__(
        self,
        publish: PublishFn,
        store: PersistenceStore | None = None,
        reader: ConnectionTableReader | None = None,
        classifier: SuspicionClassifier | None = None,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    ) -> None:
        self.publish = publish  # callback function to send events to
        self.store = store  # None means events are only published
        self.reader = reader or ConnectionTableReader()
        self.classifier = classifier or SuspicionClassifier()
        self.poll_interval_ms = _check_interval(poll_interval_ms)
        self.context = PollContext()
        self._tick_guard = threading.Lock()  # held for the duration of one tick
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_monitoring(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def _emit(self, event: dict[str, Any]) -> None:
        event.setdefault("ts", time.time())
        self.publish(event)

    def _error(self, message: str) -> None:
        self._emit({"source": "network", "type": "error", "message": message})

    def _store(self, write: Callable[[Any], None], item: Any) -> None:
        if self.store is None:
            return
        try:
            write(item)
        except PersistenceError as e:  # the row is lost, the batch goes on
            self._error(f"Storage error: {e}")

    def _record_event(self, event: TrafficEvent) -> None:
        if self.store is not None:
            self._store(self.store.insert_traffic_event, event)
        self._emit({"source": "network", "type": "traffic_event", "event": event})

    def poll_once(self) -> bool:
        """Run one tick. Returns False if the tick was skipped or the snapshot could not be read."""
        if not self._tick_guard.acquire(blocking=False):
            log.debug("previous poll still running, skipping tick")
            return False
        try:
            return self._poll(self.context)
        finally:
            self._tick_guard.release()

    def _poll(self, ctx: PollContext) -> bool:
        try:
            raw = self.reader.snapshot()
        except PlatformQueryError as e:
            log.warning("snapshot failed: %s", e)
            self._error(str(e))
            return False  # ctx.previous stays as it was

        current = [self.classifier.apply(record) for record in raw]
        result = diff(ctx.previous, current)

        for record in result.new:
            if self.store is not None:
                self._store(self.store.insert_connection, record)
            self._record_event(connect_event(record))

        for record in result.closed:
            self._record_event(disconnect_event(record))

        ctx.previous = result.next_previous
        ctx.polls += 1
        ctx.last_poll = utc_now()
        self._emit({"source": "network", "type": "connections_updated", "connections": current})
        return True

    def _loop(self) -> None:
        period = self.poll_interval_ms / 1000.0
        next_due = time.monotonic()
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception as e:  # a subscriber blew up, keep polling
                log.exception("poll failed")
                try:
                    self._error(f"Poll error: {e}")
                except Exception:  # the same subscriber can fail again on the error event
                    log.exception("could not publish poll error")
            next_due += period
            now = time.monotonic()
            if next_due < now:  # overran, drop the missed ticks instead of bursting
                next_due = now + period - ((now - next_due) % period)
            if self._stop.wait(next_due - now):
                break

    def start(self, poll_interval_ms: int | None = None) -> None:
        if self.is_monitoring:
            return
        if poll_interval_ms is not None:
            self.poll_interval_ms = _check_interval(poll_interval_ms)
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="connection-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the poll thread. An in-flight tick finishes first; nothing is published after this returns."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join()
