# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: keeps the database small. on its own timer (first run one minute after start, then every five
minutes) it deletes every connection and traffic row older than the retention window (30 minutes by
default) and vacuums the file. a failed run is reported and the schedule carries on.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging  # for run summaries
import threading  # for the reaper timer thread
import time  # for event timestamps
from collections.abc import Callable  # type hint for the publish callback
from datetime import datetime, timedelta  # for the window and last run time
from typing import Any  # type hint for event dict values

from agent.errors import RetentionError
from agent.models import utc_now
from agent.store import PersistenceStore

log = logging.getLogger(__name__)

# type alias for the publish callback, takes an event dict and returns nothing
PublishFn = Callable[[dict[str, Any]], None]

DEFAULT_MAX_AGE = timedelta(minutes=30)
DEFAULT_INTERVAL = timedelta(minutes=5)
DEFAULT_INITIAL_DELAY = timedelta(minutes=1)


class RetentionReaper:
    def __init__(
        self,
        store: PersistenceStore,
        publish: PublishFn | None = None,
        max_age: timedelta = DEFAULT_MAX_AGE,
        interval: timedelta = DEFAULT_INTERVAL,
        initial_delay: timedelta = DEFAULT_INITIAL_DELAY,
    ) -> None:
        self.store = store
        self.publish = publish or (lambda ev: None)
        self.max_age = max_age
        self.interval = interval
        self.initial_delay = initial_delay
        self.last_cleanup_time: datetime | None = None  # last run that finished without error
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def purge(self, max_age: timedelta | None = None) -> int:
        """Delete everything older than now - max_age and compact. Raises RetentionError on failure."""
        try:
            deleted = self.store.delete_older_than(max_age or self.max_age)
        except Exception as e:  # any store failure ends this run only
            raise RetentionError(str(e)) from e
        self.last_cleanup_time = utc_now()
        return deleted

    def run_once(self) -> int:
        # one scheduled run: never raises, reports on the error channel instead
        try:
            deleted = self.purge()
        except RetentionError as e:
            log.warning("cleanup failed: %s", e)
            self.publish(
                {"source": "retention", "type": "error", "message": f"Cleanup error: {e}", "ts": time.time()}
            )
            return 0
        if deleted > 0:
            log.info("removed %d rows older than %s", deleted, self.max_age)
            self.publish({"source": "retention", "type": "logs_cleaned", "deleted": deleted, "ts": time.time()})
        return deleted

    def _loop(self) -> None:
        wait = self.initial_delay.total_seconds()
        while not self._stop.wait(wait):  # wait returns True once stop() was called
            self.run_once()
            wait = self.interval.total_seconds()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retention-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
