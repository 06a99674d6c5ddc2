# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: main launcher for ConnSentry: opens the database, starts the connection monitor and the retention
reaper, and serves the JSON API. uses an event bus to fan-out events from the monitor to every subscriber
(the live view, the terminal printer). the terminal shows a banner and one line per suspicious event.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import argparse  # for parsing command line arguments
import logging  # for the root log level
import queue  # for event bus message queues
import threading  # for running the printer and the API in background threads
import time  # for the idle loop in main
from typing import Any  # type hint for flexible dictionary values

from colorama import Fore, Style  # colors for the banner and alerts
from colorama import init as colorama_init  # enable ANSI codes on Windows terminals
from dotenv import load_dotenv  # for CONNSENTRY_* settings kept in a .env file

from agent.errors import PersistenceError  # raised if the database cannot be opened
from agent.geo_resolver import GeoResolver  # country lookups for the API
from agent.live_view import LiveView  # bounded in-memory view of recent events
from agent.monitor import ConnectionMonitor  # the poll loop
from agent.retention import RetentionReaper  # purges old rows
from agent.rules_engine import SuspicionClassifier, load_policy  # suspicion rules
from agent.store import PersistenceStore  # SQLite persistence
from app.config import Config, load_config  # layered configuration
from dashboard.app import run_dashboard, start_pump  # JSON API and the bus -> view pump

log = logging.getLogger(__name__)


# --- banner ---
def print_banner() -> None:
    # print a small banner, colors work on Windows too once colorama is initialised
    cyan, dim, bold, reset = Fore.CYAN, Style.DIM, Style.BRIGHT, Style.RESET_ALL
    banner = f"""
{dim}┌────────────────────────────────────────────────────────────┐{reset}
{dim}│{reset}{cyan}{bold}                 C o n n S e n t r y{reset}{dim}                        │{reset}
{dim}├────────────────────────────────────────────────────────────┤{reset}
{dim}│{reset}  live TCP connection watch, suspicion rules, geo lookup    {dim}│{reset}
{dim}│{reset}  Tip: press {cyan}Ctrl+C{reset} to quit.                               {dim}│{reset}
{dim}└────────────────────────────────────────────────────────────┘{reset}
"""
    print(banner)


# --- end banner ---


# fan-out EventBus
class EventBus:
    """pub/sub fan-out: each subscriber gets every event, in publish order."""

    def __init__(self) -> None:
        self._subs: list[queue.Queue] = []  # list of subscriber queues
        self._lock = threading.Lock()  # lock to protect the subscribers list from race conditions

    def publish(self, event: dict[str, Any]) -> None:
        # send an event to all subscribers (fan-out pattern)
        with self._lock:  # acquire lock to safely read the subscribers list
            subs = list(self._subs)  # copy so we can iterate without holding the lock
        for q in subs:  # loop through each subscriber queue
            q.put_nowait(event)  # queues are unbounded, nothing is dropped

    def subscribe(self):
        # create a new subscription and return an iterator that yields events
        q: queue.Queue = queue.Queue()  # unbounded queue for this subscriber
        with self._lock:  # acquire lock to safely add to subscribers list
            self._subs.append(q)  # add this queue to the list of subscribers

        def _iter():
            # generator function that yields events from the queue
            try:
                while True:  # loop until the consumer closes us
                    try:
                        yield q.get(timeout=0.5)  # wait up to 0.5 seconds for an event, yield it if found
                    except queue.Empty:  # if no event arrived within the timeout
                        yield None  # yield None to keep the iterator alive
            finally:
                self.unsubscribe(q)  # closed or garbage collected, stop filling this queue

        return _iter()  # return the generator iterator

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._subs:
                self._subs.remove(q)


def format_alert(event: dict[str, Any]) -> str | None:
    # one terminal line for suspicious traffic and errors, None for everything else
    kind = event.get("type")
    if kind == "traffic_event":
        ev = event["event"]
        if not ev.is_suspicious:
            return None
        return f"{Fore.RED}[!]{Style.RESET_ALL} {ev.timestamp:%H:%M:%S} {ev.action:<12} {ev.details}"
    if kind == "error":
        return f"{Fore.YELLOW}[error]{Style.RESET_ALL} {event.get('message', '')}"
    if kind == "logs_cleaned":
        return f"{Fore.CYAN}[cleanup]{Style.RESET_ALL} removed {event.get('deleted', 0)} old entries"
    return None


def _print_alerts(events) -> None:
    for ev in events:
        if ev is None:
            continue
        line = format_alert(ev)
        if line:
            print(line, flush=True)


def _setup_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.WARNING))
    # keep library chatter off the console
    logging.getLogger("waitress").setLevel(logging.ERROR)
    logging.getLogger("waitress.queue").setLevel(logging.CRITICAL)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def main(argv: list[str] | None = None) -> None:
    # main entry point that sets up and starts all components
    load_dotenv()  # load .env file if it exists, before reading config
    parser = argparse.ArgumentParser(description="ConnSentry")
    parser.add_argument("--no-dashboard", action="store_true", help="do not serve the JSON API")
    parser.add_argument("--poll-ms", type=int, default=None, help="poll interval in milliseconds")
    parser.add_argument("--db", default=None, help="path to the SQLite database")
    args = parser.parse_args(argv)
    if args.poll_ms is not None and args.poll_ms <= 0:
        parser.error("--poll-ms must be a positive number of milliseconds")

    cfg: Config = load_config()
    _setup_logging(cfg.log_level)
    colorama_init()
    print_banner()

    store = PersistenceStore(args.db or str(cfg.db_path))
    try:
        store.initialize()
    except (PersistenceError, OSError) as e:
        # keep running without persistence, writes become no-ops
        log.warning("database unavailable, events will not be stored: %s", e)

    bus = EventBus()  # create the event bus that will distribute events to all subscribers
    view = LiveView(events_max=cfg.live_events_max, alerts_max=cfg.live_alerts_max)
    view.seed(store.list_recent_traffic_events(200))
    start_pump(bus, view)
    threading.Thread(target=_print_alerts, args=(bus.subscribe(),), name="alert-printer", daemon=True).start()

    geo = GeoResolver(
        db_path=str(cfg.geo_db_path),
        api_url=cfg.geo_api_url,
        timeout_sec=cfg.geo_timeout_sec,
    )
    classifier = SuspicionClassifier(load_policy(str(cfg.policy_path)))
    monitor = ConnectionMonitor(
        publish=bus.publish,
        store=store,
        classifier=classifier,
        poll_interval_ms=args.poll_ms or cfg.poll_interval_ms,
    )
    reaper = RetentionReaper(
        store,
        publish=bus.publish,
        max_age=cfg.retention_max_age,
        interval=cfg.retention_interval,
        initial_delay=cfg.retention_initial_delay,
    )

    monitor.start()
    reaper.start()
    print(f"Monitoring active, scanning connections every {monitor.poll_interval_ms / 1000:g}s")

    if not args.no_dashboard:
        threading.Thread(
            target=run_dashboard,
            kwargs={"view": view, "store": store, "geo": geo, "host": cfg.host, "port": cfg.port},
            name="dashboard",
            daemon=True,
        ).start()
        print(f"API listening on http://{cfg.host}:{cfg.port}/api/stats")

    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        print("\nShutting down ConnSentry...")
    finally:
        monitor.stop()  # no events after this returns
        reaper.stop()
        store.close()
        geo.close()


if __name__ == "__main__":
    main()
