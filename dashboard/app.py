# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: read-only JSON surface over the live view and the database, for whatever front end renders it.
      a background pump drains the event bus into the LiveView; routes only read from the view, the
      store and the geo resolver. countries are resolved here, at render time, not in the poll loop.
      served by waitress.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from typing import Any

from flask import Flask, jsonify, request
from waitress import serve

from agent.geo_resolver import GeoResolver
from agent.live_view import LiveView, search_url
from agent.models import ConnectionRecord, TrafficEvent
from agent.store import PersistenceStore

log = logging.getLogger(__name__)

HISTORY_LIMIT_MAX = 5000


# ---------------- fan-out subscription plumbing ----------------
# subscribe to the event bus and feed everything into the view
def _pump(events: Iterator[dict[str, Any] | None], view: LiveView, stop: threading.Event) -> None:
    try:
        for ev in events:
            if stop.is_set():
                return
            try:
                view.handle(ev)
            except Exception:  # a bad event must not kill the pump
                log.exception("could not apply event to live view")
    finally:
        # closing the subscription iterator takes its queue off the bus
        close = getattr(events, "close", None)
        if close is not None:
            close()


def start_pump(event_bus: Any, view: LiveView) -> threading.Event:
    """Start draining the bus into the view; set the returned event to stop."""
    stop = threading.Event()
    threading.Thread(
        target=_pump, args=(event_bus.subscribe(), view, stop), name="live-view-pump", daemon=True
    ).start()
    return stop


def _int_arg(name: str, default: int, lo: int = 1, hi: int = HISTORY_LIMIT_MAX) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, value))


def build_app(
    view: LiveView,
    store: PersistenceStore | None = None,
    geo: GeoResolver | None = None,
) -> Flask:
    app = Flask(__name__)

    def _country(address: str) -> str | None:
        return geo.resolve(address) if geo is not None else None

    def _conn_json(c: ConnectionRecord) -> dict[str, Any]:
        d = c.to_dict()
        d["remote_country"] = _country(c.remote_address)
        return d

    def _event_json(ev: TrafficEvent) -> dict[str, Any]:
        d = ev.to_dict()
        d["remote_country"] = _country(ev.remote_address)
        return d

    @app.get("/api/ping")
    def ping():
        return jsonify({"ok": True, "status": view.status_message})

    @app.get("/api/connections")
    def connections():
        rows = view.filter_connections(request.args.get("q"))
        return jsonify([_conn_json(c) for c in rows])

    @app.get("/api/events")
    def events():
        limit = _int_arg("limit", 200)
        suspicious = request.args.get("suspicious") in ("1", "true", "yes")
        return jsonify([_event_json(ev) for ev in view.recent_events(limit, suspicious_only=suspicious)])

    @app.get("/api/alerts")
    def alerts():
        return jsonify([_event_json(ev) for ev in view.recent_events(suspicious_only=True)])

    @app.get("/api/history")
    def history():
        limit = _int_arg("limit", 500)
        rows = store.list_recent_traffic_events(limit) if store is not None else []
        return jsonify([ev.to_dict() for ev in rows])

    @app.get("/api/stats")
    def stats():
        data = view.stats()
        conns, logs = store.count_records() if store is not None else (0, 0)
        data["stored_connections"] = conns
        data["stored_events"] = logs
        return jsonify(data)

    @app.get("/api/lookup/<address>")
    def lookup(address: str):
        return jsonify(
            {"address": address, "country": _country(address), "search_url": search_url(address)}
        )

    @app.post("/api/clear")
    def clear():
        view.clear()
        return jsonify({"ok": True, "status": view.status_message})

    return app


def run_dashboard(
    view: LiveView,
    store: PersistenceStore | None = None,
    geo: GeoResolver | None = None,
    host: str = "127.0.0.1",
    port: int = 8766,
) -> None:
    app = build_app(view, store, geo)
    try:
        serve(app, host=host, port=port)
    except (SystemExit, KeyboardInterrupt):
        pass  # expected when shutting down
