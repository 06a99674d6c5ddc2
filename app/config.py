# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: configuration loader. loads settings from a JSON file and environment variables, with sensible
      defaults. handles PyInstaller frozen executables by detecting the base directory correctly.
      returns a frozen Config dataclass with all paths, intervals and limits the launcher wires in.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

log = logging.getLogger(__name__)

ENV_PREFIX = "CONNSENTRY_"


# figure out where the app is running from (handles PyInstaller bundles)
def _resolve_base_dir() -> Path:
    # if we are frozen (PyInstaller), use the executable's directory
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    # otherwise, go up one level from this file (app/config.py -> project root)
    return Path(__file__).resolve().parents[1]


# frozen dataclass to hold all config values (immutable once created)
@dataclass(frozen=True)
class Config:
    base_dir: Path  # root directory of the project
    db_path: Path  # SQLite file for connections and traffic logs
    geo_db_path: Path  # offline MaxMind country database (optional)
    policy_path: Path  # optional suspicion policy override JSON
    poll_interval_ms: int  # how often the connection table is read
    retention_max_age_min: float  # rows older than this are purged
    retention_interval_min: float  # how often the purge runs
    retention_initial_delay_sec: float  # delay before the first purge
    geo_api_url: str  # online fallback, {ip} is replaced with the address
    geo_timeout_sec: float  # bound for the online fallback
    live_events_max: int  # traffic events kept in memory for display
    live_alerts_max: int  # suspicious events kept in memory for display
    host: str  # JSON API host address
    port: int  # JSON API port number
    log_level: str  # root logging level name

    @property
    def retention_max_age(self) -> timedelta:
        return timedelta(minutes=self.retention_max_age_min)

    @property
    def retention_interval(self) -> timedelta:
        return timedelta(minutes=self.retention_interval_min)

    @property
    def retention_initial_delay(self) -> timedelta:
        return timedelta(seconds=self.retention_initial_delay_sec)


# get a config value with priority: environment variable > JSON file > default
def _get(obj: dict, key: str, default):
    # check for environment variable first (CONNSENTRY_* prefix)
    env = os.getenv(f"{ENV_PREFIX}{key.upper()}")
    if env is not None:
        # try to coerce to int/float when default is numeric
        if isinstance(default, int):
            try:
                return int(env)
            except ValueError:
                log.warning("ignoring %s%s=%r, expected an integer", ENV_PREFIX, key.upper(), env)
                return default
        if isinstance(default, float):
            try:
                return float(env)
            except ValueError:
                log.warning("ignoring %s%s=%r, expected a number", ENV_PREFIX, key.upper(), env)
                return default
        # for strings, just return the env var as-is
        return env
    # fall back to JSON file value, or default if not found
    return obj.get(key, default)


# numeric setting that has to be above a floor (intervals, sizes, ports); anything else falls back to the default
def _number(obj: dict, key: str, default, minimum=0, maximum=None, inclusive: bool = False):
    raw = _get(obj, key, default)
    try:
        value = type(default)(raw)  # JSON may hold "500" or 500.0 for an int setting
    except (TypeError, ValueError):
        log.warning("ignoring %s=%r, expected a number", key, raw)
        return default
    too_low = value < minimum if inclusive else value <= minimum
    if too_low or (maximum is not None and value > maximum):
        log.warning("ignoring %s=%r, out of range", key, raw)
        return default
    return value


# load configuration from JSON file and environment variables
def load_config() -> Config:
    # base directory can be overridden by env var, otherwise auto-detect
    base = Path(os.getenv(f"{ENV_PREFIX}BASE_DIR") or _resolve_base_dir())
    # config file lives in data/config.json
    cfg_file = base / "data" / "config.json"
    obj: dict = {}
    # try to load the JSON config file if it exists
    if cfg_file.exists():
        try:
            obj = json.loads(cfg_file.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            # if JSON is broken, just use empty dict (all defaults)
            obj = {}
        if not isinstance(obj, dict):
            obj = {}

    # each value checks: env var > JSON file > default
    return Config(
        base_dir=base,
        db_path=base / _get(obj, "db_path", "data/network_logs.db"),
        geo_db_path=base / _get(obj, "geo_db_path", "data/GeoLite2-Country.mmdb"),
        policy_path=base / _get(obj, "policy_path", "data/suspicion_policy.json"),
        poll_interval_ms=_number(obj, "poll_interval_ms", 2000),
        retention_max_age_min=_number(obj, "retention_max_age_min", 30.0),
        retention_interval_min=_number(obj, "retention_interval_min", 5.0),
        retention_initial_delay_sec=_number(obj, "retention_initial_delay_sec", 60.0, inclusive=True),
        geo_api_url=_get(obj, "geo_api_url", "http://ip-api.com/json/{ip}?fields=status,country"),
        geo_timeout_sec=_number(obj, "geo_timeout_sec", 3.0),
        live_events_max=_number(obj, "live_events_max", 1000),
        live_alerts_max=_number(obj, "live_alerts_max", 200),
        host=_get(obj, "host", "127.0.0.1"),
        port=_number(obj, "port", 8766, maximum=65535),
        log_level=str(_get(obj, "log_level", "WARNING")).upper(),
    )
