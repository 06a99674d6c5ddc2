# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: maps a remote address to a country name. private and loopback addresses are "Local" without any
lookup, everything else goes cache -> offline MaxMind database (when one could be opened) -> ip-api.com
with a short timeout -> "Unknown". every final answer is cached for the life of the resolver, failures
included, so an address that cannot be resolved costs at most one network call.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import json  # for the online response body
import logging  # for noting tier failures
import os  # for checking if the database file exists
import threading  # for guarding the cache across callers
import time  # for the overall online deadline
from typing import Any  # type hint for the parsed JSON body

import geoip2.database  # offline MaxMind reader
import geoip2.errors  # lookup errors from the offline reader
import requests  # online fallback

log = logging.getLogger(__name__)

PLACEHOLDER = "—"  # shown for empty / unspecified addresses
LOCAL = "Local"
UNKNOWN = "Unknown"

DEFAULT_API_URL = "http://ip-api.com/json/{ip}?fields=status,country"
DEFAULT_TIMEOUT_SEC = 3.0

# private / reserved prefixes
_LOCAL_PREFIXES: tuple[str, ...] = (
    "10.",
    *(f"172.{n}." for n in range(16, 32)),
    "192.168.",
    "127.",
    "0.",
)


def is_local_address(address: str) -> bool:
    return address.startswith(_LOCAL_PREFIXES)


class GeoResolver:
    def __init__(
        self,
        db_path: str | None = None,
        api_url: str = DEFAULT_API_URL,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url  # template with an {ip} placeholder
        self.timeout = timeout_sec  # hard bound for the online call
        self._session = session or requests.Session()
        self._cache: dict[str, str] = {}  # address -> country, only ever grows
        self._lock = threading.Lock()
        self._reader: Any = None  # geoip2 reader, None disables the offline tier
        if db_path:
            self._reader = self._open_reader(db_path)

    @staticmethod
    def _open_reader(db_path: str) -> Any:
        if not os.path.exists(db_path):  # no database shipped, offline tier stays off
            log.info("geo database %s not found, using online lookups only", db_path)
            return None
        try:
            return geoip2.database.Reader(db_path)
        except (OSError, ValueError, RuntimeError) as e:  # corrupt or unreadable file
            log.warning("could not open geo database %s: %s", db_path, e)
            return None

    @property
    def offline_available(self) -> bool:
        return self._reader is not None

    def cached(self, address: str) -> str | None:
        with self._lock:
            return self._cache.get(address)

    def resolve(self, address: str) -> str:
        addr = (address or "").strip()
        if not addr or addr == "0.0.0.0":
            return PLACEHOLDER
        if is_local_address(addr):
            return LOCAL

        hit = self.cached(addr)
        if hit is not None:
            return hit

        country = self._lookup_offline(addr) or self._lookup_online(addr) or UNKNOWN
        with self._lock:
            # a concurrent caller may have resolved it first, keep whichever landed first
            return self._cache.setdefault(addr, country)

    def _lookup_offline(self, address: str) -> str | None:
        if self._reader is None:
            return None
        try:
            return self._reader.country(address).country.name or None
        except (geoip2.errors.GeoIP2Error, ValueError) as e:  # not in the db, or not an IP at all
            log.debug("offline geo lookup failed for %s: %s", address, e)
            return None

    def _lookup_online(self, address: str) -> str | None:
        url = self.api_url.format(ip=address)
        # requests' timeout bounds the connect and each socket read, not the whole call, so the body is
        # streamed and checked against one overall deadline
        deadline = time.monotonic() + self.timeout
        try:
            resp = self._session.get(url, timeout=(self.timeout, self.timeout), stream=True)
            try:
                body = bytearray()
                for chunk in resp.iter_content(chunk_size=512):
                    body += chunk
                    if time.monotonic() > deadline:
                        raise requests.Timeout(f"geo lookup for {address} exceeded {self.timeout}s")
            finally:
                resp.close()
            data = json.loads(body)
        except (requests.RequestException, ValueError) as e:  # timeout, transport error, bad JSON
            log.debug("online geo lookup failed for %s: %s", address, e)
            return None
        if not isinstance(data, dict) or data.get("status") != "success":
            return None
        country = data.get("country")
        return country if isinstance(country, str) and country else None

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        self._session.close()
