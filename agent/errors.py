# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: exceptions raised inside the agents. none of them is fatal: the monitor and the reaper catch them
and report them on the error channel instead of stopping.
"""

from __future__ import annotations


class PlatformQueryError(Exception):
    """the native connection table could not be read"""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status  # native return code when there is one


class PersistenceError(Exception):
    """a SQLite call failed on an initialized store (the call was rolled back)"""


class RetentionError(Exception):
    """a purge run failed, the reaper keeps its schedule"""
