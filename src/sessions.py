"""Registry of usernames that currently hold a logged-in connection."""

from __future__ import annotations

import threading
from typing import Set


class SessionRegistry:
    """Process-wide set of logged-in usernames.

    Only ``reserve``/``release`` mutate the set; both run under one lock so
    two connections racing for the same username get exactly one winner.
    """

    def __init__(self) -> None:
        self._active: Set[str] = set()
        self._lock = threading.Lock()

    def reserve(self, username: str) -> bool:
        """Claim ``username``; False if another connection already holds it."""
        with self._lock:
            if username in self._active:
                return False
            self._active.add(username)
            return True

    def release(self, username: str | None) -> None:
        if username is None:
            return
        with self._lock:
            self._active.discard(username)

    def is_active(self, username: str) -> bool:
        with self._lock:
            return username in self._active

    def clear(self) -> None:
        with self._lock:
            self._active.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)
