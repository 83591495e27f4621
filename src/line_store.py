"""
Flat-file table storage used by every store in the server.

Each table is a UTF-8 text file holding one record per line.  Callers read
the whole table, change the lines they care about and write the whole table
back; there is no partial update.  Reads of a missing table return an empty
list so a fresh data directory needs no bootstrapping.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Dict, Iterable, List

logger = logging.getLogger(__name__)

_DEFAULT_DATA_DIR = "data"


class StoreError(Exception):
    """Raised when a table cannot be read or written."""


def resolve_data_dir() -> str:
    return os.environ.get("STORE_DATA_DIR", _DEFAULT_DATA_DIR)


def is_record(line: str) -> bool:
    """Return True for lines that hold data (not blank, not a ``#`` comment)."""
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith("#")


class LineStore:
    """Read/write whole tables of text lines under a base directory.

    A table called ``products`` lives in ``<base_dir>/products.txt``.  Each
    table has its own lock, so a single read or write never interleaves with
    another call on the same table.
    """

    def __init__(self, base_dir: str | os.PathLike | None = None) -> None:
        self.base_dir = Path(base_dir if base_dir is not None else resolve_data_dir())
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, table: str) -> Path:
        return self.base_dir / f"{table}.txt"

    def _lock_for(self, table: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(table)
            if lock is None:
                lock = self._locks[table] = threading.Lock()
            return lock

    def read_all_lines(self, table: str) -> List[str]:
        path = self.path_for(table)
        with self._lock_for(table):
            try:
                if not path.exists():
                    return []
                with open(path, "r", encoding="utf-8") as f:
                    return f.read().splitlines()
            except OSError as e:
                logger.error(f"Read failed for table {table}: {e}")
                raise StoreError(f"cannot read table {table}") from e

    def write_all_lines(self, table: str, lines: Iterable[str]) -> None:
        path = self.path_for(table)
        payload = "".join(f"{line}\n" for line in lines)
        with self._lock_for(table):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "w", encoding="utf-8") as f:
                    f.write(payload)
            except OSError as e:
                logger.error(f"Write failed for table {table}: {e}")
                raise StoreError(f"cannot write table {table}") from e
