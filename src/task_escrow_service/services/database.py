"""Shared SQLite connection with serialized, all-or-nothing transactions."""

from __future__ import annotations

import contextlib
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

# Largest value an SQLite INTEGER column can store.
MAX_INTEGER = 2**63 - 1


class Database:
    """
    One SQLite connection shared by every store.

    All access goes through a single RLock, so operations execute one at a
    time and reads never observe a half-applied operation. ``transaction()``
    opens a write transaction; nested calls join the outermost one, which
    commits only if nothing inside raised.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        self._depth = 0
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")

    @property
    def lock(self) -> RLock:
        """The lock guarding the connection. Hold it for consistent reads."""
        return self._lock

    @property
    def connection(self) -> sqlite3.Connection:
        """The underlying connection. Only use while holding ``lock``."""
        return self._db

    @property
    def in_transaction(self) -> bool:
        """True while a transaction() block is active."""
        return self._depth > 0

    def executescript(self, script: str) -> None:
        """Run a DDL script outside of any transaction."""
        with self._lock:
            self._db.executescript(script)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block atomically. Any exception rolls everything back."""
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self._db
                finally:
                    self._depth -= 1
                return

            self._db.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self._db
            except BaseException:
                self._depth = 0
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            self._depth = 0
            try:
                self._db.execute("COMMIT")
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
