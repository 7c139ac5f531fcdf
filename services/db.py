"""
Casework — Database Backend

Thin wrapper around sqlite3 used by the case store. Gives the store
dict rows, a thread-safe connection, and an explicit transaction
context manager so that a read-validate-write sequence runs under one
write lock.

Usage:
    from services.db import create_backend

    db = create_backend("sqlite", path="casework.db")
    with db.transaction():
        row = db.fetchone("SELECT * FROM cases WHERE case_id = ?", ("c1",))
        db.execute("UPDATE cases SET status = ? WHERE case_id = ?", ("pending", "c1"))

Outside a transaction every execute() autocommits.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

logger = logging.getLogger("casework.db")


class DatabaseBackend:
    """Abstract database backend interface."""

    def execute(self, sql: str, params: tuple = ()) -> Any:
        raise NotImplementedError

    def executescript(self, sql: str) -> None:
        raise NotImplementedError

    def fetchone(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        raise NotImplementedError

    def fetchall(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator[None]:
        raise NotImplementedError

    @property
    def in_transaction(self) -> bool:
        raise NotImplementedError

    @property
    def rowcount(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    @property
    def backend_type(self) -> str:
        raise NotImplementedError


class SQLiteBackend(DatabaseBackend):
    """
    SQLite backend.

    One connection shared across threads, serialized by an RLock held
    for the full duration of a transaction. Separate processes (or
    separate backends on the same file) are serialized by
    BEGIN IMMEDIATE plus busy_timeout.
    """

    def __init__(self, path: str = ":memory:", wal: bool = True, busy_timeout: int = 5000):
        self._path = path
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(f"PRAGMA busy_timeout={int(busy_timeout)}")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._last_cursor = None
        self._depth = 0
        logger.info("SQLite backend initialized: %s", path)

    def execute(self, sql: str, params: tuple = ()) -> Any:
        with self._lock:
            self._last_cursor = self._conn.execute(sql, params)
            return self._last_cursor

    def executescript(self, sql: str) -> None:
        with self._lock:
            self._conn.executescript(sql)

    def fetchone(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
            return dict(row) if row is not None else None

    def fetchall(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._conn.execute(sql, params).fetchall()]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Explicit transaction boundary. Nested use joins the outer
        transaction; only the outermost block commits or rolls back.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            finally:
                self._depth = 0

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @property
    def rowcount(self) -> int:
        return self._last_cursor.rowcount if self._last_cursor else 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @property
    def backend_type(self) -> str:
        return "sqlite"


def create_backend(backend: str = "sqlite", **kwargs: Any) -> DatabaseBackend:
    """
    Factory for database backends.

    Args:
        backend: only "sqlite" is available
        **kwargs: forwarded to the backend constructor (path, wal, busy_timeout)
    """
    if backend == "sqlite":
        return SQLiteBackend(**kwargs)
    raise ValueError(f"Unknown database backend: {backend!r}")
