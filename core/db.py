"""
Casework - Database Backend

Thin wrapper over sqlite3 shared by every engine store (cases, audit,
pendencies, presence, classification). One connection per backend,
guarded by a re-entrant lock so request handlers on different threads
can share it.

Usage:
    from core.db import create_backend

    db = create_backend(path="casework.db")
    db.execute("INSERT INTO foo (bar) VALUES (?)", ("baz",))
    row = db.fetchone("SELECT * FROM foo WHERE bar = ?", ("baz",))

    with db.transaction():
        db.execute(...)
        db.execute(...)
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

logger = logging.getLogger("casework.db")

IntegrityError = sqlite3.IntegrityError


class SQLiteBackend:
    """SQLite backend with dict rows and explicit transactions."""

    def __init__(self, path: str = ":memory:", wal: bool = True, busy_timeout: int = 5000):
        self._path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(f"PRAGMA busy_timeout={busy_timeout}")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._in_transaction = False
        logger.info("SQLite backend initialized: %s", path)

    @property
    def path(self) -> str:
        return self._path

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """
        Run one statement. Outside a transaction it commits immediately.

        Returns the cursor so callers can read ``rowcount`` and
        ``lastrowid`` for their own statement.
        """
        with self._lock:
            cursor = self._conn.execute(sql, params)
            if not self._in_transaction:
                self._conn.commit()
            return cursor

    def executescript(self, sql: str) -> None:
        with self._lock:
            self._conn.executescript(sql)
            if not self._in_transaction:
                self._conn.commit()

    def fetchone(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
            if row is None:
                return None
            return dict(row)

    def fetchall(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            return [dict(r) for r in cursor.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Group statements into one atomic unit.

        Nested use joins the outer transaction; only the outermost
        block commits or rolls back.
        """
        with self._lock:
            if self._in_transaction:
                yield
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            finally:
                self._in_transaction = False

    def ping(self) -> bool:
        try:
            self.fetchone("SELECT 1 AS ok")
            return True
        except sqlite3.Error:
            return False

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @property
    def backend_type(self) -> str:
        return "sqlite"


def create_backend(path: str | None = None, **kwargs) -> SQLiteBackend:
    """
    Create the database backend from config.

    Falls back to CW_DB_PATH, then to an in-memory database.
    """
    if path is None:
        path = os.environ.get("CW_DB_PATH", ":memory:")
    return SQLiteBackend(path=path, **kwargs)
