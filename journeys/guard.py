"""
Casework - Single-Flight Guard

At most one transition per case at a time. A second attempt while the
first is still running fails fast with ``Busy``; nothing is queued.

Two backends:

  memory  per-key non-blocking locks inside this process. Enough for a
          single API worker and for tests.
  store   a lease row in the shared database, so several handler
          processes pointed at one database exclude each other. Leases
          expire, so a crashed holder cannot wedge a case forever.

Neither backend replaces the compare-and-swap on the state write; the
guard only narrows the window in which a race can happen.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Iterator

from core.db import IntegrityError, SQLiteBackend
from core.errors import Busy, ValidationError

logger = logging.getLogger("casework.guard")


class SingleFlightGuard:
    """Interface shared by both backends."""

    backend = "abstract"

    def acquire(self, key: str) -> str:
        """Take the guard for ``key``; returns a token for ``release``. Raises Busy."""
        raise NotImplementedError

    def release(self, key: str, token: str) -> None:
        raise NotImplementedError

    def is_held(self, key: str) -> bool:
        raise NotImplementedError

    @contextmanager
    def hold(self, key: str) -> Iterator[str]:
        token = self.acquire(key)
        try:
            yield token
        finally:
            self.release(key, token)


class MemoryGuard(SingleFlightGuard):
    backend = "memory"

    def __init__(self):
        self._held: dict[str, str] = {}
        self._lock = threading.Lock()

    def acquire(self, key: str) -> str:
        with self._lock:
            if key in self._held:
                raise Busy(key)
            token = uuid.uuid4().hex
            self._held[key] = token
            return token

    def release(self, key: str, token: str) -> None:
        with self._lock:
            if self._held.get(key) == token:
                del self._held[key]

    def is_held(self, key: str) -> bool:
        with self._lock:
            return key in self._held


class StoreLeaseGuard(SingleFlightGuard):
    """Lease rows in ``case_locks``; the primary key makes acquisition atomic."""

    backend = "store"

    def __init__(self, db: SQLiteBackend, lease_seconds: float = 30.0):
        if lease_seconds <= 0:
            raise ValidationError("lease_seconds must be positive")
        self.db = db
        self.lease_seconds = lease_seconds
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS case_locks (
                lock_key TEXT PRIMARY KEY,
                token TEXT NOT NULL,
                acquired_at REAL NOT NULL,
                expires_at REAL NOT NULL
            );
        """)

    def acquire(self, key: str) -> str:
        now = time.time()
        token = uuid.uuid4().hex
        try:
            with self.db.transaction():
                self.db.execute(
                    "DELETE FROM case_locks WHERE lock_key = ? AND expires_at <= ?",
                    (key, now),
                )
                self.db.execute(
                    "INSERT INTO case_locks (lock_key, token, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
                    (key, token, now, now + self.lease_seconds),
                )
        except IntegrityError:
            raise Busy(key)
        return token

    def release(self, key: str, token: str) -> None:
        self.db.execute(
            "DELETE FROM case_locks WHERE lock_key = ? AND token = ?",
            (key, token),
        )

    def is_held(self, key: str) -> bool:
        row = self.db.fetchone(
            "SELECT 1 AS held FROM case_locks WHERE lock_key = ? AND expires_at > ?",
            (key, time.time()),
        )
        return row is not None


def guard_key(tenant_id: str, case_id: str) -> str:
    return f"{tenant_id}:{case_id}"


def create_guard(
    backend: str = "memory",
    db: SQLiteBackend | None = None,
    lease_seconds: float = 30.0,
) -> SingleFlightGuard:
    if backend == "memory":
        return MemoryGuard()
    if backend == "store":
        if db is None:
            raise ValidationError("store guard needs a database backend")
        return StoreLeaseGuard(db, lease_seconds=lease_seconds)
    raise ValidationError(f"Unknown single_flight backend {backend!r}")
