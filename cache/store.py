"""
cache/store.py -- SQLite-backed token blacklist shared across worker processes.

Same contract as auth.blacklist.MemoryTokenBlacklist, but entries live in a
SQLite file so every uvicorn/gunicorn worker on the host sees a logout the
moment it happens. Rows store the SHA-256 digest of the token, never the raw
bearer credential, and carry an absolute expiry timestamp.

Usage:
    blacklist = SqliteTokenBlacklist(Path("blacklist.db"), ttl=timedelta(minutes=30))
    blacklist.blacklist(token)
    blacklist.is_blacklisted(token)   # True until the TTL elapses
    blacklist.purge_expired()         # call periodically to trim old entries
"""

import hashlib
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Union

logger = logging.getLogger("flexflow.cache")

_DDL = """
CREATE TABLE IF NOT EXISTS token_blacklist (
    token_hash  TEXT PRIMARY KEY,
    expires_at  REAL NOT NULL
);
"""


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SqliteTokenBlacklist:
    def __init__(
        self,
        db_path: Union[Path, str],
        ttl: timedelta,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl.total_seconds()
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def is_blacklisted(self, token: str) -> bool:
        """Return True if an unexpired entry exists for exactly this token."""
        if not token:
            return False
        with self._lock:
            row = self._conn.execute(
                "SELECT expires_at FROM token_blacklist WHERE token_hash = ?",
                (_digest(token),),
            ).fetchone()
        return row is not None and row[0] > self._clock()

    def blacklist(self, token: str) -> None:
        """Insert token for one lifetime. A live entry is left untouched; an expired one is renewed."""
        if not token:
            return
        now = self._clock()
        with self._lock:
            self._conn.execute(
                "INSERT INTO token_blacklist (token_hash, expires_at) VALUES (?, ?) "
                "ON CONFLICT(token_hash) DO UPDATE SET expires_at = excluded.expires_at "
                "WHERE token_blacklist.expires_at <= ?",
                (_digest(token), now + self.ttl, now),
            )
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM token_blacklist WHERE expires_at <= ?", (self._clock(),))
            self._conn.commit()
        if cursor.rowcount:
            logger.debug("Purged %d expired blacklist rows", cursor.rowcount)
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
