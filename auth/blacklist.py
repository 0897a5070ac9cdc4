"""
auth/blacklist.py -- Expiring store of invalidated bearer tokens.

A blacklisted token stays rejected until its entry expires. The TTL equals
the configured token lifetime: a token can never outlive its own exp claim,
so keeping the entry that long is always sufficient (over-retention is fine,
under-retention is not).

Two implementations share the TokenBlacklist protocol:
  MemoryTokenBlacklist (here) -- per-process dict with lazy expiry. Not
      shared between worker processes; suitable for single-instance or
      sticky-session deployments.
  SqliteTokenBlacklist (cache/store.py) -- SQLite file shared by every worker
      on the same host.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import timedelta
from typing import Protocol

from auth.tokens import token_fingerprint

logger = logging.getLogger("flexflow.auth")


class TokenBlacklist(Protocol):
    def is_blacklisted(self, token: str) -> bool: ...

    def blacklist(self, token: str) -> None: ...

    def purge_expired(self) -> int: ...

    def close(self) -> None: ...


class MemoryTokenBlacklist:
    """Thread-safe in-memory blacklist keyed by the raw token string.

    Expired entries are dropped lazily on lookup and in bulk by
    purge_expired(), which the app lifespan calls periodically.
    """

    def __init__(self, ttl: timedelta, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl.total_seconds()
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def is_blacklisted(self, token: str) -> bool:
        if not token:
            return False
        with self._lock:
            expires_at = self._entries.get(token)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._entries[token]
                return False
            return True

    def blacklist(self, token: str) -> None:
        """Add token with a TTL of one token lifetime. Re-adding a live entry is a no-op."""
        if not token:
            return
        with self._lock:
            now = self._clock()
            expires_at = self._entries.get(token)
            if expires_at is not None and expires_at > now:
                return
            self._entries[token] = now + self.ttl
        logger.info("Token %s blacklisted for %ds", token_fingerprint(token), self.ttl)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [t for t, exp in self._entries.items() if exp <= now]
            for t in expired:
                del self._entries[t]
        if expired:
            logger.debug("Purged %d expired blacklist entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        with self._lock:
            self._entries.clear()
