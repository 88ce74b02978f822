"""
Dictionary Implementation

In-process key/value store with per-key expiry. Only suitable for a
single worker; do not run this configuration in production.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from ..helpers import Clock, utcnow

logger = logging.getLogger(__name__)

PURGE_INTERVAL_SECONDS = 60


class TTLDictionary:
    """
    Dictionary with expiring keys

    None of the coroutines below await between the expiry check and the
    mutation, so each one is atomic on a single event loop. Keys that are
    never read again are dropped by a sweep that runs on writes at most
    once per ``purge_interval`` seconds.
    """

    def __init__(self, clock: Clock = utcnow, warn: bool = True, purge_interval: float = PURGE_INTERVAL_SECONDS):
        self._data: dict[str, tuple[str, datetime]] = {}
        self._clock = clock
        self._purge_interval = timedelta(seconds=purge_interval)
        self._next_purge = clock() + self._purge_interval
        if warn:
            logger.warning(
                "Running with an in-process key/value store. "
                "Do not run this configuration in production"
            )

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _store(self, key: str, value: str, ttl: float) -> None:
        now = self._clock()
        if now >= self._next_purge:
            self.purge()
        self._data[key] = (value, now + timedelta(seconds=ttl))

    async def add(self, key: str, value: str, ttl: float) -> bool:
        if self._live(key) is not None:
            return False
        self._store(key, value, ttl)
        return True

    async def replace(self, key: str, value: str, ttl: float) -> bool:
        if self._live(key) is None:
            return False
        self._store(key, value, ttl)
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def pop(self, key: str) -> Optional[str]:
        value = self._live(key)
        if value is not None:
            del self._data[key]
        return value

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()

    def purge(self) -> int:
        """
        Drop every expired key, returning how many were removed.
        """
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._data.items() if now >= expires_at]
        for key in expired:
            del self._data[key]
        self._next_purge = now + self._purge_interval
        if expired:
            logger.debug("Purged %s expired keys", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)
