from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

log = logging.getLogger("pairchat.core.cache")


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def chat_key(chat_id: str) -> str:
    return f"chat:{chat_id}"


def last_seen_key(user_id: str) -> str:
    return f"lastSeen:{user_id}"


class Cache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, *, ex: Optional[float] = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryCache:
    """Best-effort expiring key/value cache living in this process.

    Values are strings (callers serialise); `ex` is the lifetime in seconds.
    Expired entries are dropped lazily on read and by `purge_expired`.
    """

    def __init__(self, *, now: Callable[[], float] = time.monotonic, max_items: int = 100_000) -> None:
        self._now = now
        self.max_items = max_items
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._now() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, *, ex: Optional[float] = None) -> None:
        async with self._lock:
            if key not in self._data and len(self._data) >= self.max_items:
                self._purge_expired_locked()
                if len(self._data) >= self.max_items:
                    # oldest insertion goes first
                    self._data.pop(next(iter(self._data)))
            expires_at = None if ex is None else self._now() + float(ex)
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def purge_expired(self) -> int:
        async with self._lock:
            return self._purge_expired_locked()

    def _purge_expired_locked(self) -> int:
        now = self._now()
        stale = [k for k, (_, exp) in self._data.items() if exp is not None and now >= exp]
        for k in stale:
            self._data.pop(k, None)
        if stale:
            log.debug("Purged %d expired cache entries", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._data)


__all__ = ["Cache", "MemoryCache", "user_key", "chat_key", "last_seen_key"]
