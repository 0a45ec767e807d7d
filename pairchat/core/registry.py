from __future__ import annotations

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from pairchat.core import proto
from pairchat.core.proto import CloseCode

"""
Connection Registry
-------------------
Single-process map from user id to the one live Connection for that user.

  • register() replaces any existing entry (last registered wins) and returns
    the superseded Connection so the caller can retire it
  • lookup() is a plain dict read and never awaits
  • unregister() runs the disconnect hooks (presence last-seen write, typing
    flush) *before* the entry disappears, so a presence query racing the
    disconnect sees either the live entry or the fresh last-seen value
  • unregister() only removes the entry if the departing Connection still
    owns it; a superseded transport closing late cannot evict its successor

Mutations are serialised per user id with an asyncio.Lock; different users
never contend.
"""

log = logging.getLogger("pairchat.core.registry")

DisconnectHook = Callable[[str], Awaitable[None]]


@dataclass(eq=False)
class Connection:
    """Transport handle owned by the registry for its lifetime."""

    websocket: Any
    user_id: Optional[str] = None
    last_ping_at: float = field(default_factory=time.time)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_open(self) -> bool:
        return self.websocket.state is State.OPEN

    async def send(self, frame: Dict[str, Any]) -> bool:
        """Send one envelope. Returns False if the transport is gone."""

        if not self.is_open:
            return False
        text = proto.encode(frame)
        async with self.send_lock:
            try:
                await self.websocket.send(text)
            except ConnectionClosed:
                log.debug("Dropped %s envelope for closed connection of %s", frame.get("type"), self.user_id)
                return False
        return True

    async def close(self, code: CloseCode = CloseCode.NORMAL, reason: Optional[str] = None) -> None:
        await self.websocket.close(code=int(code), reason=reason or proto.CLOSE_REASONS[code])

    async def ping(self, timeout: float) -> bool:
        """Liveness check; True when the pong arrives within `timeout`."""

        try:
            pong_waiter = await self.websocket.ping()
            await asyncio.wait_for(pong_waiter, timeout=timeout)
        except (ConnectionClosed, asyncio.TimeoutError):
            return False
        self.last_ping_at = time.time()
        return True


class ConnectionRegistry:
    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        # a per-user lock lives only while some mutation holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._disconnect_hooks: List[DisconnectHook] = []

    def add_disconnect_hook(self, hook: DisconnectHook) -> None:
        self._disconnect_hooks.append(hook)

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def register(self, user_id: str, connection: Connection) -> Optional[Connection]:
        """Map `user_id` to `connection`; returns the Connection it replaced, if any."""

        if not user_id:
            raise ValueError("user_id is required")
        async with self._lock_for(user_id):
            connection.user_id = user_id
            previous = self._connections.get(user_id)
            self._connections[user_id] = connection
        if previous is not None and previous is not connection:
            log.info("Replaced live connection for %s", user_id)
            return previous
        log.info("Registered connection for %s", user_id)
        return None

    def lookup(self, user_id: str) -> Optional[Connection]:
        return self._connections.get(user_id)

    def is_online(self, user_id: str) -> bool:
        conn = self._connections.get(user_id)
        return conn is not None and conn.is_open

    async def unregister(self, user_id: str, connection: Optional[Connection] = None) -> bool:
        """Remove the entry for `user_id`. Idempotent.

        With `connection` given, nothing happens unless that Connection is
        the current owner. Returns True when an entry was removed.
        """

        async with self._lock_for(user_id):
            current = self._connections.get(user_id)
            if current is None:
                return False
            if connection is not None and current is not connection:
                log.debug("Ignoring unregister of superseded connection for %s", user_id)
                return False
            for hook in list(self._disconnect_hooks):
                try:
                    await hook(user_id)
                except Exception:
                    log.exception("Disconnect hook failed for %s", user_id)
            self._connections.pop(user_id, None)
        log.info("Unregistered connection for %s", user_id)
        return True

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._connections


__all__ = ["Connection", "ConnectionRegistry", "DisconnectHook"]
