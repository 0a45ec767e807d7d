from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pairchat.core import proto
from pairchat.core.cache import Cache, last_seen_key
from pairchat.core.chat import require_fields
from pairchat.core.errors import HandlerError
from pairchat.core.proto import EnvelopeType
from pairchat.core.registry import Connection, ConnectionRegistry
from pairchat.core.store import DurableStore


"""
Presence
--------
Two halves:
  • on_disconnect(user_id): registry hook, writes `lastSeen:<id>` to the cache
    before the registry entry is removed
  • __call__(conn, payload): ONLINE poll `{userId, otherUserId}` from a client
    viewing a chat; answers from the registry, else from the cached last-seen

`online` is true only when the other user holds a live registry entry.
`recentlySeen` is the informational "disconnected within
`grace_secs`" flag; it is not used to claim the user is online.
"""

log = logging.getLogger("pairchat.core.presence")


class PresenceHandler:
    def __init__(
        self,
        store: DurableStore,
        cache: Cache,
        registry: ConnectionRegistry,
        *,
        last_seen_ttl_secs: int = 7 * 24 * 3600,
        grace_secs: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.registry = registry
        self.last_seen_ttl_secs = last_seen_ttl_secs
        self.grace_secs = grace_secs
        self._clock = clock

    # -------------------------------
    # Registry hook
    # -------------------------------
    async def on_disconnect(self, user_id: str) -> None:
        stamp = proto.utc_iso(self._clock())
        await self.cache.set(last_seen_key(user_id), stamp, ex=self.last_seen_ttl_secs)
        log.debug("Recorded last seen for %s at %s", user_id, stamp)

    # -------------------------------
    # ONLINE poll
    # -------------------------------
    async def __call__(self, conn: Connection, payload: Dict[str, Any]) -> None:
        if not payload.get("otherUserId") and payload.get("user2Id"):
            payload = {**payload, "otherUserId": payload["user2Id"]}
        require_fields(payload, "userId", "otherUserId", message="Invalid presence request")
        user_id = payload["userId"]
        other_id = payload["otherUserId"]
        if conn.user_id and user_id != conn.user_id:
            raise HandlerError("Invalid presence request: user does not match connection")

        chat = await self.store.find_chat_between(user_id, other_id)
        if chat is None:
            return

        await conn.send(await self.status_frame(other_id))

    async def status_frame(self, other_id: str) -> Dict[str, Any]:
        if self.registry.lookup(other_id) is not None:
            return proto.build_frame(
                EnvelopeType.ONLINE,
                {"userId": other_id, "online": True, "lastSeen": None, "recentlySeen": True},
            )

        last_seen = await self.cache.get(last_seen_key(other_id))
        return proto.build_frame(
            EnvelopeType.ONLINE,
            {
                "userId": other_id,
                "online": False,
                "lastSeen": last_seen,
                "recentlySeen": self._within_grace(last_seen),
            },
        )

    def _within_grace(self, last_seen: Optional[str]) -> bool:
        if not last_seen:
            return False
        try:
            seen = datetime.fromisoformat(last_seen.replace("Z", "+00:00")).timestamp()
        except ValueError:
            log.warning("Unparseable last seen value %r", last_seen)
            return False
        return (self._clock() - seen) < self.grace_secs


__all__ = ["PresenceHandler"]
