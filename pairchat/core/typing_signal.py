from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from pairchat.core import proto
from pairchat.core.chat import ChatDirectory, require_fields
from pairchat.core.errors import HandlerError
from pairchat.core.proto import EnvelopeType
from pairchat.core.registry import Connection, ConnectionRegistry

log = logging.getLogger("pairchat.core.typing")

TypingKey = Tuple[str, str]  # (chat_id, user_id)


@dataclass
class _TypingSession:
    chat_id: str
    user_id: str
    other_id: str
    timer: asyncio.Task


class TypingSignalHandler:
    """Debounces keystroke signals into started/stopped pairs.

    Per (chatId, userId): Idle -> Typing on a signal; every signal re-emits
    "started" to the other participant and re-arms a `timeout` countdown.
    When the countdown elapses the state returns to Idle and exactly one
    "stopped" goes out. The sender never receives its own typing events.
    """

    def __init__(self, chats: ChatDirectory, registry: ConnectionRegistry, *, timeout: float = 2.0) -> None:
        self.chats = chats
        self.registry = registry
        self.timeout = timeout
        self._sessions: Dict[TypingKey, _TypingSession] = {}

    def is_typing(self, chat_id: str, user_id: str) -> bool:
        return (chat_id, user_id) in self._sessions

    async def __call__(self, conn: Connection, payload: Dict[str, Any]) -> None:
        require_fields(payload, "chatId", "userId", message="Invalid typing status")
        chat_id = payload["chatId"]
        user_id = payload["userId"]
        if conn.user_id and user_id != conn.user_id:
            raise HandlerError("Invalid typing status: user does not match connection")
        is_typing = payload.get("isTyping", True)
        if not isinstance(is_typing, bool):
            raise HandlerError("Invalid typing status: isTyping must be a boolean")

        key = (chat_id, user_id)
        if not is_typing:
            await self._stop(key)
            return

        chat = await self.chats.get(chat_id)
        if chat is None or not chat.has_member(user_id):
            return
        other_id = chat.other_participant(user_id)

        session = self._sessions.pop(key, None)
        if session is not None:
            session.timer.cancel()
        timer = asyncio.create_task(self._expire(key), name=f"typing:{chat_id}:{user_id}")
        self._sessions[key] = _TypingSession(chat_id, user_id, other_id, timer)

        await self._notify(other_id, chat_id, user_id, True)

    async def flush_user(self, user_id: str) -> None:
        """Connection of `user_id` is going away: stop all its typing sessions now."""

        for key in [k for k in self._sessions if k[1] == user_id]:
            await self._stop(key)

    async def close(self) -> None:
        for session in self._sessions.values():
            session.timer.cancel()
        self._sessions.clear()

    async def _stop(self, key: TypingKey) -> None:
        session = self._sessions.pop(key, None)
        if session is None:
            return
        session.timer.cancel()
        await self._notify(session.other_id, session.chat_id, session.user_id, False)

    async def _expire(self, key: TypingKey) -> None:
        await asyncio.sleep(self.timeout)
        session = self._sessions.get(key)
        if session is None or session.timer is not asyncio.current_task():
            return
        del self._sessions[key]
        try:
            await self._notify(session.other_id, session.chat_id, session.user_id, False)
        except Exception:
            log.exception("Typing stop delivery failed for %s", key)

    async def _notify(self, target_id: str, chat_id: str, user_id: str, is_typing: bool) -> None:
        target = self.registry.lookup(target_id)
        if target is None:
            return
        frame = proto.build_frame(
            EnvelopeType.TYPING, {"chatId": chat_id, "userId": user_id, "isTyping": is_typing}
        )
        await target.send(frame)


__all__ = ["TypingSignalHandler"]
