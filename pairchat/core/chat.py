from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from pairchat.core import proto
from pairchat.core.cache import Cache, chat_key
from pairchat.core.errors import HandlerError
from pairchat.core.models import ChatSession
from pairchat.core.proto import EnvelopeType
from pairchat.core.registry import Connection, ConnectionRegistry
from pairchat.core.store import DurableStore

log = logging.getLogger("pairchat.core.chat")


def require_fields(payload: Dict[str, Any], *names: str, message: str) -> None:
    """Raise HandlerError(message) unless every field is a non-blank string."""

    for name in names:
        value = payload.get(name)
        if not isinstance(value, str) or not value.strip():
            raise HandlerError(message)


class ChatDirectory:
    """ChatSession lookups through the `chat:<id>` cache entry."""

    def __init__(self, store: DurableStore, cache: Cache, *, ttl_secs: int = 3600) -> None:
        self.store = store
        self.cache = cache
        self.ttl_secs = ttl_secs

    async def get(self, chat_id: str) -> Optional[ChatSession]:
        try:
            raw = await self.cache.get(chat_key(chat_id))
        except Exception:
            log.exception("Chat cache read failed for %s", chat_id)
            raw = None
        if raw is not None:
            try:
                return ChatSession.model_validate_json(raw)
            except ValidationError:
                log.warning("Discarding malformed cached chat %s", chat_id)

        chat = await self.store.find_chat_by_id(chat_id)
        if chat is not None:
            try:
                await self.cache.set(chat_key(chat_id), chat.model_dump_json(by_alias=True), ex=self.ttl_secs)
            except Exception:
                log.exception("Chat cache write failed for %s", chat_id)
        return chat

    async def invalidate(self, chat_id: str) -> None:
        try:
            await self.cache.delete(chat_key(chat_id))
        except Exception:
            log.exception("Chat cache invalidation failed for %s", chat_id)


class ChatMessageHandler:
    """CHAT: persist, then deliver to the other participant and echo to the sender."""

    def __init__(self, store: DurableStore, chats: ChatDirectory, registry: ConnectionRegistry) -> None:
        self.store = store
        self.chats = chats
        self.registry = registry

    async def __call__(self, conn: Connection, payload: Dict[str, Any]) -> None:
        require_fields(payload, "chatId", "content", "senderId", message="Invalid chat message")
        chat_id = payload["chatId"]
        sender_id = payload["senderId"]
        content = payload["content"]
        if conn.user_id and sender_id != conn.user_id:
            raise HandlerError("Invalid chat message: sender does not match connection")

        # an unknown chat still persists; a known chat only takes its members
        chat = await self.chats.get(chat_id)
        if chat is not None and not chat.has_member(sender_id):
            raise HandlerError("Invalid chat message: sender is not in this chat")

        message = await self.store.create_message(chat_id, sender_id, content)

        if chat is None:
            log.warning("Persisted message %s for unknown chat %s; not delivered", message.id, chat_id)
            return

        frame = proto.build_frame(EnvelopeType.CHAT, {"chatId": chat_id, "message": message.to_wire()})
        recipient_id = chat.other_participant(sender_id)
        await self._deliver(recipient_id, frame)
        if recipient_id != sender_id:
            await self._deliver(sender_id, frame)

        await self.chats.invalidate(chat_id)

    async def _deliver(self, user_id: str, frame: Dict[str, Any]) -> None:
        target = self.registry.lookup(user_id)
        if target is None:
            log.debug("User %s offline; chat delivery skipped", user_id)
            return
        await target.send(frame)


class JoinHistoryHandler:
    """JOIN: replay a chat's history to the requesting connection only."""

    def __init__(self, store: DurableStore, *, history_limit: int = 500) -> None:
        self.store = store
        self.history_limit = history_limit

    async def __call__(self, conn: Connection, payload: Dict[str, Any]) -> None:
        require_fields(payload, "chatId", message="Invalid join request")
        chat_id = payload["chatId"]

        chat = await self.store.find_chat_by_id(chat_id)
        if chat is None or (conn.user_id and not chat.has_member(conn.user_id)):
            raise HandlerError("Chat not found", code="NOT_FOUND")

        # newest N, replayed oldest first
        recent = await self.store.list_chat_messages(chat_id, order="desc", limit=self.history_limit)
        for message in reversed(recent):
            frame = proto.build_frame(EnvelopeType.CHAT, {"chatId": chat_id, "message": message.to_wire()})
            if not await conn.send(frame):
                log.debug("History replay for %s stopped; connection closed", chat_id)
                return


__all__ = ["ChatDirectory", "ChatMessageHandler", "JoinHistoryHandler", "require_fields"]
