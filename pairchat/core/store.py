from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import List, Optional, Protocol

import aiosqlite

from pairchat.core.models import ChatSession, Message, Principal
from pairchat.core.proto import utc_iso

"""
Durable store for users, chats and messages.

The realtime engine only needs the narrow read/write surface in
`DurableStore`; `SqliteStore` implements it on aiosqlite and adds the
seeding helpers used by scripts and tests (`create_user`, `create_chat`).
"""

log = logging.getLogger("pairchat.core.store")

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


class DurableStore(Protocol):
    async def find_user_by_credential_subject(self, subject: str) -> Optional[Principal]: ...

    async def create_message(self, chat_id: str, sender_id: str, content: str) -> Message: ...

    async def find_chat_by_id(self, chat_id: str) -> Optional[ChatSession]: ...

    async def find_chat_between(self, user_a: str, user_b: str) -> Optional[ChatSession]: ...

    async def list_chat_messages(self, chat_id: str, order: str = "asc", limit: int = 500) -> List[Message]: ...


class SqliteStore:
    """aiosqlite-backed durable store."""

    def __init__(self, path: str | Path = "pairchat.db") -> None:
        self.path = str(path)
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> "SqliteStore":
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys=ON;")
        await self._db.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
        await self._db.commit()
        log.info("Durable store ready at %s", self.path)
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("store is not open")
        return self._db

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(self, email: str, username: str, *, user_id: Optional[str] = None) -> Principal:
        user = Principal(id=user_id or str(uuid.uuid4()), email=email, username=username)
        await self.db.execute(
            "INSERT INTO users(id,email,username,created_at) VALUES(?,?,?,?)",
            (user.id, user.email, user.username, utc_iso()),
        )
        await self.db.commit()
        return user

    async def find_user_by_credential_subject(self, subject: str) -> Optional[Principal]:
        cur = await self.db.execute("SELECT id,email,username FROM users WHERE id=?", (subject,))
        row = await cur.fetchone()
        await cur.close()
        if not row:
            return None
        return Principal(id=row["id"], email=row["email"], username=row["username"])

    async def find_user_by_name(self, name: str) -> Optional[Principal]:
        cur = await self.db.execute(
            "SELECT id,email,username FROM users WHERE username=? OR email=?", (name, name)
        )
        row = await cur.fetchone()
        await cur.close()
        if not row:
            return None
        return Principal(id=row["id"], email=row["email"], username=row["username"])

    async def delete_user(self, user_id: str) -> None:
        await self.db.execute("DELETE FROM users WHERE id=?", (user_id,))
        await self.db.commit()

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def create_chat(self, user1_id: str, user2_id: str, *, chat_id: Optional[str] = None) -> ChatSession:
        if user1_id == user2_id:
            raise ValueError("You cannot create a chat with yourself")
        if await self.find_chat_between(user1_id, user2_id):
            raise ValueError("Chat already exists between these users")
        chat = ChatSession(id=chat_id or str(uuid.uuid4()), user1_id=user1_id, user2_id=user2_id)
        await self.db.execute(
            "INSERT INTO chats(id,user1_id,user2_id,created_at) VALUES(?,?,?,?)",
            (chat.id, chat.user1_id, chat.user2_id, utc_iso()),
        )
        await self.db.commit()
        return chat

    async def find_chat_by_id(self, chat_id: str) -> Optional[ChatSession]:
        cur = await self.db.execute("SELECT id,user1_id,user2_id FROM chats WHERE id=?", (chat_id,))
        row = await cur.fetchone()
        await cur.close()
        if not row:
            return None
        return ChatSession(id=row["id"], user1_id=row["user1_id"], user2_id=row["user2_id"])

    async def find_chat_between(self, user_a: str, user_b: str) -> Optional[ChatSession]:
        cur = await self.db.execute(
            "SELECT id,user1_id,user2_id FROM chats "
            "WHERE (user1_id=? AND user2_id=?) OR (user1_id=? AND user2_id=?)",
            (user_a, user_b, user_b, user_a),
        )
        row = await cur.fetchone()
        await cur.close()
        if not row:
            return None
        return ChatSession(id=row["id"], user1_id=row["user1_id"], user2_id=row["user2_id"])

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def create_message(self, chat_id: str, sender_id: str, content: str) -> Message:
        msg = Message(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            sender_id=sender_id,
            content=content,
            created_at=utc_iso(),
        )
        await self.db.execute(
            "INSERT INTO messages(id,chat_id,sender_id,content,created_at) VALUES(?,?,?,?,?)",
            (msg.id, msg.chat_id, msg.sender_id, msg.content, msg.created_at),
        )
        await self.db.commit()
        return msg

    async def list_chat_messages(self, chat_id: str, order: str = "asc", limit: int = 500) -> List[Message]:
        direction = order.lower()
        if direction not in ("asc", "desc"):
            raise ValueError(f"invalid order: {order}")
        cur = await self.db.execute(
            "SELECT id,chat_id,sender_id,content,created_at FROM messages WHERE chat_id=? "
            f"ORDER BY created_at {direction.upper()}, seq {direction.upper()} LIMIT ?",
            (chat_id, int(limit)),
        )
        rows = await cur.fetchall()
        await cur.close()
        return [
            Message(
                id=r["id"],
                chat_id=r["chat_id"],
                sender_id=r["sender_id"],
                content=r["content"],
                created_at=r["created_at"],
            )
            for r in rows
        ]


__all__ = ["DurableStore", "SqliteStore", "SCHEMA_PATH"]
