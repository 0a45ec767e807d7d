from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class Principal(BaseModel):
    """Authenticated user; immutable for the life of a session."""

    id: str
    email: str
    username: str

    model_config = ConfigDict(frozen=True)


class ChatSession(BaseModel):
    id: str
    user1_id: str = Field(alias="user1Id")
    user2_id: str = Field(alias="user2Id")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def has_member(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    def other_participant(self, user_id: str) -> str:
        return self.user2_id if self.user1_id == user_id else self.user1_id

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Message(BaseModel):
    id: str
    chat_id: str = Field(alias="chatId")
    sender_id: str = Field(alias="senderId")
    content: str
    created_at: str = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


__all__ = ["Principal", "ChatSession", "Message"]
