from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from pairchat.core import proto
from pairchat.core.errors import EnvelopeError, HandlerError
from pairchat.core.proto import EnvelopeType
from pairchat.core.registry import Connection

log = logging.getLogger("pairchat.core.router")

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[None]]


class EnvelopeRouter:
    """Parses inbound frames and dispatches them by envelope kind.

    Nothing raised here or by a handler closes the connection: parse
    failures, unknown kinds, validation errors and collaborator failures all
    come back to the sender as exactly one ERROR envelope.
    """

    def __init__(self, *, chat: Handler, join: Handler, typing: Handler, online: Handler) -> None:
        self.chat = chat
        self.join = join
        self.typing = typing
        self.online = online

    async def dispatch(self, conn: Connection, raw: str | bytes) -> None:
        try:
            env = proto.parse_envelope(raw)
        except EnvelopeError as exc:
            log.warning("Rejected frame from %s: %s", conn.user_id, exc.message)
            code = "UNSUPPORTED_TYPE" if exc.code == "UNSUPPORTED_TYPE" else "INVALID_MESSAGE"
            await conn.send(proto.error_frame(exc.message, code))
            return

        log.debug("Dispatching %s from %s", env.type.value, conn.user_id)
        try:
            await self._handle(conn, env.type, env.payload)
        except HandlerError as exc:
            log.info("Handler refused %s from %s: %s", env.type.value, conn.user_id, exc.message)
            await conn.send(proto.error_frame(exc.message, exc.code))
        except Exception:
            log.exception("Failed to process %s message from %s", env.type.value, conn.user_id)
            await conn.send(proto.error_frame(f"Failed to process {env.type.value} message", "INTERNAL"))

    async def _handle(self, conn: Connection, type_: EnvelopeType, payload: Dict[str, Any]) -> None:
        if type_ is EnvelopeType.CHAT:
            await self.chat(conn, payload)
        elif type_ is EnvelopeType.JOIN:
            await self.join(conn, payload)
        elif type_ is EnvelopeType.TYPING:
            await self.typing(conn, payload)
        elif type_ is EnvelopeType.ONLINE:
            await self.online(conn, payload)
        else:
            raise HandlerError("Unsupported message type", code="UNSUPPORTED_TYPE")


__all__ = ["EnvelopeRouter", "Handler"]
