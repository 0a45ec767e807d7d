from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from pairchat.core import proto
from pairchat.core.errors import NotConnectedError
from pairchat.core.proto import CloseCode, EnvelopeType
from pairchat.utils import canonical

log = logging.getLogger("pairchat.client.session")

MessageCallback = Callable[[Dict[str, Any]], Any]
Connector = Callable[[str], Awaitable[Any]]

# retrying these would fail again or evict the session that replaced us
TERMINAL_CLOSE_CODES = frozenset({CloseCode.AUTH_REQUIRED, CloseCode.INVALID_AUTH, CloseCode.SUPERSEDED})


class ConnectionStatus(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


async def _default_connector(url: str) -> Any:
    return await connect(url, open_timeout=10)


def with_token(url: str, token: str) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "token"]
    query.append(("token", token))
    return urlunsplit(parts._replace(query=urlencode(query)))


class ClientSession:
    """Owns one outbound connection to a pairchat server.

    Status moves Disconnected -> Connecting -> Connected; a failed open lands
    in Error. Whenever the link drops, a reconnect is scheduled after a fixed
    `reconnect_interval` while fewer than `max_reconnect_attempts` retries
    have been spent; a successful open resets the count. Once the budget is
    gone the session stays Disconnected until `reconnect()` is called.

    Sends outside Connected raise NotConnectedError; nothing is queued.
    """

    def __init__(
        self,
        url: str,
        token: str,
        on_message: Optional[MessageCallback] = None,
        *,
        auto_reconnect: bool = True,
        max_reconnect_attempts: int = 5,
        reconnect_interval: float = 3.0,
        typing_timeout: float = 2.0,
        connector: Optional[Connector] = None,
    ) -> None:
        self.url = url
        self.token = token
        self.on_message = on_message
        self.auto_reconnect = auto_reconnect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_interval = reconnect_interval
        self.typing_timeout = typing_timeout
        self._connector = connector or _default_connector

        self._status = ConnectionStatus.DISCONNECTED
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._typing_task: Optional[asyncio.Task] = None
        self._presence_task: Optional[asyncio.Task] = None
        self._closing = False
        self.reconnect_attempts = 0
        self.last_close_code: Optional[int] = None
        self.status_changed = asyncio.Event()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED and self._ws is not None

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is not self._status:
            log.debug("Connection status %s -> %s", self._status.value, status.value)
        self._status = status
        self.status_changed.set()

    async def wait_for_status(self, status: ConnectionStatus, timeout: float = 5.0) -> None:
        async def _wait() -> None:
            while self._status is not status:
                self.status_changed.clear()
                await self.status_changed.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        if self._status in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
            return self.connected
        self._closing = False
        self._cancel_reconnect()
        return await self._open()

    async def reconnect(self) -> bool:
        """Manual reconnect; starts a fresh retry budget."""

        self.reconnect_attempts = 0
        return await self.connect()

    async def disconnect(self) -> None:
        self._closing = True
        self._cancel_reconnect()
        self._cancel_typing()
        self.stop_presence_poll()
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(ConnectionClosed):
                await ws.close()
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        self._reader = None
        self.reconnect_attempts = 0
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def _open(self) -> bool:
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            ws = await self._connector(with_token(self.url, self.token))
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as exc:
            log.warning("Connection to %s failed: %s", self.url, exc)
            self._set_status(ConnectionStatus.ERROR)
            self._schedule_reconnect()
            return False

        if self._closing:
            with contextlib.suppress(ConnectionClosed):
                await ws.close()
            return False

        self._ws = ws
        self.reconnect_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED)
        self._reader = asyncio.create_task(self._read_loop(ws), name="pairchat-client-reader")
        return True

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    frame = canonical.loads(raw)
                except ValueError:
                    log.warning("Dropped invalid frame: %r", raw)
                    continue
                if not isinstance(frame, dict):
                    log.warning("Dropped non-object frame: %r", raw)
                    continue
                await self._deliver(frame)
        except ConnectionClosed:
            pass
        finally:
            self.last_close_code = getattr(ws, "close_code", None)
            if self._ws is ws:
                self._ws = None
                self._on_closed()

    async def _deliver(self, frame: Dict[str, Any]) -> None:
        if self.on_message is None:
            return
        try:
            result = self.on_message(frame)
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception("Message callback failed for %s envelope", frame.get("type"))

    def _on_closed(self) -> None:
        log.info("Connection closed (code=%s)", self.last_close_code)
        self._cancel_typing()
        self._set_status(ConnectionStatus.DISCONNECTED)
        if self.last_close_code in TERMINAL_CLOSE_CODES:
            log.warning("Server closed with %s; not reconnecting", self.last_close_code)
            return
        if not self._closing:
            self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self._closing or not self.auto_reconnect:
            return
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            log.warning("Giving up after %d reconnect attempts", self.reconnect_attempts)
            self._set_status(ConnectionStatus.DISCONNECTED)
            return
        self.reconnect_attempts += 1
        log.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            self.reconnect_interval,
            self.reconnect_attempts,
            self.max_reconnect_attempts,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_later(), name="pairchat-client-reconnect")

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self.reconnect_interval)
        self._reconnect_task = None
        if not self._closing:
            await self._open()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, type_: EnvelopeType | str, payload: Dict[str, Any]) -> None:
        ws = self._ws
        if not self.connected or ws is None:
            raise NotConnectedError()
        try:
            await ws.send(proto.encode(proto.build_frame(type_, payload)))
        except ConnectionClosed as exc:
            raise NotConnectedError() from exc

    async def join(self, chat_id: str) -> None:
        await self.send(EnvelopeType.JOIN, {"chatId": chat_id})

    async def send_chat(self, chat_id: str, sender_id: str, content: str) -> None:
        await self.send(EnvelopeType.CHAT, {"chatId": chat_id, "content": content, "senderId": sender_id})
        await self.stop_typing(chat_id, sender_id)

    async def set_typing(self, chat_id: str, user_id: str) -> None:
        """Keystroke signal: send isTyping=true, then isTyping=false after a quiet period."""

        self._cancel_typing()
        await self.send(EnvelopeType.TYPING, {"chatId": chat_id, "userId": user_id, "isTyping": True})
        self._typing_task = asyncio.create_task(self._typing_expire(chat_id, user_id))

    async def stop_typing(self, chat_id: str, user_id: str) -> None:
        if self._typing_task is None:
            return
        self._cancel_typing()
        with contextlib.suppress(NotConnectedError):
            await self.send(EnvelopeType.TYPING, {"chatId": chat_id, "userId": user_id, "isTyping": False})

    @property
    def is_typing(self) -> bool:
        return self._typing_task is not None and not self._typing_task.done()

    async def _typing_expire(self, chat_id: str, user_id: str) -> None:
        await asyncio.sleep(self.typing_timeout)
        self._typing_task = None
        with contextlib.suppress(NotConnectedError):
            await self.send(EnvelopeType.TYPING, {"chatId": chat_id, "userId": user_id, "isTyping": False})

    def _cancel_typing(self) -> None:
        task, self._typing_task = self._typing_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Presence polling
    # ------------------------------------------------------------------

    def start_presence_poll(self, user_id: str, other_user_id: str, *, interval: float = 10.0) -> None:
        self.stop_presence_poll()
        self._presence_task = asyncio.create_task(
            self._presence_loop(user_id, other_user_id, interval), name="pairchat-client-presence"
        )

    def stop_presence_poll(self) -> None:
        task, self._presence_task = self._presence_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _presence_loop(self, user_id: str, other_user_id: str, interval: float) -> None:
        while True:
            if self.connected:
                try:
                    await self.send(EnvelopeType.ONLINE, {"userId": user_id, "otherUserId": other_user_id})
                except NotConnectedError:
                    log.debug("Presence poll skipped; not connected")
            await asyncio.sleep(interval)


__all__ = ["ClientSession", "ConnectionStatus", "with_token"]
