from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from pairchat.core import proto
from pairchat.core.auth import CLOSE_CODE_FOR, CredentialGate
from pairchat.core.cache import Cache, MemoryCache
from pairchat.core.chat import ChatDirectory, ChatMessageHandler, JoinHistoryHandler
from pairchat.core.errors import AuthError
from pairchat.core.presence import PresenceHandler
from pairchat.core.proto import CloseCode
from pairchat.core.registry import Connection, ConnectionRegistry
from pairchat.core.router import EnvelopeRouter
from pairchat.core.store import DurableStore, SqliteStore
from pairchat.core.typing_signal import TypingSignalHandler
from pairchat.server.config import ServerConfig

log = logging.getLogger("pairchat.server.runtime")


class ServerRuntime:
    """Websocket server wiring the gate, registry, router and handlers together."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        store: Optional[DurableStore] = None,
        cache: Optional[Cache] = None,
    ) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = config.host, config.port

        self._owns_store = store is None
        self.store = store if store is not None else SqliteStore(config.db_path)
        self.cache = cache if cache is not None else MemoryCache()

        self.registry = ConnectionRegistry()
        self.gate = CredentialGate(
            self.store, self.cache, config.jwt_secret, cache_ttl_secs=config.user_cache_ttl_secs
        )
        self.chats = ChatDirectory(self.store, self.cache, ttl_secs=config.chat_cache_ttl_secs)
        self.presence = PresenceHandler(
            self.store,
            self.cache,
            self.registry,
            last_seen_ttl_secs=config.last_seen_ttl_secs,
            grace_secs=config.presence_grace_secs,
        )
        self.typing = TypingSignalHandler(self.chats, self.registry, timeout=config.typing_timeout_secs)
        self.router = EnvelopeRouter(
            chat=ChatMessageHandler(self.store, self.chats, self.registry),
            join=JoinHistoryHandler(self.store, history_limit=config.history_limit),
            typing=self.typing,
            online=self.presence,
        )

        # last-seen is written before typing is flushed and the entry removed
        self.registry.add_disconnect_hook(self.presence.on_disconnect)
        self.registry.add_disconnect_hook(self.typing.flush_user)

        self._ws_server: Optional[Server] = None
        self._tasks: list[asyncio.Task] = []
        self._closers: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._owns_store and isinstance(self.store, SqliteStore):
            await self.store.open()

        self._ws_server = await serve(
            self._handle_connection, self.listen_host, self.listen_port, ping_interval=None
        )
        log.info("pairchat server listening on ws://%s:%d", self.listen_host, self.bound_port)

        self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name="heartbeat"))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.typing.close()

        for conn in self.registry.connections():
            try:
                await conn.close(CloseCode.NORMAL)
            except ConnectionClosed:
                pass

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        if self._closers:
            await asyncio.gather(*self._closers, return_exceptions=True)

        if self._owns_store and isinstance(self.store, SqliteStore):
            await self.store.close()
        log.info("pairchat server stopped")

    @property
    def bound_port(self) -> int:
        if self._ws_server is None:
            return self.listen_port
        for sock in self._ws_server.sockets:
            return sock.getsockname()[1]
        return self.listen_port

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket=websocket)
        remote = self._fmt_remote(websocket)

        try:
            user = await self.gate.authenticate(self._extract_token(websocket))
        except AuthError as exc:
            log.info("Rejected connection from %s: %s", remote, exc.code)
            await conn.close(CLOSE_CODE_FOR[exc.code], exc.message)
            return
        except Exception:
            log.exception("Authentication failed unexpectedly for %s", remote)
            await conn.close(CloseCode.INTERNAL_ERROR)
            return

        # CONNECTION must be the first frame, so it goes out before the
        # registry makes this transport reachable by other users' handlers
        conn.user_id = user.id
        if not await conn.send(proto.connection_frame(user.id)):
            log.info("User %s left before registration", user.id)
            return

        previous = await self.registry.register(user.id, conn)
        if previous is not None and self.cfg.close_superseded:
            self._retire(previous, CloseCode.SUPERSEDED)
        log.info("User %s connected from %s", user.id, remote)

        try:
            async for raw in websocket:
                await self.router.dispatch(conn, raw)
        except ConnectionClosed:
            pass
        finally:
            await self.registry.unregister(user.id, conn)
            log.info("User %s disconnected", user.id)

    def _retire(self, conn: Connection, code: CloseCode) -> None:
        # closing handshake may take a while; never hold up the caller on it
        task = asyncio.create_task(self._close_quietly(conn, code))
        self._closers.add(task)
        task.add_done_callback(self._closers.discard)

    @staticmethod
    async def _close_quietly(conn: Connection, code: CloseCode) -> None:
        try:
            await conn.close(code)
        except ConnectionClosed:
            pass

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(max(0.01, self.cfg.heartbeat_secs))
            await self.heartbeat_once()

    async def heartbeat_once(self) -> int:
        """Ping every registered connection; prune the ones that miss their pong."""

        conns = self.registry.connections()
        results = await asyncio.gather(
            *(c.ping(self.cfg.heartbeat_timeout_secs) for c in conns), return_exceptions=True
        )
        dead = 0
        for conn, alive in zip(conns, results):
            if alive is True:
                continue
            dead += 1
            log.warning("Heartbeat missed for %s; closing transport", conn.user_id)
            if conn.user_id:
                await self.registry.unregister(conn.user_id, conn)
            self._retire(conn, CloseCode.NORMAL)
        if isinstance(self.cache, MemoryCache):
            await self.cache.purge_expired()
        return dead

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_token(websocket: ServerConnection) -> Optional[str]:
        request = websocket.request
        if request is None:
            return None
        values = parse_qs(urlsplit(request.path).query).get("token")
        if values and values[0]:
            return values[0]
        auth = request.headers.get("Authorization", "")
        if auth.lower().startswith("bearer "):
            return auth[7:].strip() or None
        return None

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["ServerRuntime"]
