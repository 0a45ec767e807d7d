import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedOK
from websockets.frames import Close
from websockets.protocol import State

from pairchat.core.cache import MemoryCache
from pairchat.core.registry import Connection, ConnectionRegistry
from pairchat.core.store import SqliteStore
from pairchat.utils import canonical

SECRET = "test-secret"


class FakeWebSocket:
    """Stands in for a server-side websocket: records frames, never touches the network."""

    def __init__(self, *, answers_ping: bool = True, request: Any = None, incoming: Optional[List[str]] = None) -> None:
        self.state = State.OPEN
        self.request = request
        self.remote_address = ("127.0.0.1", 0)
        self.incoming = list(incoming or [])
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.answers_ping = answers_ping

    async def send(self, text: str) -> None:
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(Close(1000, ""), None)
        self.sent.append(canonical.loads(text))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason

    async def ping(self) -> "asyncio.Future[float]":
        waiter = asyncio.get_running_loop().create_future()
        if self.answers_ping:
            waiter.set_result(0.0)
        return waiter

    async def __aiter__(self):
        for raw in self.incoming:
            if self.state is not State.OPEN:
                return
            yield raw

    def of_type(self, type_: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f["type"] == type_]


@pytest_asyncio.fixture
async def store(tmp_path):
    s = await SqliteStore(tmp_path / "pairchat.db").open()
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def make_conn():
    def _make(user_id: Optional[str] = None, **kwargs) -> Connection:
        return Connection(websocket=FakeWebSocket(**kwargs), user_id=user_id)

    return _make


@pytest_asyncio.fixture
async def pair(store):
    """Two users sharing one chat: (alice, bob, chat)."""

    alice = await store.create_user("alice@example.com", "alice")
    bob = await store.create_user("bob@example.com", "bob")
    chat = await store.create_chat(alice.id, bob.id)
    return alice, bob, chat
