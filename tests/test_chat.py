import pytest

from pairchat.core.cache import chat_key
from pairchat.core.chat import ChatDirectory, ChatMessageHandler, JoinHistoryHandler
from pairchat.core.errors import HandlerError


@pytest.fixture
def chats(store, cache):
    return ChatDirectory(store, cache, ttl_secs=60)


@pytest.fixture
def handler(store, chats, registry):
    return ChatMessageHandler(store, chats, registry)


async def _online(registry, make_conn, user):
    conn = make_conn()
    await registry.register(user.id, conn)
    return conn


# -----------------------------
# CHAT
# -----------------------------

@pytest.mark.asyncio
async def test_delivers_to_recipient_and_echoes_to_sender(handler, registry, make_conn, pair, store):
    alice, bob, chat = pair
    a = await _online(registry, make_conn, alice)
    b = await _online(registry, make_conn, bob)

    await handler(a, {"chatId": chat.id, "senderId": alice.id, "content": "hi"})

    assert len(a.websocket.sent) == 1
    assert len(b.websocket.sent) == 1
    frame = b.websocket.sent[0]
    assert frame == a.websocket.sent[0]
    assert frame["type"] == "chat"
    assert frame["payload"]["chatId"] == chat.id
    message = frame["payload"]["message"]
    assert set(message) == {"id", "chatId", "senderId", "content", "createdAt"}
    assert message["content"] == "hi"
    assert message["senderId"] == alice.id

    [stored] = await store.list_chat_messages(chat.id)
    assert stored.id == message["id"]


@pytest.mark.asyncio
async def test_offline_recipient_is_silent_noop(handler, registry, make_conn, pair, store):
    alice, _, chat = pair
    a = await _online(registry, make_conn, alice)
    await handler(a, {"chatId": chat.id, "senderId": alice.id, "content": "anyone?"})
    assert [f["type"] for f in a.websocket.sent] == ["chat"]
    assert len(await store.list_chat_messages(chat.id)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"chatId": "c", "senderId": "s"},
        {"chatId": "c", "senderId": "s", "content": ""},
        {"chatId": "   ", "senderId": "s", "content": "x"},
        {"chatId": "c", "senderId": "s", "content": {"x": [1]}},
        {"chatId": 7, "senderId": "s", "content": "x"},
        {"chatId": "c", "senderId": ["s"], "content": "x"},
    ],
)
async def test_invalid_payload_persists_nothing(handler, make_conn, store, payload):
    with pytest.raises(HandlerError, match="Invalid chat message"):
        await handler(make_conn("s"), payload)
    assert await store.list_chat_messages("c") == []


@pytest.mark.asyncio
async def test_sender_must_match_connection(handler, registry, make_conn, pair, store):
    alice, bob, chat = pair
    a = await _online(registry, make_conn, alice)
    with pytest.raises(HandlerError):
        await handler(a, {"chatId": chat.id, "senderId": bob.id, "content": "spoof"})
    assert await store.list_chat_messages(chat.id) == []


@pytest.mark.asyncio
async def test_non_member_is_rejected_before_persisting(handler, registry, make_conn, pair, store):
    alice, _, chat = pair
    a = await _online(registry, make_conn, alice)
    carol = await store.create_user("carol@example.com", "carol")
    c = await _online(registry, make_conn, carol)

    with pytest.raises(HandlerError, match="Invalid chat message"):
        await handler(c, {"chatId": chat.id, "senderId": carol.id, "content": "let me in"})

    assert await store.list_chat_messages(chat.id) == []
    assert a.websocket.sent == []
    assert c.websocket.sent == []


@pytest.mark.asyncio
async def test_unknown_chat_persists_but_delivers_nothing(handler, registry, make_conn, pair, store):
    alice, _, _ = pair
    a = await _online(registry, make_conn, alice)
    await handler(a, {"chatId": "ghost", "senderId": alice.id, "content": "hello?"})
    assert a.websocket.sent == []
    assert len(await store.list_chat_messages("ghost")) == 1


@pytest.mark.asyncio
async def test_chat_snapshot_invalidated_after_send(handler, registry, make_conn, pair, cache):
    alice, _, chat = pair
    a = await _online(registry, make_conn, alice)
    await handler(a, {"chatId": chat.id, "senderId": alice.id, "content": "x"})
    assert await cache.get(chat_key(chat.id)) is None


@pytest.mark.asyncio
async def test_directory_serves_from_cache(chats, cache, pair, store):
    _, _, chat = pair
    assert await chats.get(chat.id) == chat
    assert await cache.get(chat_key(chat.id)) is not None
    assert await chats.get(chat.id) == chat
    await chats.invalidate(chat.id)
    assert await cache.get(chat_key(chat.id)) is None
    assert await chats.get("missing") is None


# -----------------------------
# JOIN
# -----------------------------

@pytest.mark.asyncio
async def test_join_replays_to_requester_only_in_order(store, registry, make_conn, pair):
    alice, bob, chat = pair
    for i in range(3):
        await store.create_message(chat.id, alice.id, f"m{i}")
    a = await _online(registry, make_conn, alice)
    b = await _online(registry, make_conn, bob)

    await JoinHistoryHandler(store)(b, {"chatId": chat.id})

    assert [f["payload"]["message"]["content"] for f in b.websocket.sent] == ["m0", "m1", "m2"]
    assert all(f["type"] == "chat" for f in b.websocket.sent)
    assert a.websocket.sent == []


@pytest.mark.asyncio
async def test_join_bound_keeps_most_recent(store, make_conn, pair):
    alice, _, chat = pair
    for i in range(6):
        await store.create_message(chat.id, alice.id, f"m{i}")
    conn = make_conn(alice.id)
    await JoinHistoryHandler(store, history_limit=4)(conn, {"chatId": chat.id})
    assert [f["payload"]["message"]["content"] for f in conn.websocket.sent] == ["m2", "m3", "m4", "m5"]


@pytest.mark.asyncio
async def test_join_unknown_or_foreign_chat(store, make_conn, pair):
    alice, _, chat = pair
    outsider = await store.create_user("eve@example.com", "eve")
    handler = JoinHistoryHandler(store)
    with pytest.raises(HandlerError, match="Chat not found") as ei:
        await handler(make_conn(alice.id), {"chatId": "nope"})
    assert ei.value.code == "NOT_FOUND"
    with pytest.raises(HandlerError, match="Chat not found"):
        await handler(make_conn(outsider.id), {"chatId": chat.id})


@pytest.mark.asyncio
async def test_join_requires_chat_id(store, make_conn):
    with pytest.raises(HandlerError, match="Invalid join request"):
        await JoinHistoryHandler(store)(make_conn("u"), {})


@pytest.mark.asyncio
async def test_join_stops_when_requester_goes_away(store, make_conn, pair):
    alice, _, chat = pair
    for i in range(3):
        await store.create_message(chat.id, alice.id, f"m{i}")
    conn = make_conn(alice.id)
    await conn.close()
    await JoinHistoryHandler(store)(conn, {"chatId": chat.id})
    assert conn.websocket.sent == []
