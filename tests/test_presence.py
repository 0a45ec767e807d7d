import pytest

from pairchat.core import proto
from pairchat.core.cache import last_seen_key
from pairchat.core.errors import HandlerError
from pairchat.core.presence import PresenceHandler


class Clock:
    def __init__(self, t: float = 1_700_000_000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def presence(store, cache, registry, clock):
    handler = PresenceHandler(store, cache, registry, grace_secs=30, clock=clock)
    registry.add_disconnect_hook(handler.on_disconnect)
    return handler


# -----------------------------
# Poll answers
# -----------------------------

@pytest.mark.asyncio
async def test_other_online(presence, registry, make_conn, pair):
    alice, bob, _ = pair
    a, b = make_conn(), make_conn()
    await registry.register(alice.id, a)
    await registry.register(bob.id, b)

    await presence(a, {"userId": alice.id, "otherUserId": bob.id})

    [frame] = a.websocket.sent
    assert frame["type"] == "online"
    assert frame["payload"]["userId"] == bob.id
    assert frame["payload"]["online"] is True
    assert b.websocket.sent == []


@pytest.mark.asyncio
async def test_other_never_seen(presence, registry, make_conn, pair):
    alice, bob, _ = pair
    a = make_conn()
    await registry.register(alice.id, a)
    await presence(a, {"userId": alice.id, "otherUserId": bob.id})
    assert a.websocket.sent[0]["payload"] == {
        "userId": bob.id,
        "online": False,
        "lastSeen": None,
        "recentlySeen": False,
    }


@pytest.mark.asyncio
async def test_last_seen_after_disconnect(presence, registry, make_conn, pair, clock):
    alice, bob, _ = pair
    a, b = make_conn(), make_conn()
    await registry.register(alice.id, a)
    await registry.register(bob.id, b)
    await registry.unregister(bob.id, b)

    clock.t += 10
    await presence(a, {"userId": alice.id, "otherUserId": bob.id})
    payload = a.websocket.sent[-1]["payload"]
    assert payload["online"] is False
    assert payload["lastSeen"] == proto.utc_iso(clock.t - 10)
    assert payload["recentlySeen"] is True

    # the grace flag decays; online never flips back to true on its own
    clock.t += 60
    await presence(a, {"userId": alice.id, "otherUserId": bob.id})
    payload = a.websocket.sent[-1]["payload"]
    assert payload["online"] is False
    assert payload["recentlySeen"] is False


@pytest.mark.asyncio
async def test_last_seen_written_before_entry_removed(presence, registry, make_conn, pair, cache):
    alice, bob, _ = pair
    b = make_conn()
    await registry.register(bob.id, b)
    observed = []

    async def observe(user_id):
        frame = await presence.status_frame(user_id)
        observed.append(frame["payload"]["online"] or frame["payload"]["lastSeen"] is not None)

    # hooks run in order: presence writes last-seen, then the observer looks
    registry.add_disconnect_hook(observe)
    await registry.unregister(bob.id, b)
    assert observed == [True]
    assert await cache.get(last_seen_key(bob.id)) is not None


@pytest.mark.asyncio
async def test_legacy_user2_id_accepted(presence, registry, make_conn, pair):
    alice, bob, _ = pair
    a = make_conn()
    await registry.register(alice.id, a)
    await presence(a, {"userId": alice.id, "user2Id": bob.id})
    assert a.websocket.sent[0]["payload"]["userId"] == bob.id


# -----------------------------
# Silent stops and validation
# -----------------------------

@pytest.mark.asyncio
async def test_no_chat_between_users_stops_silently(presence, store, registry, make_conn, pair):
    alice, _, _ = pair
    eve = await store.create_user("eve@example.com", "eve")
    a = make_conn()
    await registry.register(alice.id, a)
    await presence(a, {"userId": alice.id, "otherUserId": eve.id})
    assert a.websocket.sent == []


@pytest.mark.asyncio
async def test_validation(presence, registry, make_conn, pair):
    alice, bob, _ = pair
    a = make_conn()
    await registry.register(alice.id, a)
    with pytest.raises(HandlerError, match="Invalid presence request"):
        await presence(a, {"userId": alice.id})
    with pytest.raises(HandlerError):
        await presence(a, {"userId": bob.id, "otherUserId": alice.id})
