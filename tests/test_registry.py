import asyncio
import gc

import pytest

from pairchat.core.proto import CloseCode


@pytest.mark.asyncio
async def test_register_lookup_unregister(registry, make_conn):
    conn = make_conn()
    assert await registry.register("u1", conn) is None
    assert conn.user_id == "u1"
    assert registry.lookup("u1") is conn
    assert registry.is_online("u1")
    assert "u1" in registry and len(registry) == 1

    assert await registry.unregister("u1") is True
    assert registry.lookup("u1") is None
    # idempotent
    assert await registry.unregister("u1") is False


@pytest.mark.asyncio
async def test_last_registered_wins(registry, make_conn):
    a, b = make_conn(), make_conn()
    await registry.register("u1", a)
    assert await registry.register("u1", b) is a
    assert registry.lookup("u1") is b
    # registry itself leaves the old transport alone
    assert a.is_open


@pytest.mark.asyncio
async def test_stale_unregister_does_not_evict_successor(registry, make_conn):
    a, b = make_conn(), make_conn()
    await registry.register("u1", a)
    await registry.register("u1", b)
    assert await registry.unregister("u1", a) is False
    assert registry.lookup("u1") is b
    assert await registry.unregister("u1", b) is True


@pytest.mark.asyncio
async def test_hooks_run_before_removal(registry, make_conn):
    seen = []

    async def hook(user_id):
        # entry still present while hooks run
        seen.append((user_id, registry.lookup(user_id) is not None))

    registry.add_disconnect_hook(hook)
    await registry.register("u1", make_conn())
    await registry.unregister("u1")
    assert seen == [("u1", True)]


@pytest.mark.asyncio
async def test_failing_hook_does_not_block_removal(registry, make_conn):
    calls = []

    async def bad(user_id):
        raise RuntimeError("boom")

    async def good(user_id):
        calls.append(user_id)

    registry.add_disconnect_hook(bad)
    registry.add_disconnect_hook(good)
    await registry.register("u1", make_conn())
    assert await registry.unregister("u1") is True
    assert calls == ["u1"]
    assert registry.lookup("u1") is None


@pytest.mark.asyncio
async def test_concurrent_register_unregister_leaves_consistent_state(registry, make_conn):
    conns = [make_conn() for _ in range(20)]
    await asyncio.gather(*(registry.register("u1", c) for c in conns))
    owner = registry.lookup("u1")
    assert owner in conns
    results = await asyncio.gather(*(registry.unregister("u1", c) for c in conns))
    assert results.count(True) == 1
    assert registry.lookup("u1") is None


@pytest.mark.asyncio
async def test_per_user_locks_do_not_outlive_their_users(registry, make_conn):
    for i in range(50):
        user_id = f"u{i}"
        conn = make_conn()
        await registry.register(user_id, conn)
        await registry.unregister(user_id, conn)
        # an unregister for a user that never connected
        await registry.unregister(f"ghost{i}")
    gc.collect()
    assert len(registry._locks) == 0
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_register_requires_user_id(registry, make_conn):
    with pytest.raises(ValueError):
        await registry.register("", make_conn())


@pytest.mark.asyncio
async def test_connection_send_close_ping(make_conn):
    conn = make_conn("u1")
    assert await conn.send({"type": "chat", "payload": {}}) is True
    assert conn.websocket.sent == [{"type": "chat", "payload": {}}]

    assert await conn.ping(0.1) is True

    await conn.close(CloseCode.SUPERSEDED)
    assert conn.websocket.close_code == 4004
    assert not conn.is_open
    assert await conn.send({"type": "chat", "payload": {}}) is False


@pytest.mark.asyncio
async def test_unanswered_ping_times_out(make_conn):
    conn = make_conn("u1", answers_ping=False)
    assert await conn.ping(0.05) is False
