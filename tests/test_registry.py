import asyncio
import random

import pytest

from chatrelay.core.liveness import LivenessMonitor
from chatrelay.core.registry import ConnectionRegistry


def _assert_consistent(reg: ConnectionRegistry, live: set) -> None:
    """Indices must mirror exactly the set of live connections."""
    assert all(reg._by_user.values()), "empty user set kept"
    assert all(reg._by_device.values()), "empty device set kept"
    assert all(reg._by_admin.values()), "empty admin set kept"

    by_user = {c for conns in reg._by_user.values() for c in conns}
    by_device = {c for conns in reg._by_device.values() for c in conns}
    by_admin = {c for conns in reg._by_admin.values() for c in conns}
    assert by_user == live
    assert by_device == live
    assert by_admin == {c for c in live if c.is_admin}

    for uid, conns in reg._by_user.items():
        assert all(c.user_id == uid for c in conns)
    for did, conns in reg._by_device.items():
        assert all(c.device_id == did for c in conns)


@pytest.mark.asyncio
async def test_random_register_remove_keeps_indices_consistent(make_conn):
    rng = random.Random(1234)
    reg = ConnectionRegistry()
    pool = [
        make_conn(f"u{rng.randint(0, 4)}", f"d{rng.randint(0, 3)}", is_admin=rng.random() < 0.4)
        for _ in range(25)
    ]
    live = set()
    for _ in range(400):
        conn = rng.choice(pool)
        if rng.random() < 0.55:
            await reg.register(conn)
            live.add(conn)
        else:
            await reg.remove(conn)
            live.discard(conn)
        _assert_consistent(reg, live)


@pytest.mark.asyncio
async def test_multi_device_user(make_conn):
    reg = ConnectionRegistry()
    phone = make_conn("A", "phone")
    laptop = make_conn("A", "laptop")
    await reg.register(phone)
    await reg.register(laptop)

    assert await reg.connections_for_user("A") == {phone, laptop}

    await reg.remove(phone)
    assert await reg.connections_for_user("A") == {laptop}
    assert "phone" not in reg._by_device
    assert reg._by_device["laptop"] == {laptop}


@pytest.mark.asyncio
async def test_remove_is_idempotent(make_conn):
    reg = ConnectionRegistry()
    conn = make_conn("A")
    await reg.register(conn)

    assert await reg.remove(conn) is True
    assert await reg.remove(conn) is False
    assert await reg.stats() == {"users": 0, "devices": 0, "admins": 0, "connections": 0}


@pytest.mark.asyncio
async def test_remove_unknown_connection_is_noop(make_conn):
    reg = ConnectionRegistry()
    await reg.register(make_conn("A", "d1"))
    stranger = make_conn("A", "d1")
    assert await reg.remove(stranger) is False
    assert len(await reg.connections_for_user("A")) == 1


@pytest.mark.asyncio
async def test_admins_are_listed_in_both_admin_and_user_views(make_conn):
    reg = ConnectionRegistry()
    admin = make_conn("B", is_admin=True)
    user = make_conn("A")
    await reg.register(admin)
    await reg.register(user)

    assert dict(await reg.all_admins()) == {"B": frozenset({admin})}
    assert dict(await reg.all_users()) == {"A": frozenset({user}), "B": frozenset({admin})}
    assert set(await reg.all_connections()) == {admin, user}


@pytest.mark.asyncio
async def test_lookup_returns_snapshot(make_conn):
    reg = ConnectionRegistry()
    conn = make_conn("A")
    await reg.register(conn)
    snapshot = await reg.connections_for_user("A")
    await reg.remove(conn)
    assert snapshot == {conn}
    assert await reg.connections_for_user("A") == frozenset()


@pytest.mark.asyncio
async def test_register_requires_user_id(make_conn):
    reg = ConnectionRegistry()
    with pytest.raises(ValueError):
        await reg.register(make_conn(""))


@pytest.mark.asyncio
async def test_concurrent_mutations_and_sweeps_keep_indices_consistent(make_conn):
    rng = random.Random(99)
    reg = ConnectionRegistry()
    monitor = LivenessMonitor(reg, interval=1, ping_timeout=0.05)
    pool = [
        make_conn(f"u{rng.randint(0, 4)}", f"d{rng.randint(0, 3)}", is_admin=rng.random() < 0.4)
        for _ in range(30)
    ]

    async def step(i):
        await asyncio.sleep(rng.random() / 1000)
        roll = rng.random()
        conn = rng.choice(pool)
        if roll < 0.45:
            await reg.register(conn)
        elif roll < 0.8:
            await reg.remove(conn)
        elif roll < 0.9:
            await reg.all_connections()
        else:
            await monitor.tick()

    await asyncio.gather(*(step(i) for i in range(300)))

    live = {c for conns in reg._by_user.values() for c in conns}
    _assert_consistent(reg, live)
    assert set(await reg.all_connections()) == live


@pytest.mark.asyncio
async def test_connection_without_device_id_is_indexed_under_empty_key(make_conn):
    reg = ConnectionRegistry()
    conn = make_conn("A")
    conn.device_id = ""
    await reg.register(conn)

    assert reg._by_device == {"": {conn}}
    assert await reg.connections_for_user("A") == {conn}

    await reg.remove(conn)
    assert reg._by_device == {}
