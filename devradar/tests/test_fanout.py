import asyncio

import pytest

from devradar.core.auth import Credential
from devradar.core.metrics import fanout_deliveries_total, presence_active_channels
from devradar.models.presence import PresenceRecord
from devradar.realtime.connection import Connection
from devradar.realtime.registry import ConnectionRegistry
from devradar.realtime.router import FanoutRouter
from devradar.stores.memory import MemoryPresenceStore


def connect(registry, socket, user_id, friends=()):
    conn = Connection(
        socket,
        user_id=user_id,
        connection_id=f"{user_id}-{id(socket)}",
        friend_ids=frozenset(friends),
        credential=Credential(user_id=user_id, token_id=None, expires_at=None),
    )
    registry.register(conn)
    return conn


def online(user_id, updated_at=1):
    return PresenceRecord(user_id=user_id, status="online", updated_at=updated_at)


class BrokenSocket:
    async def send_text(self, text):
        raise ConnectionResetError("peer gone")

    async def close(self, code=1000, reason=""):
        pass


@pytest.fixture
def store():
    return MemoryPresenceStore()


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def router(store, registry):
    return FanoutRouter(store, registry)


@pytest.mark.asyncio
async def test_change_reaches_only_live_viewers(router, store, registry, fake_socket):
    bob_socket = fake_socket()
    connect(registry, bob_socket, "bob", ["alice"])
    await router.subscribe("bob", "alice")
    await router.subscribe("carol", "alice")  # carol has no live socket

    await store.set_presence(online("alice"))

    [message] = bob_socket.sent
    assert message["type"] == "FRIEND_STATUS"
    assert message["payload"]["userId"] == "alice"
    assert message["payload"]["status"] == "online"
    assert fanout_deliveries_total.value({"outcome": "sent"}) == 1
    assert fanout_deliveries_total.value({"outcome": "offline"}) == 1


@pytest.mark.asyncio
async def test_clear_presence_fans_out_offline(router, store, registry, fake_socket):
    bob_socket = fake_socket()
    connect(registry, bob_socket, "bob")
    await router.subscribe("bob", "alice")

    await store.set_presence(online("alice"))
    await store.clear_presence("alice", 5)

    assert [m["payload"]["status"] for m in bob_socket.sent] == ["online", "offline"]
    assert await store.get_presence("alice") is None


@pytest.mark.asyncio
async def test_listener_detaches_with_last_viewer(router, store):
    await router.subscribe_many("bob", ["alice", "carol"])
    await router.subscribe("dave", "alice")
    assert router.channel_count == 2
    assert store.channel_count == 2
    assert presence_active_channels.value() == 2

    await router.unsubscribe("bob", "alice")
    assert router.subscribers("alice") == {"dave"}
    assert store.channel_count == 2

    await router.unsubscribe_many("dave", ["alice"])
    await router.unsubscribe_many("bob", ["carol"])
    assert router.channel_count == 0
    assert store.channel_count == 0


@pytest.mark.asyncio
async def test_double_subscription_survives_one_unsubscribe(router, store):
    # An evicted connection and its replacement overlap for one viewer.
    await router.subscribe("bob", "alice")
    await router.subscribe("bob", "alice")
    await router.unsubscribe("bob", "alice")
    assert router.subscribers("alice") == {"bob"}
    await router.unsubscribe("bob", "alice")
    assert router.subscribers("alice") == set()
    assert store.channel_count == 0


@pytest.mark.asyncio
async def test_unsubscribe_unknown_is_a_noop(router):
    await router.unsubscribe("bob", "nobody")
    assert router.channel_count == 0


@pytest.mark.asyncio
async def test_one_failing_viewer_does_not_block_others(router, store, registry, fake_socket):
    carol_socket = fake_socket()
    connect(registry, BrokenSocket(), "bob")
    connect(registry, carol_socket, "carol")
    await router.subscribe_many("bob", ["alice"])
    await router.subscribe_many("carol", ["alice"])

    delivered = await router.deliver("alice", online("alice"))

    assert delivered == 1
    assert len(carol_socket.sent) == 1
    assert fanout_deliveries_total.value({"outcome": "failed"}) == 1


@pytest.mark.asyncio
async def test_registry_keeps_one_connection_per_user(registry, fake_socket):
    first = connect(registry, fake_socket(), "bob")
    second = Connection(
        fake_socket(),
        user_id="bob",
        connection_id="bob-2",
        friend_ids=frozenset(),
        credential=Credential(user_id="bob", token_id=None, expires_at=None),
    )
    assert registry.register(second) is first
    assert registry.unregister(first) is False
    assert registry.get("bob") is second
    assert len(registry) == 1
    assert registry.unregister(second) is True
    assert registry.get("bob") is None


@pytest.mark.asyncio
async def test_broadcast_skips_offline_and_closed(registry, fake_socket):
    bob_socket, carol_socket = fake_socket(), fake_socket()
    connect(registry, bob_socket, "bob")
    carol = connect(registry, carol_socket, "carol")
    await carol.close(1000)

    delivered = await registry.broadcast(["bob", "bob", "carol", "dave"], {"type": "ACHIEVEMENT", "payload": {}})

    assert delivered == 1
    assert len(bob_socket.sent) == 1
    assert carol_socket.sent == []


class GatedStore(MemoryPresenceStore):
    """Holds the store attach for ``gated_id`` until the gate opens."""

    def __init__(self, gated_id):
        super().__init__()
        self.gated_id = gated_id
        self.gate = asyncio.Event()

    async def subscribe(self, publisher_id, listener):
        if publisher_id == self.gated_id:
            await self.gate.wait()
        await super().subscribe(publisher_id, listener)


@pytest.mark.asyncio
async def test_slow_attach_does_not_block_other_publishers(registry):
    store = GatedStore("alice")
    router = FanoutRouter(store, registry)
    other = next(
        candidate
        for candidate in (f"user-{n}" for n in range(1000))
        if router._lock_for(candidate) is not router._lock_for("alice")
    )

    pending = asyncio.create_task(router.subscribe("bob", "alice"))
    await asyncio.sleep(0)
    await asyncio.wait_for(router.subscribe("bob", other), timeout=1)

    assert router.subscribers(other) == {"bob"}
    assert not pending.done()

    store.gate.set()
    await asyncio.wait_for(pending, timeout=1)
    assert router.subscribers("alice") == {"bob"}
    assert router.channel_count == 2
