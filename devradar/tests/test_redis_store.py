import asyncio
from datetime import date, timedelta

import fakeredis
import pytest
import pytest_asyncio

from devradar.models.presence import ActivityPayload, PresenceRecord
from devradar.stores import keys
from devradar.stores.redis_store import RedisLeaderboardStore, RedisPresenceStore

TTL = 2 * 90000
DAY = date(2024, 5, 15)


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest_asyncio.fixture
async def presence(redis_client):
    store = RedisPresenceStore(redis_client, presence_ttl_seconds=60, poll_timeout=0.01)
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_streak_script_same_day_is_a_noop(presence):
    first = await presence.advance_streak("alice", DAY, TTL)
    again = await presence.advance_streak("alice", DAY, TTL)

    assert (first.count, first.longest, first.advanced) == (1, 1, True)
    assert (again.count, again.advanced) == (1, False)
    record = await presence.get_streak("alice")
    assert record.last_active_date == DAY


@pytest.mark.asyncio
async def test_streak_script_yesterday_adds_one_and_gap_resets(presence):
    for offset in range(3):
        update = await presence.advance_streak("alice", DAY + timedelta(days=offset), TTL)
    assert (update.count, update.longest) == (3, 3)

    after_gap = await presence.advance_streak("alice", DAY + timedelta(days=5), TTL)
    assert (after_gap.count, after_gap.longest, after_gap.advanced) == (1, 3, True)


@pytest.mark.asyncio
async def test_streak_script_sets_ttl(presence, redis_client):
    await presence.advance_streak("alice", DAY, 500)
    ttl = await redis_client.ttl(keys.streak_key("alice"))
    assert 0 < ttl <= 500


@pytest.mark.asyncio
async def test_concurrent_reports_advance_once(presence):
    await presence.advance_streak("alice", DAY - timedelta(days=1), TTL)

    results = await asyncio.gather(*(presence.advance_streak("alice", DAY, TTL) for _ in range(20)))

    assert sum(1 for r in results if r.advanced) == 1
    assert (await presence.get_streak("alice")).count == 2


@pytest.mark.asyncio
async def test_presence_write_reaches_subscribed_listener(presence):
    received = []
    arrived = asyncio.Event()

    async def listener(record):
        received.append(record)
        arrived.set()

    await presence.subscribe("bob", listener)
    record = PresenceRecord(
        user_id="bob",
        status="online",
        activity=ActivityPayload(language="python", session_duration=30),
        updated_at=1_700_000_000_000,
    )
    await presence.set_presence(record)
    await asyncio.wait_for(arrived.wait(), timeout=2)

    assert received == [record]
    assert (await presence.get_presence("bob")) == record
    assert presence.channel_count == 1


@pytest.mark.asyncio
async def test_clear_presence_publishes_offline(presence):
    statuses = []
    arrived = asyncio.Event()

    async def listener(record):
        statuses.append(record.status)
        if record.status == "offline":
            arrived.set()

    await presence.subscribe("bob", listener)
    await presence.set_presence(PresenceRecord(user_id="bob", status="dnd", updated_at=1))
    await presence.clear_presence("bob", updated_at=2)
    await asyncio.wait_for(arrived.wait(), timeout=2)

    assert statuses == ["dnd", "offline"]
    assert await presence.get_presence("bob") is None


@pytest.mark.asyncio
async def test_unsubscribed_channel_is_not_delivered(presence):
    received = []

    async def listener(record):
        received.append(record)

    await presence.subscribe("bob", listener)
    await presence.unsubscribe("bob")
    await presence.set_presence(PresenceRecord(user_id="bob", status="online", updated_at=1))
    await asyncio.sleep(0.1)

    assert received == []
    assert presence.channel_count == 0


@pytest.mark.asyncio
async def test_session_seconds_and_heatmap(presence):
    await presence.add_session_seconds("alice", DAY, 30, 3600)
    assert await presence.add_session_seconds("alice", DAY, 45, 3600) == 75
    assert await presence.get_session_seconds("alice", DAY) == 75
    assert await presence.get_session_seconds("alice", DAY + timedelta(days=1)) == 0

    await presence.record_network_activity(100, "Python", 600)
    await presence.record_network_activity(100, None, 600)
    buckets = await presence.get_network_activity([100, 101])
    assert buckets[0][keys.NETWORK_COUNT_FIELD] == 2
    assert buckets[0]["lang:python"] == 1
    assert buckets[1] == {}


@pytest.mark.asyncio
async def test_leaderboard_ranks_highest_first(redis_client):
    board = RedisLeaderboardStore(redis_client)
    name = keys.weekly_leaderboard_key("time", DAY)
    await board.increment(name, "alice", 300, 3600)
    await board.increment(name, "bob", 900, 3600)
    await board.increment(name, "carol", 100, 3600)
    assert await board.increment(name, "alice", 50, 3600) == 350

    assert await board.rank(name, "bob") == 0
    assert await board.rank(name, "alice") == 1
    assert await board.rank(name, "dave") is None
    assert await board.score(name, "carol") == 100
    assert await board.count(name) == 3
    assert await board.range(name, 0, 1) == [("bob", 900.0), ("alice", 350.0)]
    assert await board.scores(name, ["alice", "dave"]) == {"alice": 350.0}
    assert await board.range(name, 2, 1) == []
