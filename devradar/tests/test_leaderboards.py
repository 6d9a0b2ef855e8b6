import pytest

from devradar.core.clock import minute_index, utc_today
from devradar.features.leaderboards.service import LeaderboardService, summarize_network
from devradar.stores import keys
from devradar.stores.memory import MemoryLeaderboardStore, MemoryPresenceStore

TTL = 3600


@pytest.fixture
def boards(clock):
    return MemoryLeaderboardStore(time_fn=clock)


@pytest.fixture
def presence(clock):
    return MemoryPresenceStore(time_fn=clock)


@pytest.fixture
def service(boards, presence, social_graph, settings_obj, clock):
    return LeaderboardService(
        leaderboard_store=boards,
        presence_store=presence,
        graph=social_graph,
        settings_obj=settings_obj,
        time_fn=clock,
    )


async def _seed(boards, clock, metric, scores):
    board = keys.weekly_leaderboard_key(metric, utc_today(clock()))
    for member, score in scores.items():
        await boards.increment(board, member, score, TTL)


@pytest.mark.asyncio
async def test_weekly_board_pages_in_score_order(service, boards, clock):
    await _seed(boards, clock, "time", {"alice": 300, "bob": 900, "carol": 600, "dave": 100, "ghost": 50})

    first = await service.weekly("time", "alice", page=1, limit=2)
    assert [(e.rank, e.user_id, e.score) for e in first.leaderboard] == [(1, "bob", 900), (2, "carol", 600)]
    assert first.my_rank == 3
    assert first.pagination.total == 5
    assert first.pagination.has_more is True
    assert [e.is_friend for e in first.leaderboard] == [True, True]

    last = await service.weekly("time", "alice", page=3, limit=2)
    [entry] = last.leaderboard
    assert (entry.rank, entry.user_id, entry.username) == (5, "ghost", "Unknown")
    assert last.pagination.has_more is False


@pytest.mark.asyncio
async def test_weekly_board_past_the_end_is_empty(service, boards, clock):
    await _seed(boards, clock, "commits", {"bob": 4})
    page = await service.weekly("commits", "dave", page=9, limit=10)
    assert page.leaderboard == []
    assert page.my_rank is None
    assert page.pagination.total == 1
    assert page.pagination.has_more is False


@pytest.mark.asyncio
async def test_new_week_reads_an_empty_board(service, boards, clock):
    await _seed(boards, clock, "time", {"alice": 300})
    clock.advance(7 * 86400)
    page = await service.weekly("time", "alice")
    assert page.leaderboard == []
    assert page.pagination.total == 0


@pytest.mark.asyncio
async def test_friends_board_ranks_caller_and_followed_users(service, boards, clock):
    await _seed(boards, clock, "time", {"alice": 300, "bob": 900, "dave": 5000})

    page = await service.friends("alice")
    assert [(e.rank, e.user_id, e.is_friend) for e in page.leaderboard] == [
        (1, "bob", True),
        (2, "alice", False),
    ]
    assert page.my_rank == 2
    assert page.pagination is None
    assert "pagination" not in page.to_wire()


@pytest.mark.asyncio
async def test_friends_board_without_activity(service):
    page = await service.friends("dave")
    assert page.leaderboard == []
    assert page.my_rank is None


@pytest.mark.asyncio
async def test_network_activity_reads_the_recent_window(service, presence, clock, settings_obj):
    now_minute = minute_index(clock())
    await presence.record_network_activity(now_minute, "Python", TTL)
    await presence.record_network_activity(now_minute - 1, "python", TTL)
    await presence.record_network_activity(now_minute - 2, "Rust", TTL)
    # Outside the window.
    await presence.record_network_activity(now_minute - settings_obj.NETWORK_ACTIVITY_WINDOW_MINUTES, "go", TTL)

    activity = await service.network_activity()
    assert activity.total_active_users == 3
    assert activity.average_intensity == 30
    assert activity.is_hot is False
    assert activity.message == "3 developers coding"
    assert [(lc.language, lc.count) for lc in activity.top_languages] == [("python", 2), ("rust", 1)]


def test_summarize_network_hot_and_capped():
    buckets = [{"count": 8, "lang:go": 8}, {"count": 6, "lang:rust": 6}, {}]
    activity = summarize_network(buckets, hot_threshold=10)
    assert activity.total_active_users == 14
    assert activity.average_intensity == 100
    assert activity.is_hot is True
    assert activity.message == "Your network is \U0001f525 active right now!"


def test_summarize_network_singular_and_top_five():
    bucket = {"count": 1}
    bucket.update({f"lang:l{i}": i for i in range(1, 8)})
    activity = summarize_network([bucket], hot_threshold=10)
    assert activity.message == "1 developer coding"
    assert [lc.language for lc in activity.top_languages] == ["l7", "l6", "l5", "l4", "l3"]
