import pytest

from devradar.core.clock import utc_today
from devradar.core.metrics import best_effort_failures_total, sessions_recorded_total
from devradar.core.tasks import BestEffort
from devradar.features.stats.achievements import milestone_for
from devradar.features.stats.service import StatsService
from devradar.models.protocol import MessageType
from devradar.stores import keys
from devradar.stores.base import StoreUnavailableError
from devradar.stores.memory import SWEEP_EVERY, MemoryLeaderboardStore, MemoryPresenceStore

DAY_SECONDS = 86400


class RecordingBroadcaster:
    def __init__(self):
        self.calls = []

    async def __call__(self, user_ids, message):
        self.calls.append((list(user_ids), message))
        return len(self.calls[-1][0])


def _service(clock, social_graph, ledger, settings_obj, presence=None, broadcaster=None):
    return StatsService(
        presence_store=presence or MemoryPresenceStore(time_fn=clock),
        leaderboard_store=MemoryLeaderboardStore(time_fn=clock),
        ledger=ledger,
        graph=social_graph,
        broadcaster=broadcaster,
        best_effort=BestEffort(),
        settings_obj=settings_obj,
        time_fn=clock,
    )


@pytest.mark.asyncio
async def test_two_sessions_same_day(clock, social_graph, ledger, settings_obj):
    service = _service(clock, social_graph, ledger, settings_obj)

    first = await service.record_session("alice", 30, language="Python")
    second = await service.record_session("alice", 45, language="Python")

    assert first.advanced is True
    assert second.advanced is False
    streak = await service.get_streak("alice")
    assert streak.current_streak == 1
    assert streak.streak_status == "active"
    assert streak.is_active_today is True

    today = utc_today(clock())
    assert await service.presence_store.get_session_seconds("alice", today) == 75
    weekly = await service.get_weekly("alice")
    assert weekly.total_seconds == 75
    assert weekly.rank == 1
    assert sessions_recorded_total.value() == 2


@pytest.mark.asyncio
async def test_session_feeds_network_heatmap(clock, social_graph, ledger, settings_obj):
    service = _service(clock, social_graph, ledger, settings_obj)
    await service.record_session("alice", 60, language="Python")
    await service.record_session("bob", 60, language="Brainfuck")
    await service.record_session("carol", 60)

    minute = int(clock() // 60)
    [bucket] = await service.presence_store.get_network_activity([minute])
    assert bucket[keys.NETWORK_COUNT_FIELD] == 3
    assert bucket["lang:python"] == 1
    assert bucket["lang:other"] == 1


@pytest.mark.asyncio
async def test_streak_status_moves_from_at_risk_to_broken(clock, social_graph, ledger, settings_obj):
    service = _service(clock, social_graph, ledger, settings_obj)
    await service.record_session("alice", 10)

    clock.advance(DAY_SECONDS)
    assert (await service.get_streak("alice")).streak_status == "at_risk"

    clock.advance(DAY_SECONDS)
    info = await service.get_streak("alice")
    assert info.streak_status == "broken"
    assert info.current_streak == 1


@pytest.mark.asyncio
async def test_seventh_day_grants_week_warrior_and_broadcasts(clock, social_graph, ledger, settings_obj):
    broadcaster = RecordingBroadcaster()
    service = _service(clock, social_graph, ledger, settings_obj, broadcaster=broadcaster)

    for day in range(7):
        if day:
            clock.advance(DAY_SECONDS)
        await service.record_session("alice", 120)
        await service.best_effort.drain(timeout=1)

    held = ledger.list("alice")
    assert [a.type for a in held] == ["STREAK_7"]

    [(recipients, message)] = broadcaster.calls
    assert set(recipients) == {"alice", "bob", "carol"}
    assert message["type"] == MessageType.ACHIEVEMENT
    assert message["payload"]["userId"] == "alice"
    assert message["payload"]["achievement"]["title"] == "Week Warrior"

    # Another session the same day does not grant again.
    await service.record_session("alice", 60)
    await service.best_effort.drain(timeout=1)
    assert len(ledger.list("alice")) == 1


def test_milestones_pick_the_highest_reached():
    assert milestone_for(6) is None
    assert milestone_for(7).type == "STREAK_7"
    assert milestone_for(45).type == "STREAK_30"
    assert milestone_for(100).type == "STREAK_100"


class FlakyHeatmapStore(MemoryPresenceStore):
    async def record_network_activity(self, minute, language, ttl_seconds):
        raise StoreUnavailableError("heatmap down")


class BrokenSessionStore(MemoryPresenceStore):
    async def add_session_seconds(self, user_id, day, seconds, ttl_seconds):
        raise StoreUnavailableError("sessions down")


@pytest.mark.asyncio
async def test_heatmap_failure_is_swallowed(clock, social_graph, ledger, settings_obj):
    service = _service(clock, social_graph, ledger, settings_obj, presence=FlakyHeatmapStore(time_fn=clock))
    update = await service.record_session("alice", 30, language="go")
    assert update.count == 1
    assert best_effort_failures_total.value({"task": "network_activity"}) == 1


@pytest.mark.asyncio
async def test_session_accumulator_failure_propagates(clock, social_graph, ledger, settings_obj):
    service = _service(clock, social_graph, ledger, settings_obj, presence=BrokenSessionStore(time_fn=clock))
    with pytest.raises(StoreUnavailableError):
        await service.record_session("alice", 30)


@pytest.mark.asyncio
async def test_commits_and_summary(clock, social_graph, ledger, settings_obj):
    service = _service(clock, social_graph, ledger, settings_obj)
    await service.record_session("alice", 300)
    assert await service.record_commits("alice", 3) == 3
    assert await service.record_commits("alice", 2) == 5

    summary = await service.get_summary("alice")
    assert summary.today_session == 300
    assert summary.weekly_stats.total_commits == 5
    assert summary.streak.current_streak == 1
    assert summary.recent_achievements == []
    wire = summary.model_dump(by_alias=True)
    assert wire["weeklyStats"]["totalSeconds"] == 300


class FailOnceBoard(MemoryLeaderboardStore):
    def __init__(self, *, time_fn):
        super().__init__(time_fn=time_fn)
        self.armed = False

    async def increment(self, board, member, amount, ttl_seconds):
        if self.armed:
            self.armed = False
            raise StoreUnavailableError("leaderboard down")
        return await super().increment(board, member, amount, ttl_seconds)


@pytest.mark.asyncio
async def test_rejected_report_retried_on_milestone_day_still_grants(clock, social_graph, ledger, settings_obj):
    service = _service(clock, social_graph, ledger, settings_obj)
    board = FailOnceBoard(time_fn=clock)
    service.leaderboard_store = board

    for day in range(6):
        if day:
            clock.advance(DAY_SECONDS)
        await service.record_session("alice", 60)
    clock.advance(DAY_SECONDS)

    board.armed = True
    with pytest.raises(StoreUnavailableError):
        await service.record_session("alice", 60)
    assert (await service.get_streak("alice")).current_streak == 6

    update = await service.record_session("alice", 60)
    await service.best_effort.drain(timeout=1)

    assert (update.count, update.advanced) == (7, True)
    assert [a.type for a in ledger.list("alice")] == ["STREAK_7"]
    today = utc_today(clock())
    assert await service.presence_store.get_session_seconds("alice", today) == 60


@pytest.mark.asyncio
async def test_session_accumulator_failure_leaves_streak_untouched(clock, social_graph, ledger, settings_obj):
    service = _service(clock, social_graph, ledger, settings_obj, presence=BrokenSessionStore(time_fn=clock))
    with pytest.raises(StoreUnavailableError):
        await service.record_session("alice", 30)
    assert (await service.get_streak("alice")).current_streak == 0


@pytest.mark.asyncio
async def test_expired_heatmap_and_session_keys_are_released(clock, social_graph, ledger, settings_obj):
    presence = MemoryPresenceStore(time_fn=clock)
    service = _service(clock, social_graph, ledger, settings_obj, presence=presence)

    for _ in range(2000):
        await service.record_session("alice", 10, language="python")
        clock.advance(60)
    # Nothing reads old minutes back; the write path has to purge them.
    assert len(presence._data._values) <= SWEEP_EVERY

    clock.advance(30 * DAY_SECONDS)
    assert len(presence._data) == 0
    assert len(service.leaderboard_store._boards) == 0
