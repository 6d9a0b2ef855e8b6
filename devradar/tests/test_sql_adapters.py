from datetime import datetime, timedelta, timezone

import pytest

from devradar.core.database import build_engine, create_all_tables, drop_all_tables
from devradar.features.social.graph import SqlSocialGraph
from devradar.features.stats.achievements import STREAK_MILESTONES, SqlAchievementLedger
from devradar.models.leaderboard import UserProfile


@pytest.fixture
def engine():
    engine = build_engine("sqlite:///:memory:")
    create_all_tables(engine)
    yield engine
    drop_all_tables(engine)
    engine.dispose()


def test_follow_graph_directions(engine):
    graph = SqlSocialGraph(engine)
    graph.follow("alice", "bob")
    graph.follow("alice", "carol")
    graph.follow("bob", "alice")
    graph.follow("alice", "bob")  # idempotent

    assert sorted(graph.get_friend_ids("alice")) == ["bob", "carol"]
    assert sorted(graph.get_follower_ids("alice")) == ["bob"]
    assert graph.get_friend_ids("dave") == []
    assert graph.ping() is True


def test_profiles_lookup(engine):
    graph = SqlSocialGraph(engine)
    graph.add_profile(UserProfile(user_id="alice", username="alice", display_name="Alice"))
    graph.add_profile(UserProfile(user_id="alice", username="alice2"))

    profiles = graph.get_profiles(["alice", "ghost"])
    assert list(profiles) == ["alice"]
    assert profiles["alice"].username == "alice2"
    assert graph.get_profiles([]) == {}


def test_ledger_grants_each_milestone_once(engine):
    ledger = SqlAchievementLedger(engine)
    week = STREAK_MILESTONES[-1]
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)

    first = ledger.grant("alice", week, start)
    assert first is not None
    assert first.type == "STREAK_7"
    assert ledger.grant("alice", week, start + timedelta(days=1)) is None

    month = STREAK_MILESTONES[1]
    ledger.grant("alice", month, start + timedelta(days=30))

    held = ledger.list("alice")
    assert [a.type for a in held] == ["STREAK_30", "STREAK_7"]
    assert held[0].earned_at.tzinfo is not None
    assert [a.type for a in ledger.list("alice", limit=1, offset=1)] == ["STREAK_7"]
    assert ledger.list("bob") == []
