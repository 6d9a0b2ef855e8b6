"""
Stats and streak engine.

``record_session`` turns one session report into:

1. the weekly ``time`` leaderboard,
2. today's session accumulator,
3. an atomic streak advance (at most once per UTC day per user),
4. the current minute's network heatmap bucket (best effort),
5. a streak achievement grant plus ACHIEVEMENT broadcast, in the background
   and only when the streak advanced (best effort).

Failures in steps 1-3 reach the caller so the report can be retried. The streak
advance runs last: a report rejected earlier leaves the streak untouched and
the retry still advances it and checks for an achievement.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional

from starlette.concurrency import run_in_threadpool

from devradar.core.clock import minute_index, utc_now, utc_today, week_start, yesterday_of
from devradar.core.config import settings
from devradar.core.logging import log_event
from devradar.core.metrics import sessions_recorded_total, streak_advances_total
from devradar.core.tasks import BestEffort
from devradar.features.social.graph import SocialGraph
from devradar.features.stats.achievements import AchievementLedger, milestone_for
from devradar.models.protocol import MessageType, envelope
from devradar.models.stats import (
    Achievement,
    AchievementOut,
    StatsSummary,
    StreakInfo,
    StreakRecord,
    StreakUpdate,
    WeeklyStats,
)
from devradar.stores import keys
from devradar.stores.base import LeaderboardStore, PresenceStore

Broadcaster = Callable[[Iterable[str], dict], Awaitable[int]]

RECENT_ACHIEVEMENTS = 5


def streak_info(record: StreakRecord, today) -> StreakInfo:
    last = record.last_active_date
    if last == today:
        status = "active"
    elif last is not None and last == yesterday_of(today):
        status = "at_risk"
    else:
        status = "broken"
    return StreakInfo(
        current_streak=record.count,
        longest_streak=record.longest,
        last_active_date=last.isoformat() if last else None,
        is_active_today=status == "active",
        streak_status=status,
    )


class StatsService:
    def __init__(
        self,
        *,
        presence_store: PresenceStore,
        leaderboard_store: LeaderboardStore,
        ledger: AchievementLedger,
        graph: SocialGraph,
        broadcaster: Optional[Broadcaster] = None,
        best_effort: Optional[BestEffort] = None,
        settings_obj=None,
        time_fn: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.presence_store = presence_store
        self.leaderboard_store = leaderboard_store
        self.ledger = ledger
        self.graph = graph
        self.broadcaster = broadcaster
        self.logger = logger or logging.getLogger("devradar.stats")
        self.best_effort = best_effort or BestEffort(self.logger)
        self.settings = settings_obj or settings
        self.time_fn = time_fn

    def _today(self):
        return utc_today(self.time_fn())

    async def record_session(
        self,
        user_id: str,
        session_duration: int,
        language: Optional[str] = None,
        project: Optional[str] = None,
    ) -> StreakUpdate:
        now = self.time_fn()
        today = utc_today(now)
        cfg = self.settings

        await self.leaderboard_store.increment(
            keys.weekly_leaderboard_key("time", today),
            user_id,
            session_duration,
            cfg.LEADERBOARD_TTL_SECONDS,
        )
        await self.presence_store.add_session_seconds(user_id, today, session_duration, cfg.SESSION_TTL_SECONDS)
        update = await self.presence_store.advance_streak(user_id, today, cfg.STREAK_TTL_SECONDS * 2)

        await self.best_effort.run(
            "network_activity",
            self.presence_store.record_network_activity(
                minute_index(now), language, cfg.NETWORK_ACTIVITY_TTL_SECONDS
            ),
            user_id=user_id,
        )

        sessions_recorded_total.inc()
        if update.advanced:
            streak_advances_total.inc()
            self.best_effort.spawn(
                "streak_achievement",
                self.check_streak_achievement(user_id, update.count),
                user_id=user_id,
            )

        log_event(
            "debug",
            "stats.session_recorded",
            logger=self.logger,
            user_id=user_id,
            event_type="session",
            extra={
                "seconds": session_duration,
                "language": language,
                "project": project,
                "streak": update.count,
                "advanced": update.advanced,
            },
        )
        return update

    async def check_streak_achievement(self, user_id: str, streak: int) -> Optional[Achievement]:
        milestone = milestone_for(streak)
        if milestone is None:
            return None
        achievement = await run_in_threadpool(self.ledger.grant, user_id, milestone, utc_now(self.time_fn()))
        if achievement is None:
            return None

        log_event(
            "info",
            "stats.achievement_earned",
            logger=self.logger,
            user_id=user_id,
            event_type=milestone.type,
            extra={"streak": streak},
        )
        if self.broadcaster is not None:
            await self.announce(achievement)
        return achievement

    async def announce(self, achievement: Achievement) -> int:
        user_id = achievement.user_id
        follower_ids = await run_in_threadpool(self.graph.get_follower_ids, user_id)
        profiles = await run_in_threadpool(self.graph.get_profiles, [user_id])
        payload = {
            "achievement": AchievementOut.from_achievement(achievement).to_wire(),
            "userId": user_id,
        }
        profile = profiles.get(user_id)
        if profile is not None:
            payload["username"] = profile.username
        return await self.broadcaster([*follower_ids, user_id], envelope(MessageType.ACHIEVEMENT, payload))

    async def record_commits(self, user_id: str, count: int) -> int:
        score = await self.leaderboard_store.increment(
            keys.weekly_leaderboard_key("commits", self._today()),
            user_id,
            count,
            self.settings.LEADERBOARD_TTL_SECONDS,
        )
        return int(score)

    # Read side -------------------------------------------------------

    async def get_streak(self, user_id: str) -> StreakInfo:
        record = await self.presence_store.get_streak(user_id)
        return streak_info(record, self._today())

    async def get_weekly(self, user_id: str) -> WeeklyStats:
        today = self._today()
        time_board = keys.weekly_leaderboard_key("time", today)
        commits_board = keys.weekly_leaderboard_key("commits", today)
        seconds = await self.leaderboard_store.score(time_board, user_id)
        commits = await self.leaderboard_store.score(commits_board, user_id)
        rank = await self.leaderboard_store.rank(time_board, user_id)
        return WeeklyStats(
            week_start=week_start(today).isoformat(),
            total_seconds=int(seconds or 0),
            total_commits=int(commits or 0),
            rank=rank + 1 if rank is not None else None,
        )

    async def list_achievements(self, user_id: str, limit: int = 50, offset: int = 0) -> List[AchievementOut]:
        items = await run_in_threadpool(self.ledger.list, user_id, limit, offset)
        return [AchievementOut.from_achievement(a) for a in items]

    async def get_summary(self, user_id: str) -> StatsSummary:
        today = self._today()
        streak = await self.get_streak(user_id)
        today_seconds = await self.presence_store.get_session_seconds(user_id, today)
        weekly = await self.get_weekly(user_id)
        recent = await self.list_achievements(user_id, limit=RECENT_ACHIEVEMENTS)
        return StatsSummary(
            streak=streak,
            today_session=today_seconds,
            weekly_stats=weekly,
            recent_achievements=recent,
        )
