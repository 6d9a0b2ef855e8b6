"""
Weekly leaderboards and the network activity heatmap.

Boards are keyed by the Monday of the current UTC week, so a new week reads an
empty board without any reset job. Profiles come from the social graph; an id
with no profile is shown as ``Unknown``.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from devradar.core.clock import minute_index, utc_today
from devradar.core.config import settings
from devradar.features.social.graph import SocialGraph
from devradar.models.leaderboard import (
    LanguageCount,
    LeaderboardEntry,
    LeaderboardPage,
    NetworkActivity,
    Pagination,
    UserProfile,
)
from devradar.stores import keys
from devradar.stores.base import LeaderboardStore, PresenceStore

TOP_LANGUAGES = 5
INTENSITY_PER_USER = 10


def _entry(rank: int, user_id: str, score: float, profile: Optional[UserProfile], is_friend: bool) -> LeaderboardEntry:
    return LeaderboardEntry(
        rank=rank,
        user_id=user_id,
        username=profile.username if profile else "Unknown",
        display_name=profile.display_name if profile else None,
        avatar_url=profile.avatar_url if profile else None,
        score=int(score),
        is_friend=is_friend,
    )


def summarize_network(buckets: List[Dict[str, int]], hot_threshold: int) -> NetworkActivity:
    total = 0
    languages: Dict[str, int] = {}
    for bucket in buckets:
        total += int(bucket.get(keys.NETWORK_COUNT_FIELD, 0))
        for field, value in bucket.items():
            if field.startswith(keys.NETWORK_LANGUAGE_PREFIX):
                lang = field[len(keys.NETWORK_LANGUAGE_PREFIX):]
                languages[lang] = languages.get(lang, 0) + int(value)

    is_hot = total >= hot_threshold
    if is_hot:
        message = "Your network is \U0001f525 active right now!"
    else:
        message = f"{total} developer{'' if total == 1 else 's'} coding"

    top = sorted(languages.items(), key=lambda item: (-item[1], item[0]))[:TOP_LANGUAGES]
    return NetworkActivity(
        total_active_users=total,
        average_intensity=min(100, total * INTENSITY_PER_USER),
        is_hot=is_hot,
        message=message,
        top_languages=[LanguageCount(language=lang, count=count) for lang, count in top],
    )


class LeaderboardService:
    def __init__(
        self,
        *,
        leaderboard_store: LeaderboardStore,
        presence_store: PresenceStore,
        graph: SocialGraph,
        settings_obj=None,
        time_fn: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.leaderboard_store = leaderboard_store
        self.presence_store = presence_store
        self.graph = graph
        self.settings = settings_obj or settings
        self.time_fn = time_fn
        self.logger = logger or logging.getLogger("devradar.leaderboards")

    def _board(self, metric: str) -> str:
        return keys.weekly_leaderboard_key(metric, utc_today(self.time_fn()))

    async def weekly(self, metric: str, user_id: str, *, page: int = 1, limit: int = 10) -> LeaderboardPage:
        board = self._board(metric)
        start = (page - 1) * limit
        rows = await self.leaderboard_store.range(board, start, start + limit - 1)
        total = await self.leaderboard_store.count(board)
        my_rank = await self.leaderboard_store.rank(board, user_id)

        entries: List[LeaderboardEntry] = []
        if rows:
            ids = [member for member, _ in rows]
            profiles = await run_in_threadpool(self.graph.get_profiles, ids)
            friend_ids = set(await run_in_threadpool(self.graph.get_friend_ids, user_id))
            entries = [
                _entry(start + i + 1, member, score, profiles.get(member), member in friend_ids)
                for i, (member, score) in enumerate(rows)
            ]

        return LeaderboardPage(
            leaderboard=entries,
            my_rank=my_rank + 1 if my_rank is not None else None,
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                has_more=bool(rows) and start + limit < total,
            ),
        )

    async def friends(self, user_id: str) -> LeaderboardPage:
        """The caller and the users they follow, ranked by this week's coding time."""
        friend_ids = await run_in_threadpool(self.graph.get_friend_ids, user_id)
        candidates = list(dict.fromkeys([*friend_ids, user_id]))
        scores = await self.leaderboard_store.scores(self._board("time"), candidates)

        ranked: List[Tuple[str, float]] = sorted(
            ((uid, score) for uid, score in scores.items() if score > 0),
            key=lambda item: (-item[1], item[0]),
        )
        if not ranked:
            return LeaderboardPage(leaderboard=[], my_rank=None)

        profiles = await run_in_threadpool(self.graph.get_profiles, [uid for uid, _ in ranked])
        entries = [
            _entry(i + 1, uid, score, profiles.get(uid), uid != user_id)
            for i, (uid, score) in enumerate(ranked)
        ]
        my_rank = next((e.rank for e in entries if e.user_id == user_id), None)
        return LeaderboardPage(leaderboard=entries, my_rank=my_rank)

    async def network_activity(self) -> NetworkActivity:
        current = minute_index(self.time_fn())
        window = self.settings.NETWORK_ACTIVITY_WINDOW_MINUTES
        buckets = await self.presence_store.get_network_activity([current - i for i in range(window)])
        return summarize_network(buckets, self.settings.NETWORK_HOT_THRESHOLD)
