"""
Social graph adapters.

The realtime core reads the follow graph at connect time only and treats the
result as a snapshot for the life of the connection. Calls are synchronous;
async callers go through ``run_in_threadpool``.

A user's *friends* are the users they follow; their *followers* are the users
following them.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from devradar.core.database import check_connection, follows, transaction, users
from devradar.models.leaderboard import UserProfile


class SocialGraph(ABC):
    @abstractmethod
    def get_friend_ids(self, user_id: str) -> List[str]:
        ...

    @abstractmethod
    def get_follower_ids(self, user_id: str) -> List[str]:
        ...

    @abstractmethod
    def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        ...

    def ping(self) -> bool:
        return True


class InMemorySocialGraph(SocialGraph):
    """Follow graph held in process. Used in development and tests."""

    def __init__(self):
        self._following: Dict[str, Set[str]] = {}
        self._profiles: Dict[str, UserProfile] = {}
        self._lock = threading.Lock()

    def follow(self, follower_id: str, following_id: str) -> None:
        with self._lock:
            self._following.setdefault(follower_id, set()).add(following_id)

    def unfollow(self, follower_id: str, following_id: str) -> None:
        with self._lock:
            self._following.get(follower_id, set()).discard(following_id)

    def befriend(self, a: str, b: str) -> None:
        """Mutual follow."""
        self.follow(a, b)
        self.follow(b, a)

    def add_profile(self, profile: UserProfile) -> None:
        with self._lock:
            self._profiles[profile.user_id] = profile

    def get_friend_ids(self, user_id: str) -> List[str]:
        with self._lock:
            return sorted(self._following.get(user_id, set()))

    def get_follower_ids(self, user_id: str) -> List[str]:
        with self._lock:
            return sorted(f for f, targets in self._following.items() if user_id in targets)

    def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        with self._lock:
            return {uid: self._profiles[uid] for uid in user_ids if uid in self._profiles}


class SqlSocialGraph(SocialGraph):
    def __init__(self, engine: Engine):
        self.engine = engine

    def get_friend_ids(self, user_id: str) -> List[str]:
        stmt = select(follows.c.following_id).where(follows.c.follower_id == user_id)
        with self.engine.connect() as conn:
            return [row[0] for row in conn.execute(stmt)]

    def get_follower_ids(self, user_id: str) -> List[str]:
        stmt = select(follows.c.follower_id).where(follows.c.following_id == user_id)
        with self.engine.connect() as conn:
            return [row[0] for row in conn.execute(stmt)]

    def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        ids = list(user_ids)
        if not ids:
            return {}
        stmt = select(users.c.user_id, users.c.username, users.c.display_name, users.c.avatar_url).where(
            users.c.user_id.in_(ids)
        )
        with self.engine.connect() as conn:
            return {
                row.user_id: UserProfile(
                    user_id=row.user_id,
                    username=row.username,
                    display_name=row.display_name,
                    avatar_url=row.avatar_url,
                )
                for row in conn.execute(stmt)
            }

    def follow(self, follower_id: str, following_id: str) -> None:
        """Idempotent insert (used by seeding and tests)."""
        exists = select(follows.c.follower_id).where(
            follows.c.follower_id == follower_id, follows.c.following_id == following_id
        )
        try:
            with transaction(self.engine) as conn:
                if conn.execute(exists).first() is None:
                    conn.execute(follows.insert().values(follower_id=follower_id, following_id=following_id))
        except IntegrityError:
            return

    def add_profile(self, profile: UserProfile) -> None:
        with transaction(self.engine) as conn:
            conn.execute(users.delete().where(users.c.user_id == profile.user_id))
            conn.execute(
                users.insert().values(
                    user_id=profile.user_id,
                    username=profile.username,
                    display_name=profile.display_name,
                    avatar_url=profile.avatar_url,
                )
            )

    def ping(self) -> bool:
        return check_connection(self.engine)
