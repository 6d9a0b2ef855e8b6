"""
Streak milestones and the achievement ledger.

Policy: when a streak advances, the highest milestone at or below the new
count is granted if the user does not hold it yet. Lower milestones that were
skipped are not back-filled; each advance grants at most one achievement.
"""

from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from devradar.core.database import achievements, transaction
from devradar.models.stats import Achievement


@dataclass(frozen=True)
class Milestone:
    streak: int
    type: str
    title: str
    description: str


# Highest first.
STREAK_MILESTONES: Tuple[Milestone, ...] = (
    Milestone(100, "STREAK_100", "Century Coder", "Coded 100 days in a row"),
    Milestone(30, "STREAK_30", "Monthly Marathon", "Coded 30 days in a row"),
    Milestone(7, "STREAK_7", "Week Warrior", "Coded 7 days in a row"),
)


def milestone_for(count: int) -> Optional[Milestone]:
    for milestone in STREAK_MILESTONES:
        if count >= milestone.streak:
            return milestone
    return None


class AchievementLedger(ABC):
    @abstractmethod
    def grant(self, user_id: str, milestone: Milestone, earned_at: Optional[datetime] = None) -> Optional[Achievement]:
        """Record the achievement. None when the user already holds it."""

    @abstractmethod
    def list(self, user_id: str, limit: int = 50, offset: int = 0) -> List[Achievement]:
        """Newest first."""


class InMemoryAchievementLedger(AchievementLedger):
    def __init__(self):
        self._by_user: Dict[str, Dict[str, Achievement]] = {}
        self._lock = threading.Lock()

    def grant(self, user_id: str, milestone: Milestone, earned_at: Optional[datetime] = None) -> Optional[Achievement]:
        with self._lock:
            held = self._by_user.setdefault(user_id, {})
            if milestone.type in held:
                return None
            achievement = Achievement(
                id=uuid.uuid4().hex,
                user_id=user_id,
                type=milestone.type,
                title=milestone.title,
                description=milestone.description,
                earned_at=earned_at or datetime.now(timezone.utc),
            )
            held[milestone.type] = achievement
            return achievement

    def list(self, user_id: str, limit: int = 50, offset: int = 0) -> List[Achievement]:
        with self._lock:
            items = sorted(self._by_user.get(user_id, {}).values(), key=lambda a: a.earned_at, reverse=True)
        return items[offset:offset + limit]


class SqlAchievementLedger(AchievementLedger):
    """Backed by the ``achievements`` table; unique on (user_id, type)."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def grant(self, user_id: str, milestone: Milestone, earned_at: Optional[datetime] = None) -> Optional[Achievement]:
        moment = earned_at or datetime.now(timezone.utc)
        exists = select(achievements.c.id).where(
            achievements.c.user_id == user_id, achievements.c.type == milestone.type
        )
        try:
            with transaction(self.engine) as conn:
                if conn.execute(exists).first() is not None:
                    return None
                result = conn.execute(
                    achievements.insert().values(
                        user_id=user_id,
                        type=milestone.type,
                        title=milestone.title,
                        description=milestone.description,
                        earned_at=moment,
                    )
                )
                new_id = result.inserted_primary_key[0]
        except IntegrityError:
            # A concurrent grant won the unique constraint.
            return None
        return Achievement(
            id=str(new_id),
            user_id=user_id,
            type=milestone.type,
            title=milestone.title,
            description=milestone.description,
            earned_at=moment,
        )

    def list(self, user_id: str, limit: int = 50, offset: int = 0) -> List[Achievement]:
        stmt = (
            select(achievements)
            .where(achievements.c.user_id == user_id)
            .order_by(achievements.c.earned_at.desc(), achievements.c.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            Achievement(
                id=str(row["id"]),
                user_id=row["user_id"],
                type=row["type"],
                title=row["title"],
                description=row["description"],
                earned_at=_as_utc(row["earned_at"]),
            )
            for row in rows
        ]


def _as_utc(moment: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
