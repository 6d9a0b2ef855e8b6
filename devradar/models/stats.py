from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import Field

from devradar.models.presence import CamelModel

StreakStatus = Literal["active", "at_risk", "broken"]
AchievementType = Literal["STREAK_7", "STREAK_30", "STREAK_100"]


@dataclass(frozen=True)
class StreakRecord:
    """
    Stored streak state. Day-level, UTC only.
    """

    count: int = 0
    longest: int = 0
    last_active_date: Optional[date] = None


@dataclass(frozen=True)
class StreakUpdate:
    """Outcome of one atomic advance attempt."""

    count: int
    longest: int
    advanced: bool


@dataclass(frozen=True)
class Achievement:
    id: str
    user_id: str
    type: str
    title: str
    description: str
    earned_at: datetime


class SessionReport(CamelModel):
    session_duration: int = Field(ge=0, le=86400)
    language: Optional[str] = Field(default=None, max_length=255)
    project: Optional[str] = Field(default=None, max_length=255)


class CommitReport(CamelModel):
    count: int = Field(ge=1, le=1000)


class StreakInfo(CamelModel):
    current_streak: int
    longest_streak: int
    last_active_date: Optional[str] = None
    is_active_today: bool
    streak_status: StreakStatus


class WeeklyStats(CamelModel):
    week_start: str
    total_seconds: int
    total_commits: int
    rank: Optional[int] = None


class AchievementOut(CamelModel):
    id: str
    type: str
    title: str
    description: str
    earned_at: str

    @classmethod
    def from_achievement(cls, achievement: Achievement) -> "AchievementOut":
        return cls(
            id=achievement.id,
            type=achievement.type,
            title=achievement.title,
            description=achievement.description,
            earned_at=achievement.earned_at.isoformat(),
        )


class StatsSummary(CamelModel):
    streak: StreakInfo
    today_session: int
    weekly_stats: WeeklyStats
    recent_achievements: List[AchievementOut] = Field(default_factory=list)
