from typing import List, Literal, Optional

from pydantic import Field

from devradar.models.presence import CamelModel

LeaderboardMetric = Literal["time", "commits"]


class UserProfile(CamelModel):
    user_id: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class LeaderboardEntry(CamelModel):
    rank: int
    user_id: str
    username: str = "Unknown"
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    score: int
    is_friend: bool = False


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    has_more: bool


class LeaderboardPage(CamelModel):
    leaderboard: List[LeaderboardEntry] = Field(default_factory=list)
    my_rank: Optional[int] = None
    pagination: Optional[Pagination] = None


class LanguageCount(CamelModel):
    language: str
    count: int


class NetworkActivity(CamelModel):
    total_active_users: int
    average_intensity: int
    is_hot: bool
    message: str
    top_languages: List[LanguageCount] = Field(default_factory=list)
