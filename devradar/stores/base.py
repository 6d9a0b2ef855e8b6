"""
Store interfaces.

``PresenceStore`` holds everything ephemeral and per-user: presence records
with their change feed, streak records, daily session accumulators and the
per-minute network activity buckets. ``LeaderboardStore`` holds the weekly
ranked sets. Both have a Redis and an in-memory implementation.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from devradar.models.presence import PresenceRecord
from devradar.models.stats import StreakRecord, StreakUpdate

PresenceListener = Callable[[PresenceRecord], Awaitable[None]]


class StoreUnavailableError(RuntimeError):
    """The backing store could not be reached."""


class PresenceStore(ABC):
    backend_name = "abstract"

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def ping(self) -> bool:
        ...

    # Presence --------------------------------------------------------

    @abstractmethod
    async def set_presence(self, record: PresenceRecord) -> None:
        """Write with TTL and publish on the user's presence channel."""

    @abstractmethod
    async def get_presence(self, user_id: str) -> Optional[PresenceRecord]:
        ...

    @abstractmethod
    async def get_presences(self, user_ids: Iterable[str]) -> Dict[str, PresenceRecord]:
        ...

    @abstractmethod
    async def touch_presence(self, user_id: str) -> bool:
        """Refresh the record's TTL. False when there is no live record."""

    @abstractmethod
    async def clear_presence(self, user_id: str, updated_at: int) -> None:
        """Drop the record and publish an offline status."""

    @abstractmethod
    async def subscribe(self, publisher_id: str, listener: PresenceListener) -> None:
        """Attach ``listener`` to ``publisher_id``'s change feed."""

    @abstractmethod
    async def unsubscribe(self, publisher_id: str) -> None:
        ...

    # Streaks and sessions --------------------------------------------

    @abstractmethod
    async def advance_streak(self, user_id: str, today: date, ttl_seconds: int) -> StreakUpdate:
        """
        Atomically advance the streak for ``today``.

        Same day: no-op. Yesterday: count + 1. Anything else: reset to 1.
        ``longest`` never drops below ``count``.
        """

    @abstractmethod
    async def get_streak(self, user_id: str) -> StreakRecord:
        ...

    @abstractmethod
    async def add_session_seconds(self, user_id: str, day: date, seconds: int, ttl_seconds: int) -> int:
        ...

    @abstractmethod
    async def get_session_seconds(self, user_id: str, day: date) -> int:
        ...

    # Network heatmap -------------------------------------------------

    @abstractmethod
    async def record_network_activity(self, minute: int, language: Optional[str], ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def get_network_activity(self, minutes: List[int]) -> List[Dict[str, int]]:
        ...


class LeaderboardStore(ABC):
    backend_name = "abstract"

    async def close(self) -> None:
        return None

    @abstractmethod
    async def increment(self, board: str, member: str, amount: float, ttl_seconds: int) -> float:
        ...

    @abstractmethod
    async def rank(self, board: str, member: str) -> Optional[int]:
        """Zero-based rank, highest score first. None when absent."""

    @abstractmethod
    async def score(self, board: str, member: str) -> Optional[float]:
        ...

    @abstractmethod
    async def scores(self, board: str, members: Iterable[str]) -> Dict[str, float]:
        ...

    @abstractmethod
    async def count(self, board: str) -> int:
        ...

    @abstractmethod
    async def range(self, board: str, start: int, stop: int) -> List[Tuple[str, float]]:
        """Members ranked ``start..stop`` inclusive, highest score first."""
