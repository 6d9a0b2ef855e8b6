"""
In-process store backends for development and tests.

State is partitioned into lock shards keyed by user/board; every
read-modify-write runs inside its shard's lock, so the streak advance is one
critical section exactly like the Redis Lua script. Expired entries are dropped
when read and by a periodic sweep on the write path.
"""

import asyncio
import logging
import time
from bisect import bisect_left, insort
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from devradar.core.clock import yesterday_of
from devradar.models.presence import PresenceRecord
from devradar.models.stats import StreakRecord, StreakUpdate
from devradar.stores import keys
from devradar.stores.base import LeaderboardStore, PresenceListener, PresenceStore

SHARD_COUNT = 64
SWEEP_EVERY = 256


class _ShardedLocks:
    def __init__(self, shards: int = SHARD_COUNT):
        self._locks = [asyncio.Lock() for _ in range(shards)]

    def for_key(self, key: str) -> asyncio.Lock:
        return self._locks[hash(key) % len(self._locks)]


class _ExpiringMap:
    """Key -> value with optional per-key deadline.

    Reads drop an expired key on sight. Keys nobody reads again (old heatmap
    minutes, past days' accumulators) are purged by a full sweep every
    ``sweep_every`` writes.
    """

    def __init__(self, time_fn: Callable[[], float], sweep_every: int = SWEEP_EVERY):
        self.time_fn = time_fn
        self.sweep_every = sweep_every
        self._values: Dict[str, Any] = {}
        self._deadlines: Dict[str, float] = {}
        self._writes = 0

    def get(self, key: str, default: Any = None) -> Any:
        deadline = self._deadlines.get(key)
        if deadline is not None and self.time_fn() >= deadline:
            self.delete(key)
            return default
        return self._values.get(key, default)

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        self._values[key] = value
        if ttl_seconds is not None:
            self._deadlines[key] = self.time_fn() + ttl_seconds
        else:
            self._deadlines.pop(key, None)
        self._writes += 1
        if self._writes >= self.sweep_every:
            self.sweep()

    def expire(self, key: str, ttl_seconds: float) -> bool:
        if self.get(key) is None:
            return False
        self._deadlines[key] = self.time_fn() + ttl_seconds
        return True

    def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._deadlines.pop(key, None)

    def sweep(self) -> int:
        """Drop every expired key. Returns how many were removed."""
        self._writes = 0
        now = self.time_fn()
        expired = [key for key, deadline in self._deadlines.items() if now >= deadline]
        for key in expired:
            self.delete(key)
        return len(expired)

    def __len__(self) -> int:
        self.sweep()
        return len(self._values)


class MemoryPresenceStore(PresenceStore):
    backend_name = "memory"

    def __init__(
        self,
        *,
        presence_ttl_seconds: int = 60,
        time_fn: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.presence_ttl_seconds = presence_ttl_seconds
        self.time_fn = time_fn
        self.logger = logger or logging.getLogger("devradar.stores.memory")
        self._data = _ExpiringMap(time_fn)
        self._locks = _ShardedLocks()
        self._listeners: Dict[str, PresenceListener] = {}

    async def ping(self) -> bool:
        return True

    # Presence --------------------------------------------------------

    async def _publish(self, record: PresenceRecord) -> None:
        listener = self._listeners.get(record.user_id)
        if listener is None:
            return
        try:
            await listener(record)
        except Exception as e:
            self.logger.error(f"[memory] presence listener failed for {record.user_id}: {e}")

    async def set_presence(self, record: PresenceRecord) -> None:
        self._data.set(keys.presence_key(record.user_id), record, self.presence_ttl_seconds)
        await self._publish(record)

    async def get_presence(self, user_id: str) -> Optional[PresenceRecord]:
        return self._data.get(keys.presence_key(user_id))

    async def get_presences(self, user_ids: Iterable[str]) -> Dict[str, PresenceRecord]:
        found = {}
        for user_id in user_ids:
            record = self._data.get(keys.presence_key(user_id))
            if record is not None:
                found[user_id] = record
        return found

    async def touch_presence(self, user_id: str) -> bool:
        return self._data.expire(keys.presence_key(user_id), self.presence_ttl_seconds)

    async def clear_presence(self, user_id: str, updated_at: int) -> None:
        self._data.delete(keys.presence_key(user_id))
        await self._publish(PresenceRecord.offline(user_id, updated_at))

    async def subscribe(self, publisher_id: str, listener: PresenceListener) -> None:
        self._listeners[publisher_id] = listener

    async def unsubscribe(self, publisher_id: str) -> None:
        self._listeners.pop(publisher_id, None)

    @property
    def channel_count(self) -> int:
        return len(self._listeners)

    # Streaks and sessions --------------------------------------------

    async def advance_streak(self, user_id: str, today: date, ttl_seconds: int) -> StreakUpdate:
        key = keys.streak_key(user_id)
        async with self._locks.for_key(key):
            current: StreakRecord = self._data.get(key) or StreakRecord()
            if current.last_active_date == today:
                return StreakUpdate(count=current.count, longest=current.longest, advanced=False)

            candidate = current.count + 1 if current.last_active_date == yesterday_of(today) else 1
            longest = max(current.longest, candidate)
            self._data.set(key, StreakRecord(count=candidate, longest=longest, last_active_date=today), ttl_seconds)
            return StreakUpdate(count=candidate, longest=longest, advanced=True)

    async def get_streak(self, user_id: str) -> StreakRecord:
        return self._data.get(keys.streak_key(user_id)) or StreakRecord()

    async def add_session_seconds(self, user_id: str, day: date, seconds: int, ttl_seconds: int) -> int:
        key = keys.daily_session_key(user_id, day)
        async with self._locks.for_key(key):
            total = int(self._data.get(key, 0)) + seconds
            self._data.set(key, total, ttl_seconds)
            return total

    async def get_session_seconds(self, user_id: str, day: date) -> int:
        return int(self._data.get(keys.daily_session_key(user_id, day), 0))

    # Network heatmap -------------------------------------------------

    async def record_network_activity(self, minute: int, language: Optional[str], ttl_seconds: int) -> None:
        key = keys.network_key(minute)
        async with self._locks.for_key(key):
            bucket: Dict[str, int] = dict(self._data.get(key) or {})
            bucket[keys.NETWORK_COUNT_FIELD] = bucket.get(keys.NETWORK_COUNT_FIELD, 0) + 1
            if language:
                field = keys.NETWORK_LANGUAGE_PREFIX + keys.normalize_language(language)
                bucket[field] = bucket.get(field, 0) + 1
            self._data.set(key, bucket, ttl_seconds)

    async def get_network_activity(self, minutes: List[int]) -> List[Dict[str, int]]:
        return [dict(self._data.get(keys.network_key(m)) or {}) for m in minutes]


class _RankedSet:
    def __init__(self):
        self.scores: Dict[str, float] = {}
        # (-score, member) keeps the highest score first
        self.order: List[Tuple[float, str]] = []

    def increment(self, member: str, amount: float) -> float:
        old = self.scores.get(member)
        if old is not None:
            index = bisect_left(self.order, (-old, member))
            del self.order[index]
        new = (old or 0.0) + amount
        self.scores[member] = new
        insort(self.order, (-new, member))
        return new

    def rank(self, member: str) -> Optional[int]:
        score = self.scores.get(member)
        if score is None:
            return None
        return bisect_left(self.order, (-score, member))


class MemoryLeaderboardStore(LeaderboardStore):
    backend_name = "memory"

    def __init__(self, *, time_fn: Callable[[], float] = time.time):
        self._boards = _ExpiringMap(time_fn)
        self._locks = _ShardedLocks()

    def _board(self, board: str) -> Optional[_RankedSet]:
        return self._boards.get(board)

    async def increment(self, board: str, member: str, amount: float, ttl_seconds: int) -> float:
        async with self._locks.for_key(board):
            ranked = self._board(board) or _RankedSet()
            score = ranked.increment(member, amount)
            self._boards.set(board, ranked, ttl_seconds)
            return score

    async def rank(self, board: str, member: str) -> Optional[int]:
        ranked = self._board(board)
        return ranked.rank(member) if ranked else None

    async def score(self, board: str, member: str) -> Optional[float]:
        ranked = self._board(board)
        return ranked.scores.get(member) if ranked else None

    async def scores(self, board: str, members: Iterable[str]) -> Dict[str, float]:
        ranked = self._board(board)
        if not ranked:
            return {}
        return {m: ranked.scores[m] for m in members if m in ranked.scores}

    async def count(self, board: str) -> int:
        ranked = self._board(board)
        return len(ranked.scores) if ranked else 0

    async def range(self, board: str, start: int, stop: int) -> List[Tuple[str, float]]:
        ranked = self._board(board)
        if not ranked or start < 0 or stop < start:
            return []
        return [(member, -neg) for neg, member in ranked.order[start:stop + 1]]
