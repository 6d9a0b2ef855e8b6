"""
Redis store backends (redis.asyncio).

- Presence: SETEX JSON under ``presence:{id}`` and PUBLISH on
  ``channel:presence:{id}``. One pub/sub connection per process, one reader
  task routing messages to the listener attached for each channel.
- Streaks: one Lua script, so the read-compare-write is atomic per user.
- Counters: pipelined INCRBY / HINCRBY / ZINCRBY with EXPIRE.
"""

import asyncio
import json
import logging
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from devradar.core.clock import yesterday_of
from devradar.models.presence import PresenceRecord
from devradar.models.stats import StreakRecord, StreakUpdate
from devradar.stores import keys
from devradar.stores.base import LeaderboardStore, PresenceListener, PresenceStore, StoreUnavailableError

# KEYS[1] streak hash; ARGV: today, ttl seconds, yesterday. Returns {count, longest, advanced}.
STREAK_ADVANCE_SCRIPT = """
local key = KEYS[1]
local today = ARGV[1]
local ttl = tonumber(ARGV[2])
local yesterday = ARGV[3]

local last = redis.call('HGET', key, 'lastDate')
local count = tonumber(redis.call('HGET', key, 'count') or '0')
local longest = tonumber(redis.call('HGET', key, 'longest') or '0')

if last == today then
  return {count, longest, 0}
end

local candidate = 1
if last == yesterday then
  candidate = count + 1
end
if candidate > longest then
  longest = candidate
end

redis.call('HSET', key, 'count', candidate, 'longest', longest, 'lastDate', today)
redis.call('EXPIRE', key, ttl)
return {candidate, longest, 1}
"""


@contextmanager
def _unavailable_on_error(operation: str):
    try:
        yield
    except RedisError as e:
        raise StoreUnavailableError(f"redis {operation} failed: {e}") from e


def _parse_record(raw) -> Optional[PresenceRecord]:
    if not raw:
        return None
    try:
        return PresenceRecord.model_validate_json(raw)
    except PydanticValidationError:
        return None


class RedisPresenceStore(PresenceStore):
    backend_name = "redis"

    def __init__(
        self,
        client,
        *,
        presence_ttl_seconds: int = 60,
        poll_timeout: float = 1.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.presence_ttl_seconds = presence_ttl_seconds
        self.poll_timeout = poll_timeout
        self.logger = logger or logging.getLogger("devradar.stores.redis")
        self._streak_script = client.register_script(STREAK_ADVANCE_SCRIPT)
        self._pubsub = None
        self._listeners: Dict[str, PresenceListener] = {}
        self._reader_task: Optional[asyncio.Task] = None

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        self._listeners.clear()

    # Presence --------------------------------------------------------

    async def set_presence(self, record: PresenceRecord) -> None:
        data = json.dumps(record.to_wire())
        with _unavailable_on_error("set_presence"):
            pipe = self.client.pipeline(transaction=False)
            pipe.setex(keys.presence_key(record.user_id), self.presence_ttl_seconds, data)
            pipe.publish(keys.presence_channel(record.user_id), data)
            await pipe.execute()

    async def get_presence(self, user_id: str) -> Optional[PresenceRecord]:
        with _unavailable_on_error("get_presence"):
            raw = await self.client.get(keys.presence_key(user_id))
        return _parse_record(raw)

    async def get_presences(self, user_ids: Iterable[str]) -> Dict[str, PresenceRecord]:
        ids = list(user_ids)
        if not ids:
            return {}
        with _unavailable_on_error("get_presences"):
            values = await self.client.mget([keys.presence_key(uid) for uid in ids])
        found = {}
        for user_id, raw in zip(ids, values):
            record = _parse_record(raw)
            if record is not None:
                found[user_id] = record
        return found

    async def touch_presence(self, user_id: str) -> bool:
        with _unavailable_on_error("touch_presence"):
            return bool(await self.client.expire(keys.presence_key(user_id), self.presence_ttl_seconds))

    async def clear_presence(self, user_id: str, updated_at: int) -> None:
        data = json.dumps(PresenceRecord.offline(user_id, updated_at).to_wire())
        with _unavailable_on_error("clear_presence"):
            pipe = self.client.pipeline(transaction=False)
            pipe.delete(keys.presence_key(user_id))
            pipe.publish(keys.presence_channel(user_id), data)
            await pipe.execute()

    async def subscribe(self, publisher_id: str, listener: PresenceListener) -> None:
        channel = keys.presence_channel(publisher_id)
        self._listeners[channel] = listener
        with _unavailable_on_error("subscribe"):
            if self._pubsub is None:
                self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            await self._pubsub.subscribe(channel)
        if self._reader_task is None or self._reader_task.done():
            self._reader_task = asyncio.create_task(self._read_loop(), name="presence-pubsub-reader")

    async def unsubscribe(self, publisher_id: str) -> None:
        channel = keys.presence_channel(publisher_id)
        self._listeners.pop(channel, None)
        if self._pubsub is None:
            return
        with _unavailable_on_error("unsubscribe"):
            await self._pubsub.unsubscribe(channel)

    @property
    def channel_count(self) -> int:
        return len(self._listeners)

    async def _read_loop(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_timeout
                )
            except asyncio.CancelledError:
                raise
            except (RedisError, RuntimeError) as e:
                self.logger.warning(f"[redis] pubsub read failed: {e}")
                await asyncio.sleep(self.poll_timeout)
                continue
            if message is None or message.get("type") != "message":
                continue
            await self._dispatch(message["channel"], message["data"])

    async def _dispatch(self, channel: str, data: str) -> None:
        listener = self._listeners.get(channel)
        if listener is None:
            return
        record = _parse_record(data)
        if record is None:
            self.logger.error(f"[redis] dropping malformed presence message on {channel}")
            return
        try:
            await listener(record)
        except Exception as e:
            self.logger.error(f"[redis] presence listener failed for {channel}: {e}")

    # Streaks and sessions --------------------------------------------

    async def advance_streak(self, user_id: str, today: date, ttl_seconds: int) -> StreakUpdate:
        with _unavailable_on_error("advance_streak"):
            count, longest, advanced = await self._streak_script(
                keys=[keys.streak_key(user_id)],
                args=[today.isoformat(), int(ttl_seconds), yesterday_of(today).isoformat()],
            )
        return StreakUpdate(count=int(count), longest=int(longest), advanced=int(advanced) == 1)

    async def get_streak(self, user_id: str) -> StreakRecord:
        with _unavailable_on_error("get_streak"):
            data = await self.client.hgetall(keys.streak_key(user_id))
        if not data:
            return StreakRecord()
        last = data.get("lastDate")
        return StreakRecord(
            count=int(data.get("count", 0)),
            longest=int(data.get("longest", 0)),
            last_active_date=date.fromisoformat(last) if last else None,
        )

    async def add_session_seconds(self, user_id: str, day: date, seconds: int, ttl_seconds: int) -> int:
        key = keys.daily_session_key(user_id, day)
        with _unavailable_on_error("add_session_seconds"):
            pipe = self.client.pipeline(transaction=False)
            pipe.incrby(key, seconds)
            pipe.expire(key, ttl_seconds)
            total, _ = await pipe.execute()
        return int(total)

    async def get_session_seconds(self, user_id: str, day: date) -> int:
        with _unavailable_on_error("get_session_seconds"):
            raw = await self.client.get(keys.daily_session_key(user_id, day))
        return int(raw) if raw else 0

    # Network heatmap -------------------------------------------------

    async def record_network_activity(self, minute: int, language: Optional[str], ttl_seconds: int) -> None:
        key = keys.network_key(minute)
        with _unavailable_on_error("record_network_activity"):
            pipe = self.client.pipeline(transaction=False)
            pipe.hincrby(key, keys.NETWORK_COUNT_FIELD, 1)
            if language:
                pipe.hincrby(key, keys.NETWORK_LANGUAGE_PREFIX + keys.normalize_language(language), 1)
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def get_network_activity(self, minutes: List[int]) -> List[Dict[str, int]]:
        with _unavailable_on_error("get_network_activity"):
            pipe = self.client.pipeline(transaction=False)
            for minute in minutes:
                pipe.hgetall(keys.network_key(minute))
            results = await pipe.execute()
        return [{field: int(value) for field, value in (bucket or {}).items()} for bucket in results]


class RedisLeaderboardStore(LeaderboardStore):
    backend_name = "redis"

    def __init__(self, client):
        self.client = client

    async def increment(self, board: str, member: str, amount: float, ttl_seconds: int) -> float:
        with _unavailable_on_error("leaderboard_increment"):
            pipe = self.client.pipeline(transaction=False)
            pipe.zincrby(board, amount, member)
            pipe.expire(board, ttl_seconds)
            score, _ = await pipe.execute()
        return float(score)

    async def rank(self, board: str, member: str) -> Optional[int]:
        with _unavailable_on_error("leaderboard_rank"):
            rank = await self.client.zrevrank(board, member)
        return int(rank) if rank is not None else None

    async def score(self, board: str, member: str) -> Optional[float]:
        with _unavailable_on_error("leaderboard_score"):
            score = await self.client.zscore(board, member)
        return float(score) if score is not None else None

    async def scores(self, board: str, members: Iterable[str]) -> Dict[str, float]:
        ids = list(members)
        if not ids:
            return {}
        with _unavailable_on_error("leaderboard_scores"):
            pipe = self.client.pipeline(transaction=False)
            for member in ids:
                pipe.zscore(board, member)
            results = await pipe.execute()
        return {member: float(score) for member, score in zip(ids, results) if score is not None}

    async def count(self, board: str) -> int:
        with _unavailable_on_error("leaderboard_count"):
            return int(await self.client.zcard(board))

    async def range(self, board: str, start: int, stop: int) -> List[Tuple[str, float]]:
        if start < 0 or stop < start:
            return []
        with _unavailable_on_error("leaderboard_range"):
            rows = await self.client.zrevrange(board, start, stop, withscores=True)
        return [(member, float(score)) for member, score in rows]
