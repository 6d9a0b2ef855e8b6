"""
Store selection.

- ``STORE_BACKEND=memory``: in-process stores.
- ``STORE_BACKEND=redis``: Redis stores; startup fails if Redis is unreachable.
- ``STORE_BACKEND=auto`` (default): Redis when ``REDIS_URL`` is set and
  answers a PING, otherwise in-process stores with a warning.

Callers only see the ``PresenceStore`` / ``LeaderboardStore`` interfaces.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from devradar.core.config import settings
from devradar.core.logging import get_logger
from devradar.stores.base import LeaderboardStore, PresenceStore, StoreUnavailableError
from devradar.stores.memory import MemoryLeaderboardStore, MemoryPresenceStore
from devradar.stores.redis_store import RedisLeaderboardStore, RedisPresenceStore


@dataclass
class StoreBundle:
    presence: PresenceStore
    leaderboard: LeaderboardStore
    redis_client: Optional[Any] = None

    @property
    def backend_name(self) -> str:
        return self.presence.backend_name

    async def close(self) -> None:
        await self.presence.close()
        await self.leaderboard.close()
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None


def memory_stores(settings_obj=None, logger: Optional[logging.Logger] = None) -> StoreBundle:
    cfg = settings_obj or settings
    return StoreBundle(
        presence=MemoryPresenceStore(
            presence_ttl_seconds=cfg.PRESENCE_TTL_SECONDS,
            logger=logger or get_logger("stores.memory"),
        ),
        leaderboard=MemoryLeaderboardStore(),
    )


async def _redis_stores(cfg, logger: logging.Logger) -> StoreBundle:
    client = redis_async.from_url(cfg.REDIS_URL, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        await client.aclose()
        raise StoreUnavailableError(f"redis unreachable at startup: {e}") from e
    return StoreBundle(
        presence=RedisPresenceStore(
            client,
            presence_ttl_seconds=cfg.PRESENCE_TTL_SECONDS,
            logger=logger,
        ),
        leaderboard=RedisLeaderboardStore(client),
        redis_client=client,
    )


async def open_stores(settings_obj=None, logger: Optional[logging.Logger] = None) -> StoreBundle:
    cfg = settings_obj or settings
    log = logger or get_logger("stores")
    backend = cfg.resolved_store_backend()

    if backend == "memory":
        log.info("[stores] using in-memory backend")
        return memory_stores(cfg)

    if backend == "redis" and (cfg.STORE_BACKEND or "auto").lower() == "redis":
        bundle = await _redis_stores(cfg, get_logger("stores.redis"))
        log.info("[stores] using redis backend")
        return bundle

    try:
        bundle = await _redis_stores(cfg, get_logger("stores.redis"))
        log.info("[stores] using redis backend")
        return bundle
    except StoreUnavailableError as e:
        log.warning(f"[stores] {e}; falling back to in-memory backend")
        return memory_stores(cfg)
