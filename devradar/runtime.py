"""
Process-wide service graph.

Everything stateful (stores, registry, router, gateway, services) is built
here once per application and hung off ``app.state.runtime``; request handlers
and the socket endpoint reach it through the app, never through module
globals.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from devradar.core.auth import CredentialVerifier, build_verifier
from devradar.core.config import settings
from devradar.core.database import build_engine, create_all_tables, get_database_url
from devradar.core.logging import get_logger
from devradar.core.tasks import BestEffort
from devradar.features.leaderboards.service import LeaderboardService
from devradar.features.social.graph import InMemorySocialGraph, SocialGraph, SqlSocialGraph
from devradar.features.stats.achievements import AchievementLedger, InMemoryAchievementLedger, SqlAchievementLedger
from devradar.features.stats.service import StatsService
from devradar.realtime.gateway import PresenceGateway
from devradar.stores.factory import StoreBundle, open_stores


@dataclass
class Runtime:
    settings: object
    verifier: CredentialVerifier
    stores: StoreBundle
    graph: SocialGraph
    ledger: AchievementLedger
    gateway: PresenceGateway
    stats: StatsService
    leaderboards: LeaderboardService
    tasks: BestEffort
    engine: Optional[Engine] = None

    async def start(self) -> None:
        await self.stores.presence.start()
        await self.gateway.start()

    async def close(self) -> None:
        await self.gateway.shutdown()
        await self.tasks.drain(timeout=5.0)
        await self.stores.close()
        if self.engine is not None:
            self.engine.dispose()


def _data_layer(cfg, logger: logging.Logger):
    url = get_database_url(cfg)
    if not url:
        logger.info("[runtime] no DATABASE_URL; using in-memory social graph and achievements")
        return None, InMemorySocialGraph(), InMemoryAchievementLedger()
    engine = build_engine(url)
    create_all_tables(engine)
    return engine, SqlSocialGraph(engine), SqlAchievementLedger(engine)


async def build_runtime(
    settings_obj=None,
    *,
    stores: Optional[StoreBundle] = None,
    graph: Optional[SocialGraph] = None,
    ledger: Optional[AchievementLedger] = None,
    verifier: Optional[CredentialVerifier] = None,
    time_fn: Callable[[], float] = time.time,
) -> Runtime:
    cfg = settings_obj or settings
    logger = get_logger("runtime")

    engine = None
    if graph is None or ledger is None:
        engine, default_graph, default_ledger = _data_layer(cfg, logger)
        graph = graph or default_graph
        ledger = ledger or default_ledger

    if stores is None:
        stores = await open_stores(cfg, get_logger("stores"))
    verifier = verifier or build_verifier(cfg)
    tasks = BestEffort(get_logger("tasks"))

    gateway = PresenceGateway(
        verifier=verifier,
        store=stores.presence,
        graph=graph,
        settings_obj=cfg,
        time_fn=time_fn,
        logger=get_logger("realtime"),
    )
    stats = StatsService(
        presence_store=stores.presence,
        leaderboard_store=stores.leaderboard,
        ledger=ledger,
        graph=graph,
        broadcaster=gateway.broadcast,
        best_effort=tasks,
        settings_obj=cfg,
        time_fn=time_fn,
        logger=get_logger("stats"),
    )
    leaderboards = LeaderboardService(
        leaderboard_store=stores.leaderboard,
        presence_store=stores.presence,
        graph=graph,
        settings_obj=cfg,
        time_fn=time_fn,
        logger=get_logger("leaderboards"),
    )
    logger.info(f"[runtime] presence backend={stores.backend_name}")
    return Runtime(
        settings=cfg,
        verifier=verifier,
        stores=stores,
        graph=graph,
        ledger=ledger,
        gateway=gateway,
        stats=stats,
        leaderboards=leaderboards,
        tasks=tasks,
        engine=engine,
    )
