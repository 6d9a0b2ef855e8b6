import logging
import os
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load .env before settings are read; tests configure the environment themselves.
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from devradar.api import auth, health, leaderboards, metrics, presence, realtime, stats
from devradar.core.config import settings
from devradar.core.errors import (
    AppError,
    InternalError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from devradar.core.logging import configure_logging
from devradar.core.middleware.metrics import MetricsMiddleware
from devradar.core.middleware.ratelimit import RateLimitMiddleware
from devradar.core.middleware.request_id import RequestIdMiddleware
from devradar.core.ratelimit import build_rate_limit_config_from_env
from devradar.core.validation import validate_env
from devradar.runtime import Runtime, build_runtime
from devradar.stores.base import StoreUnavailableError


async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    return await app_error_handler(request, InternalError(f"Store unavailable: {exc}", code="store_unavailable"))


def create_app(
    settings_obj=None,
    *,
    runtime_factory: Optional[Callable[[], Awaitable[Runtime]]] = None,
) -> FastAPI:
    """
    Build the service.

    ``runtime_factory`` lets tests supply the service graph (fake clocks,
    seeded social graph); by default it is built from settings at startup.
    """
    cfg = settings_obj or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("devradar")
        logger.info("Starting DevRadar presence service...")
        app.state.runtime = await runtime_factory() if runtime_factory else await build_runtime(cfg)
        await app.state.runtime.start()
        try:
            yield
        finally:
            logger.info("Stopping DevRadar presence service...")
            await app.state.runtime.close()

    app = FastAPI(title="DevRadar - Presence", lifespan=lifespan)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(RateLimitMiddleware, config=build_rate_limit_config_from_env(os.environ))
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(metrics.router)
    app.include_router(auth.router, tags=["auth"])
    app.include_router(stats.router, tags=["stats"])
    app.include_router(leaderboards.router, tags=["leaderboards"])
    app.include_router(presence.router, tags=["presence"])
    app.include_router(realtime.router, tags=["realtime"])
    return app


configure_logging(settings.ENV)
validate_env()

app = create_app()
