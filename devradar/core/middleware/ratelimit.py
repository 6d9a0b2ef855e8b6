import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from devradar.core.errors import RateLimitError, app_error_handler
from devradar.core.logging import get_request_id
from devradar.core.metrics import normalize_path, ratelimit_block_total
from devradar.core.ratelimit import InMemoryRateLimiter, RateLimitConfig, build_rate_limit_config_from_env

# Session reports arrive every few seconds from each editor; keep them out of the shared bucket.
_WRITE_PATHS = ("/v1/stats/session", "/v1/stats/commits")


@dataclass
class RoutePolicy:
    per_minute: int
    burst: int
    category: str


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token-bucket rate limiting middleware (opt-in via RATE_LIMIT_ENABLED)."""

    def __init__(self, app, *, config: Optional[RateLimitConfig] = None, env: Optional[dict] = None, time_fn: Optional[Callable[[], float]] = None):
        super().__init__(app)
        self.config = config or build_rate_limit_config_from_env(env or os.environ)
        self.limiter = InMemoryRateLimiter(self.config, time_fn=time_fn or time.monotonic)

    def _policy_for_request(self, request: Request) -> Optional[RoutePolicy]:
        path = request.url.path
        if path in ("/healthz", "/readyz", "/metrics") or path == "/ws":
            return None

        if request.method.upper() == "POST" and path in _WRITE_PATHS:
            return RoutePolicy(
                per_minute=self.config.per_minute_default,
                burst=self.config.burst_default,
                category="write",
            )

        return RoutePolicy(
            per_minute=self.config.per_minute_default,
            burst=self.config.burst_default,
            category="read",
        )

    def _client_key(self, request: Request, category: str) -> str:
        auth = request.headers.get("Authorization")
        if auth:
            # Signature tail identifies the token without logging the credential
            return f"auth:{auth[-16:]}:{category}"
        ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
        return f"ip:{ip}:{category}"

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled:
            return await call_next(request)

        policy = self._policy_for_request(request)
        if not policy:
            return await call_next(request)

        key = self._client_key(request, policy.category)
        if self.limiter.allow(key, per_minute=policy.per_minute, burst=policy.burst):
            return await call_next(request)

        rid = getattr(request.state, "request_id", None) or get_request_id()
        ratelimit_block_total.inc(labels={"scope": normalize_path(request.url.path)})

        response = await app_error_handler(
            request,
            RateLimitError("Rate limit exceeded for this endpoint", request_id=rid),
        )
        retry_after = max(1, int(60 / max(1, policy.per_minute)))
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-RateLimit-Limit"] = str(policy.per_minute)
        response.headers["X-RateLimit-Remaining"] = "0"
        return response
