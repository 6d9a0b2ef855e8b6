from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Auth (bearer JWTs issued by the login service)
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: Optional[str] = None

    # Storage
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: Optional[str] = None
    STORE_BACKEND: str = "auto"  # auto | memory | redis

    # Presence
    PRESENCE_TTL_SECONDS: int = 60
    PRESENCE_GRACE_SECONDS: float = 60.0

    # Stats retention
    STREAK_TTL_SECONDS: int = 25 * 60 * 60  # one day plus an hour of slack
    SESSION_TTL_SECONDS: int = 7 * 24 * 60 * 60
    NETWORK_ACTIVITY_TTL_SECONDS: int = 10 * 60
    NETWORK_ACTIVITY_WINDOW_MINUTES: int = 5
    NETWORK_HOT_THRESHOLD: int = 10
    LEADERBOARD_TTL_SECONDS: int = 14 * 24 * 60 * 60

    # HTTP rate limiting
    RATE_LIMIT_ENABLED: bool = False
    RATE_LIMIT_PER_MINUTE_DEFAULT: int = 120
    RATE_LIMIT_BURST_DEFAULT: int = 30

    # WebSocket gateway
    WS_MAX_MESSAGE_BYTES: int = 16384
    WS_CONNECT_PER_MINUTE: int = 50
    WS_CONNECT_BURST: int = 10
    WS_MESSAGES_PER_MINUTE: int = 240
    WS_MESSAGE_BURST: int = 60
    WS_IDLE_TIMEOUT_SECONDS: float = 90.0
    WS_WATCHDOG_INTERVAL_SECONDS: float = 15.0

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    def resolved_store_backend(self) -> str:
        backend = (self.STORE_BACKEND or "auto").lower()
        if backend == "auto":
            return "redis" if self.REDIS_URL else "memory"
        return backend


settings = Settings()
