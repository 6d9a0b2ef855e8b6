"""
Database configuration and table definitions.

The presence core only needs two reads from the relational side (who does a
user follow, who follows them) plus the achievement ledger. Those tables live
here together with a small ``users`` profile table used to decorate
leaderboards. User/team CRUD is owned elsewhere.
"""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from devradar.core.config import settings
from devradar.core.logging import get_logger

metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

logger = get_logger("database")


def get_database_url(settings_obj=None) -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL when both are configured."""
    cfg = settings_obj or settings
    return cfg.TEST_DATABASE_URL or cfg.DATABASE_URL


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across threads.
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
    )


@contextmanager
def transaction(engine: Engine) -> Iterator[Connection]:
    """
    Connection wrapped in a transaction: commit on success, rollback on error.

    Usage:
        with transaction(engine) as conn:
            conn.execute(...)
    """
    with engine.begin() as conn:
        yield conn


def create_all_tables(engine: Engine) -> None:
    """Idempotent: existing tables are left alone."""
    metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


users = Table(
    "users",
    metadata,
    Column("user_id", String(100), primary_key=True),
    Column("username", String(100), nullable=False),
    Column("display_name", Text, nullable=True),
    Column("avatar_url", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# follower_id follows following_id; a user's friends are the ids they follow.
follows = Table(
    "follows",
    metadata,
    Column("follower_id", String(100), primary_key=True),
    Column("following_id", String(100), primary_key=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index("idx_follows_following", "following_id"),
)

achievements = Table(
    "achievements",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(100), nullable=False),
    Column("type", String(50), nullable=False),
    Column("title", String(200), nullable=False),
    Column("description", Text, nullable=False),
    Column("earned_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_id", "type", name="uq_achievements_user_type"),
    Index("idx_achievements_user_earned", "user_id", "earned_at"),
)
