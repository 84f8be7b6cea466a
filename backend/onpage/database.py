"""Database engines for the two datastores.

WHAT:
    Lazily-built SQLAlchemy async engines:

        behavioral store   PostgreSQL via asyncpg   (tracker_* tables)
        conversion store   MariaDB via aiomysql     (CRM tables)

WHY:
    Both stores are read-only from this service and queried with raw
    `text()` SQL, so there is no ORM session layer; repositories borrow a
    connection per statement. Engines are built on first use so importing
    the app (tests, tooling) never requires live database URLs.

TIMEOUTS:
    - pool_timeout: wait for a free pooled connection
    - asyncpg: `command_timeout` + server-side `statement_timeout`
    - aiomysql: `connect_timeout` + MariaDB `max_statement_time` per session
    Repositories add an asyncio deadline on top and map all of these to
    DownstreamUnavailable.

ARCHITECTURE:
    ┌──────────────────────┐     ┌───────────────────────┐
    │  Behavioral Engine   │     │  Conversion Engine    │
    │  (asyncpg)           │     │  (aiomysql)           │
    └──────────┬───────────┘     └───────────┬───────────┘
               │                             │
    ┌──────────▼───────────┐     ┌───────────▼───────────┐
    │  BehavioralStore     │     │  ConversionStore      │
    └──────────────────────┘     └───────────────────────┘

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html
    - onpage/services/stores.py (consumers of these engines)
"""

import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .deps import Settings, get_settings
from .utils.env import require_database_url


logger = logging.getLogger(__name__)


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _require_url(value: Optional[str], name: str) -> str:
    """Settings value, else the environment (after loading .env).

    Raises:
        RuntimeError: If the URL is not configured
    """
    if value:
        return value
    return require_database_url(name)


def get_async_postgres_url(url: str) -> str:
    """Convert postgresql:// (or Heroku-style postgres://) to postgresql+asyncpg://."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def get_async_mysql_url(url: str) -> str:
    """Convert mysql:// or mariadb:// to mysql+aiomysql://."""
    for prefix in ("mysql://", "mariadb://"):
        if url.startswith(prefix):
            return url.replace(prefix, "mysql+aiomysql://", 1)
    return url


# =============================================================================
# ENGINES
# =============================================================================

def build_behavioral_engine(settings: Settings) -> AsyncEngine:
    url = get_async_postgres_url(_require_url(settings.BEHAVIORAL_DATABASE_URL, "BEHAVIORAL_DATABASE_URL"))
    statement_timeout_ms = int(settings.QUERY_TIMEOUT_SECONDS * 1000)
    return create_async_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_recycle=settings.DB_POOL_RECYCLE_SECONDS,
        pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
        pool_pre_ping=True,
        echo=False,
        connect_args={
            "command_timeout": settings.QUERY_TIMEOUT_SECONDS,
            "server_settings": {"statement_timeout": str(statement_timeout_ms)},
        },
    )


def build_conversion_engine(settings: Settings) -> AsyncEngine:
    url = get_async_mysql_url(_require_url(settings.CONVERSION_DATABASE_URL, "CONVERSION_DATABASE_URL"))
    return create_async_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_recycle=settings.DB_POOL_RECYCLE_SECONDS,
        pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
        pool_pre_ping=True,
        echo=False,
        connect_args={
            "connect_timeout": int(settings.DB_POOL_TIMEOUT_SECONDS),
            "init_command": f"SET SESSION max_statement_time={settings.QUERY_TIMEOUT_SECONDS}",
        },
    )


@lru_cache()
def get_behavioral_engine() -> AsyncEngine:
    logger.info("[DATABASE] Creating behavioral store engine")
    return build_behavioral_engine(get_settings())


@lru_cache()
def get_conversion_engine() -> AsyncEngine:
    logger.info("[DATABASE] Creating conversion store engine")
    return build_conversion_engine(get_settings())


async def dispose_engines() -> None:
    """Close pooled connections of any engine that was created."""
    for factory in (get_behavioral_engine, get_conversion_engine):
        if factory.cache_info().currsize:
            await factory().dispose()
            factory.cache_clear()
