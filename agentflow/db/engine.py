"""Async engine creation and lifecycle for AgentFlow."""

import os

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from agentflow.db.exceptions import ConfigurationError

DATABASE_URL_ENV = "AGENTFLOW_DATABASE__URL"


def _normalize_url(url: str) -> str:
    """Ensure URL uses postgresql+asyncpg driver.

    The claim statement relies on FOR UPDATE SKIP LOCKED and JSONB
    containment, so only PostgreSQL is accepted.
    """
    u = url.strip()
    if u.startswith("postgresql://"):
        return "postgresql+asyncpg://" + u[len("postgresql://") :]
    if u.startswith("postgresql+asyncpg://"):
        return u
    raise ConfigurationError(
        "Database URL must be PostgreSQL (postgresql:// or postgresql+asyncpg://)."
    )


def _get_url(database_url: str | None) -> str:
    """Resolve database URL from argument or environment."""
    if database_url is not None and database_url != "":
        return _normalize_url(database_url)
    url = os.environ.get(DATABASE_URL_ENV)
    if not url or not url.strip():
        raise ConfigurationError(
            f"Database URL not set. Set {DATABASE_URL_ENV} or pass database_url."
        )
    return _normalize_url(url)


def create_engine(
    database_url: str | None = None,
    *,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: float = 30.0,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
    echo: bool = False,
) -> AsyncEngine:
    """Create an async database engine.

    Args:
        database_url: PostgreSQL URL (postgresql+asyncpg://...).
            If None, uses AGENTFLOW_DATABASE__URL.
        pool_size: Connection pool size.
        max_overflow: Extra connections beyond pool_size when busy.
        pool_timeout: Seconds to wait for a connection.
        pool_recycle: Seconds after which connections are recycled.
        pool_pre_ping: Ping connections before use.
        echo: Log SQL (for development).

    Returns:
        Configured AsyncEngine.

    Raises:
        ConfigurationError: URL missing or invalid.
    """
    url = _get_url(database_url)
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
        echo=echo,
    )
