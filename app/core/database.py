"""Async engine, session factory and the FastAPI session dependency."""

import ssl
from collections.abc import AsyncGenerator
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# libpq options that asyncpg rejects as unknown keyword arguments
_LIBPQ_ONLY_PARAMS = ("sslmode", "channel_binding", "options")
_LOCAL_HOSTS = ("localhost", "127.0.0.1", "db")


def clean_database_url(url: str) -> tuple[str, dict[str, Any]]:
    """
    Turn a DATABASE_URL into an asyncpg-ready URL plus connect_args.

    Hosting providers hand out `postgres://` or `postgresql://` URLs with
    libpq query options; both are rewritten for asyncpg. Remote hosts get a
    default SSL context. SQLite URLs pass through untouched.
    """
    if url.startswith("sqlite"):
        return url, {}

    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            url = "postgresql+asyncpg://" + url.removeprefix(prefix)
            break

    parsed = urlparse(url)
    params = {k: v for k, v in parse_qs(parsed.query).items() if k not in _LIBPQ_ONLY_PARAMS}
    clean_url = urlunparse(parsed._replace(query=urlencode(params, doseq=True)))

    if (parsed.hostname or "") in _LOCAL_HOSTS:
        return clean_url, {}
    return clean_url, {"ssl": ssl.create_default_context()}


def _create_engine():
    settings = get_settings()
    url, connect_args = clean_database_url(settings.database_url)

    # Pool sizing only applies to server databases
    pool_kwargs: dict[str, Any] = {}
    if not url.startswith("sqlite"):
        pool_kwargs = {"pool_size": 5, "max_overflow": 10, "pool_recycle": 280}

    return create_async_engine(
        url,
        echo=settings.debug,
        pool_pre_ping=True,
        connect_args=connect_args,
        **pool_kwargs,
    )


engine = _create_engine()

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session.

    Handlers commit their own writes; this commits whatever is left and
    rolls back on any exception, including LastWishError responses.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.bind(error=str(e)).warning("database_transaction_rollback")
            await session.rollback()
            raise
