"""Alembic environment for the Last Wish schema (async engine)."""

import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context
from app.config import get_settings
from app.core.database import clean_database_url
from app.models import Base

alembic_config = context.config
if alembic_config.config_file_name is not None:
    fileConfig(alembic_config.config_file_name)

# DATABASE_URL wins over alembic.ini so the app and migrations never diverge
DATABASE_URL, CONNECT_ARGS = clean_database_url(get_settings().database_url)
alembic_config.set_main_option("sqlalchemy.url", DATABASE_URL)


def _configure(**kwargs) -> None:
    context.configure(target_metadata=Base.metadata, compare_type=True, **kwargs)


def _migrate(connection: Connection) -> None:
    # SQLite cannot ALTER most constraints in place
    _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
    with context.begin_transaction():
        context.run_migrations()


async def _migrate_online() -> None:
    engine = create_async_engine(DATABASE_URL, poolclass=pool.NullPool, connect_args=CONNECT_ARGS)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    _configure(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    asyncio.run(_migrate_online())
