import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

import nubstudio.models  # noqa: F401
from nubstudio.core.config import get_settings
from nubstudio.core.db import Base

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)

target_metadata = Base.metadata
ASYNC_DRIVERS = ("+aiomysql", "+aiosqlite")


def database_url(*, sync: bool = False) -> str:
    url = get_settings().async_database_url
    if sync:
        for driver in ASYNC_DRIVERS:
            url = url.replace(driver, "")
    return url


def migrate(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


def migrate_offline() -> None:
    """Emite el SQL (alembic upgrade --sql) sin conectarse."""
    context.configure(
        url=database_url(sync=True),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


async def migrate_online() -> None:
    engine = create_async_engine(database_url(), poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    migrate_offline()
else:
    asyncio.run(migrate_online())
