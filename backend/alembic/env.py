"""
Alembic environment for the gateway schema (auth_tokens, webhook tables).

The URL is taken from settings unless overridden on the command line:

    alembic upgrade head
    alembic -x db_url=sqlite+aiosqlite:///./scratch.db upgrade head

Online runs go through an async engine; SQLite gets batch mode so column
changes are emitted as table rebuilds.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from taskflow_gateway.core.config import settings
from taskflow_gateway.core.database import Base

# Model modules register their tables on Base.metadata when imported.
import taskflow_gateway.models.auth_token  # noqa: F401
import taskflow_gateway.models.webhook  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _database_url() -> str:
    return context.get_x_argument(as_dictionary=True).get("db_url", settings.DATABASE_URL)


def _configure(**kwargs) -> None:  # type: ignore[no-untyped-def]
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        **kwargs,
    )


def _migrate(connection: Connection) -> None:
    _configure(
        connection=connection,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


async def _migrate_online(url: str) -> None:
    engine = create_async_engine(url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    # `alembic upgrade head --sql`: render SQL without connecting.
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    asyncio.run(_migrate_online(_database_url()))
