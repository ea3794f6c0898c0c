import asyncio
import logging
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(__file__)))  # backend/ holds the deuce package

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

from deuce import models  # noqa: F401  # registers every table on Base.metadata
from deuce.db import Base, normalize_database_url

config = context.config
logger = logging.getLogger("alembic.env")

if config.config_file_name:
    try:
        from logging.config import fileConfig

        fileConfig(config.config_file_name, disable_existing_loggers=False)
    except (KeyError, ValueError):
        logging.basicConfig(level=logging.INFO)

target_metadata = Base.metadata


def _database_url() -> str:
    """Resolve the target database.

    ``alembic -x database_url=...`` wins over ``DATABASE_URL`` so a one-off
    migration can point at another database without touching the environment.
    """

    url = context.get_x_argument(as_dictionary=True).get("database_url")
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL environment variable is required")
    return normalize_database_url(url)


DATABASE_URL = _database_url()


def _context_options() -> dict:
    # SQLite cannot ALTER most constraints in place.
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": DATABASE_URL.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    context.configure(url=DATABASE_URL, literal_binds=True, **_context_options())
    with context.begin_transaction():
        context.run_migrations()


def _run_sync_migrations(connection) -> None:
    context.configure(connection=connection, **_context_options())
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(DATABASE_URL, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_sync_migrations)
    finally:
        await engine.dispose()
    logger.info("Migrated %s", engine.url.render_as_string(hide_password=True))


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
