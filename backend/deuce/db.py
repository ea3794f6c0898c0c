import os
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import NullPool, StaticPool


engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[sessionmaker] = None
Base = declarative_base()

ASYNC_DRIVERS = {"postgresql://": "postgresql+asyncpg://"}


def normalize_database_url(database_url: str) -> str:
    """Point bare driver URLs at their async drivers."""

    for plain, async_url in ASYNC_DRIVERS.items():
        if database_url.startswith(plain):
            return async_url + database_url[len(plain):]
    return database_url


def _engine_options(database_url: str) -> dict:
    if not database_url.startswith("sqlite+aiosqlite://"):
        # Row locks and version checks need live connections after idle periods.
        return {"echo": False, "pool_pre_ping": True}
    if ":memory:" in database_url:
        # One shared connection, otherwise every session sees an empty database.
        return {
            "echo": False,
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {"echo": False, "poolclass": NullPool}


def build_engine(database_url: str) -> AsyncEngine:
    database_url = normalize_database_url(database_url)
    return create_async_engine(database_url, **_engine_options(database_url))


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it from ``DATABASE_URL``.

    Nothing connects at import time; tests swap ``DATABASE_URL`` and reset
    the module globals between cases.
    """

    global engine, AsyncSessionLocal

    if engine is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL environment variable is required")
        engine = build_engine(database_url)
        AsyncSessionLocal = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
    return engine


def get_sessionmaker() -> sessionmaker:
    if AsyncSessionLocal is None:
        get_engine()
    assert AsyncSessionLocal is not None  # for type checkers
    return AsyncSessionLocal


async def get_session() -> AsyncSession:
    async with get_sessionmaker()() as session:
        yield session
