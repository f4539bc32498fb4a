"""Engines and sessions.

The ledger, reservations, reconciliation and webhook intake use the sync
``SessionLocal``; FastAPI-Users needs an async session over the same database.
"""

import os
from typing import Any, AsyncGenerator

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings

# DATABASE_PUBLIC_URL lets a local shell reach a hosted Postgres.
DATABASE_URL = os.environ.get("DATABASE_PUBLIC_URL") or settings.DATABASE_URL

_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def async_url(url: str) -> str:
    for prefix, replacement in _ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


def engine_options(url: str, *, is_async: bool = False) -> dict[str, Any]:
    if "sqlite" not in url:
        return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}
    # Sync and async engines share one SQLite file in tests; wait on its write lock.
    connect_args: dict[str, Any] = {"timeout": 30}
    if not is_async:
        connect_args["check_same_thread"] = False
    return {"connect_args": connect_args}


engine = create_engine(DATABASE_URL, **engine_options(DATABASE_URL))

# Results are read after commit, so instances must not expire.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

async_engine = create_async_engine(async_url(DATABASE_URL), **engine_options(DATABASE_URL, is_async=True))
async_session_maker = async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)


def get_db():
    """FastAPI dependency that yields a sync database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session


class Base(DeclarativeBase):
    pass
