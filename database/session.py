"""
Async SQLAlchemy engine / session factory for the durable token store.
"""

from __future__ import annotations

from typing import Dict, Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from database.models import Base

_engines: Dict[str, Tuple[AsyncEngine, async_sessionmaker]] = {}


def get_engine(database_url: str) -> AsyncEngine:
    return _get(database_url)[0]


def get_session_factory(database_url: str) -> async_sessionmaker:
    """Return (and cache) a session factory for ``database_url``."""
    return _get(database_url)[1]


def _get(database_url: str) -> Tuple[AsyncEngine, async_sessionmaker]:
    cached = _engines.get(database_url)
    if cached is None:
        kwargs = {"echo": False}
        if database_url.startswith("postgresql"):
            kwargs.update(pool_size=10, max_overflow=20, pool_recycle=3600)
        engine = create_async_engine(database_url, **kwargs)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        cached = _engines[database_url] = (engine, factory)
    return cached


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine(database_url: str) -> None:
    cached = _engines.pop(database_url, None)
    if cached is not None:
        await cached[0].dispose()
