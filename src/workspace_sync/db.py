from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from workspace_sync.config import settings
from workspace_sync.db_urls import extract_sqlite_db_file_path, normalize_database_url_for_async

# Register table metadata before create_all.
from workspace_sync import models as _models  # noqa: F401


_engines: list[AsyncEngine] = []


def _create_async_engine(database_url: str) -> AsyncEngine:
    db_path = extract_sqlite_db_file_path(database_url)
    if db_path is not None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    url = normalize_database_url_for_async(database_url)
    engine = create_async_engine(url, echo=False, pool_pre_ping=True)
    _engines.append(engine)
    return engine


@lru_cache(maxsize=4)
def get_engine(database_url: str | None = None) -> AsyncEngine:
    return _create_async_engine(database_url or settings.database_url)


async def dispose_engine_cache() -> None:
    while _engines:
        await _engines.pop().dispose()
    get_engine.cache_clear()


async def init_db(engine: AsyncEngine | None = None) -> None:
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def session_scope(engine: AsyncEngine | None = None) -> AsyncIterator[AsyncSession]:
    session_maker = async_sessionmaker(
        engine or get_engine(), class_=AsyncSession, expire_on_commit=False
    )
    async with session_maker() as session:
        yield session
