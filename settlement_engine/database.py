"""
Async engine and session factory.

Request handlers get a session through ``get_session``; background dispatches
open their own from ``async_session`` because they outlive the request.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from settlement_engine.config import settings
from settlement_engine.models.settlement import Base


def _connect_args(url: str) -> dict:
    # Background dispatches write while request sessions are open; let SQLite wait for the lock.
    if url.startswith("sqlite"):
        return {"timeout": 30}
    return {}


engine = create_async_engine(settings.database_url, echo=False, connect_args=_connect_args(settings.database_url))
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    """Create the settlement tables if they do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
