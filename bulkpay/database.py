"""
Engine and session plumbing.

Request handlers get a session per request through ``get_session``.
Streaming runs outlive their request, so they take the sessionmaker
itself from ``get_session_factory`` and open their own session.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bulkpay.config import settings
from bulkpay.models.batch import Base


def build_engine(url: str):
    # a background run and a request session may write at the same time
    connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
    return create_async_engine(url, echo=False, connect_args=connect_args)


engine = build_engine(settings.database_url)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    """Create missing tables; existing ones are left alone."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session
