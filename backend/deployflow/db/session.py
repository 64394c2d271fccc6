"""
Async SQLAlchemy session factory.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from deployflow.core.config import settings


def make_engine(**kwargs):
    return create_async_engine(
        settings.DATABASE_URL,
        echo=False,
        pool_pre_ping=True,
        **kwargs,
    )


def make_session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine) -> None:
    """Create every table known to `Base.metadata` (idempotent)."""
    from deployflow.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
