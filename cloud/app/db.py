from __future__ import annotations

import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .models import Base, Run
from .settings import DATABASE_URL

engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models() -> None:
    # Creates tables if they don't exist. (uuid-ossp must be enabled.)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def lock_run(s: AsyncSession, run_id: uuid.UUID) -> Run | None:
    """Load a run with a row lock; every state transition of a run goes through this."""
    return await s.get(Run, run_id, with_for_update=True)
