"""
Database Session — Async SQLAlchemy
=====================================
"""

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from propman.config import settings
from propman.db.models import Base
from propman.db.rls import install_row_security

engine = create_async_engine(settings.database_url, echo=False, pool_size=20)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    """Create all tables and row-security policies (dev convenience — use migrations in prod)."""
    async with engine.begin() as conn:
        if settings.create_schema_on_startup:
            await conn.run_sync(Base.metadata.create_all)
        if settings.rls_enabled:
            await install_row_security(conn)

