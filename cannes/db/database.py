"""Database connection and session management."""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from cannes.config import get_settings

settings = get_settings()


def _engine_options(url: str) -> dict:
    """Pool options for the configured backend (SQLite takes no pool sizing)."""
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,  # Verify connections before use to avoid stale connections
        "pool_recycle": 300,    # Recycle connections after 5 minutes
    }


# Create async engine
# Always disable SQL echo - it creates massive log spam
engine = create_async_engine(
    settings.database_url,
    echo=False,
    **_engine_options(settings.database_url),
)

# Session factory
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Base class for models
Base = declarative_base()


async def init_db():
    """Initialize database tables."""
    # Import models so their tables are registered on Base.metadata
    from cannes.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)

