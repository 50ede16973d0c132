"""
Practice Payroll - Database Configuration

This module handles database connection setup using SQLAlchemy 2.0 async.
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import MetaData

from practice_payroll.config import settings


# Naming convention for constraints (helps with migrations)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    metadata = MetaData(naming_convention=convention)


def build_engine(url: str = None, **kwargs):
    """Create an async engine; pool sizing only applies to server databases."""
    url = url or settings.database_url_async
    options = {
        "echo": settings.database_echo,
        "pool_pre_ping": True,
    }
    if not url.startswith("sqlite"):
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
    options.update(kwargs)
    return create_async_engine(url, **options)


# Create async engine
engine = build_engine()

# Create async session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Name used by background tasks
async_session_factory = async_session_maker


async def init_db():
    """
    Initialize database - create all tables.
    Use this for development/testing only.
    For production, use Alembic migrations.
    """
    # Register every mapped table on the metadata
    import practice_payroll.models  # noqa: F401
    
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections."""
    await engine.dispose()
