"""SQLAlchemy async database setup and engine configuration."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings

settings = get_settings()


def create_db_engine(url: str = None):
    """Create and configure async SQLAlchemy engine.

    Args:
        url: Database URL. Defaults to ``DATABASE_URL`` from settings.

    Returns:
        Async SQLAlchemy engine instance.
    """
    url = url or settings.DATABASE_URL
    is_sqlite = url.startswith("sqlite")
    kwargs = dict(echo=settings.SQLALCHEMY_ECHO)
    if not is_sqlite:
        kwargs.update(
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
    return create_async_engine(url, **kwargs)


def create_session_factory(engine) -> async_sessionmaker[AsyncSession]:
    """Create async session factory.

    Args:
        engine: SQLAlchemy async engine instance.

    Returns:
        Async sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Global engine and session factory instances
engine = create_db_engine()
AsyncSessionLocal = create_session_factory(engine)


async def init_db():
    """Create all tables.

    This should be called once at application startup.
    """
    from db.base import Base
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections.

    This should be called at application shutdown.
    """
    await engine.dispose()
