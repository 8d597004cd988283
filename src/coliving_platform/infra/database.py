"""Async database engine and session management."""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from coliving_platform.app.config import get_settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""
    pass


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    # WAL lets the reminder loop read while a webhook request writes
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Engine for ``database_url``; SQLite connections wait on the write lock instead of failing."""
    is_sqlite = database_url.startswith("sqlite")
    kwargs: dict = {"echo": echo}
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)

    new_engine = create_async_engine(database_url, **kwargs)
    if is_sqlite:
        event.listen(new_engine.sync_engine, "connect", _set_sqlite_pragmas)
    return new_engine


def session_factory_for(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: services keep using rows after commit without lazy loads
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(get_settings().database_url)

async_session = session_factory_for(engine)


async def get_db():
    """FastAPI dependency: yield an async database session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def create_tables(bind: AsyncEngine) -> None:
    # Register models with Base.metadata
    import coliving_platform.domain.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    """Create all tables (for local dev). Use Alembic for production migrations."""
    await create_tables(engine)
