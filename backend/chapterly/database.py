"""
Chapterly Backend — Database Session Management
==================================================

What:  Async SQLAlchemy engine, session factory, and FastAPI dependency.
Why:   Centralizes all database connection logic in one place.
How:   Creates an async engine with connection pooling against the Supabase
       Postgres database, provides a session dependency that commits on
       success and rolls back on error.
Who:   Used by route handlers via FastAPI's dependency injection system.
When:  Engine is created at module import; sessions are created per-request.

Transactions:
    Every request runs in one transaction. The credit ledger relies on this:
    the account row is locked (SELECT ... FOR UPDATE) and written back inside
    the same transaction, so two concurrent unlocks for one account are
    serialized by Postgres rather than by anything in this process.
"""

from typing import Any, AsyncGenerator, Dict

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from chapterly.config import settings


def _engine_options(url: str) -> Dict[str, Any]:
    """Pool settings only apply to server databases (SQLite is used in tests)."""
    options: Dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )
    return options


engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))

# expire_on_commit=False: purchase flows commit mid-request and keep using rows
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    The tables themselves are owned by Supabase; metadata here is used to map
    rows and, in tests, to create an equivalent SQLite schema.
    """
    pass


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    How it works:
        1. Creates a new session from the factory
        2. Yields it to the route handler
        3. On success: commits the transaction
        4. On error: rolls back so no partial ledger write survives
        5. Always: closes the session (returns connection to pool)
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def dispose_engine() -> None:
    """Closes all pooled connections. Called during application shutdown."""
    await engine.dispose()


def insert_ignore(db: AsyncSession, model: Any, values: Dict[str, Any], index_elements=("id",)):
    """
    INSERT ... ON CONFLICT DO NOTHING for the session's dialect.

    Postgres in production, SQLite in tests; both support the clause but
    through dialect-specific constructs.
    """
    insert = sqlite_insert if db.get_bind().dialect.name == "sqlite" else pg_insert
    return insert(model).values(**values).on_conflict_do_nothing(index_elements=list(index_elements))
