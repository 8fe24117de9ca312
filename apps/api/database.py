"""
Database engine, session management, and declarative base.
"""

from typing import Any, AsyncGenerator, Dict, Optional, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


def _async_database_url(url: str) -> str:
    """Map a plain driver URL onto its asyncio driver."""
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///"):]
    return url


engine = create_async_engine(
    _async_database_url(settings.DATABASE_URL),
    pool_pre_ping=True,
    echo=False,  # Set to True for SQL debugging
)

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding an async database session."""
    async with async_session_maker() as session:
        yield session


async def insert_ignore_conflict(
    db: AsyncSession,
    model: Any,
    values: Dict[str, Any],
    *,
    conflict_columns: Sequence[str],
    returning: Optional[Any] = None,
) -> Optional[Any]:
    """
    Insert a row, doing nothing when it collides with a unique constraint.

    Returns the ``returning`` column of the inserted row, or ``None`` when the
    insert lost to an existing row. The uniqueness check happens inside the
    database, so concurrent callers cannot both win.
    """
    dialect = db.get_bind().dialect.name
    returning = returning if returning is not None else model.__table__.primary_key.columns.values()[0]

    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    else:
        raise NotImplementedError(f"insert_ignore_conflict does not support the {dialect} dialect")

    result = await db.execute(stmt.returning(returning))
    return result.scalar_one_or_none()

