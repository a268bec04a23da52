"""Database session factory setup."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel


def setup_db_session(db_url: str, pool_size: int = 50) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database URL (postgresql+psycopg://... in production,
            sqlite+aiosqlite://... for tests and local runs)
        pool_size: Maximum number of connections in the pool (ignored for SQLite)

    Returns:
        Async session factory for creating database sessions
    """
    engine_kwargs: dict = {"echo": False}
    if db_url.startswith("sqlite"):
        # SQLite serializes writers; wait on the lock instead of failing fast
        engine_kwargs["connect_args"] = {"timeout": 30}
    else:
        engine_kwargs.update(
            pool_size=pool_size,
            max_overflow=0,
            pool_pre_ping=True,
        )

    engine = create_async_engine(db_url, **engine_kwargs)

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables registered on SQLModel metadata.

    Used for tests and local SQLite runs; PostgreSQL deployments use Alembic.
    """
    # Import registers the tables on the metadata
    import genflow.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
