"""Database session factory setup."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def create_engine(db_url: str, pool_size: int = 50) -> AsyncEngine:
    """Create the async engine for the configured database.

    SQLite (used by the test suite and local tooling) does not accept
    queue pool arguments, so pooling options are only passed for server databases.
    """
    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=False)

    return create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,  # No overflow beyond pool_size
        pool_pre_ping=True,  # Verify connections before using
        echo=False,  # Don't log SQL queries (use structlog instead)
    )


def setup_db_session(db_url: str, pool_size: int = 50) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database connection URL (postgresql+psycopg://... or sqlite+aiosqlite://...)
        pool_size: Maximum number of connections in the pool (default: 50)

    Returns:
        Async session factory for creating database sessions
    """
    engine = create_engine(db_url, pool_size=pool_size)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Records are handed out detached after commit
    )

    return session_factory
