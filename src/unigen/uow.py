"""Unit of Work pattern for UniGen.

Provides transaction management with automatic commit/rollback and access to all repositories.
"""

from typing import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unigen.repositories.generation_request import GenerationRequestRepository
from unigen.repositories.provider import ProviderRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    Manages database transactions and provides access to all repositories.
    Use as async context manager for automatic commit/rollback.

    Example:
        async with await uow_factory() as uow:
            provider = await uow.providers.get_active_by_model_identifier("flux-pro")
            request = await uow.generations.get_by_id(request_id)
            # Automatically commits on successful exit
            # Automatically rolls back on exception
    """

    def __init__(self, session: AsyncSession):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

        # Instantiate all repositories with the session
        self.generations = GenerationRequestRepository(session)
        self.providers = ProviderRepository(session)

    async def __aenter__(self):
        """Enter async context manager.

        Returns:
            self: UnitOfWork instance with all repositories available
        """
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager with automatic commit/rollback.

        The session is always closed, so entities handed out by repositories
        are detached once the block exits.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        # Never swallow the exception
        return False


UoWFactory = Callable[[], Awaitable[UnitOfWork]]


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]) -> UoWFactory:
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url, pool_size=50)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            await uow.providers.add(provider)
    """

    async def _create_uow() -> UnitOfWork:
        """Create a new UnitOfWork instance with a new session."""
        session = session_factory()
        return UnitOfWork(session)

    return _create_uow
