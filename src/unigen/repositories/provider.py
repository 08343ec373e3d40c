"""Provider repository."""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unigen.core.timezone import utcnow
from unigen.models.provider import Provider


class ProviderRepository:
    """Repository for Provider entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, provider: Provider) -> Provider:
        """Persist new provider to database.

        Args:
            provider: Provider entity to persist

        Returns:
            Persisted provider with generated ID
        """
        self.session.add(provider)
        await self.session.flush()
        return provider

    async def get_by_id(self, provider_id: UUID) -> Provider | None:
        result = await self.session.execute(select(Provider).where(Provider.id == provider_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_model_identifier(self, model_identifier: str) -> Provider | None:
        result = await self.session.execute(
            select(Provider).where(Provider.model_identifier == model_identifier)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_active_by_model_identifier(self, model_identifier: str) -> Provider | None:
        """Retrieve the active provider serving a model identifier.

        Args:
            model_identifier: Client-facing model name (e.g. "flux-pro")

        Returns:
            Provider if found and active, None otherwise
        """
        result = await self.session.execute(
            select(Provider).where(
                Provider.model_identifier == model_identifier,  # type: ignore[arg-type]
                Provider.is_active.is_(True),  # type: ignore[attr-defined]
            )
        )
        return result.scalar_one_or_none()

    async def list_providers(self, active_only: bool = False) -> list[Provider]:
        query = select(Provider).order_by(Provider.model_identifier.asc())  # type: ignore[attr-defined]
        if active_only:
            query = query.where(Provider.is_active.is_(True))  # type: ignore[attr-defined]
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def increment_call_count(self, provider_id: UUID) -> None:
        """Atomically bump the successful call counter."""
        await self.session.execute(
            update(Provider)
            .where(Provider.id == provider_id)  # type: ignore[arg-type]
            .values(call_count=Provider.call_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def set_active(self, provider_id: UUID, is_active: bool) -> bool:
        """Enable or disable a provider.

        Returns:
            True if the provider exists
        """
        result = await self.session.execute(
            update(Provider)
            .where(Provider.id == provider_id)  # type: ignore[arg-type]
            .values(is_active=is_active, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
