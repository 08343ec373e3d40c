"""GenerationRequest repository.

Provides data access methods for GenerationRequest entities with worker
coordination via FOR UPDATE SKIP LOCKED and status-guarded conditional writes.
"""

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unigen.core.timezone import utcnow
from unigen.models.generation_request import (
    TERMINAL_STATUSES,
    GenerationRequest,
    GenerationStatus,
)


class GenerationRequestRepository:
    """Repository for GenerationRequest entities.

    State transitions are written with a single UPDATE guarded by the expected
    prior status, so a concurrent cancel or delete is never overwritten by a
    late terminal write.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, request: GenerationRequest) -> GenerationRequest:
        """Persist new generation request to database.

        Args:
            request: GenerationRequest entity to persist

        Returns:
            Persisted request
        """
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_by_id(
        self, request_id: UUID, include_deleted: bool = False
    ) -> GenerationRequest | None:
        """Retrieve generation request by UUID.

        Args:
            request_id: Request's unique identifier
            include_deleted: Also return soft-deleted requests

        Returns:
            GenerationRequest if found, None otherwise
        """
        query = select(GenerationRequest).where(GenerationRequest.id == request_id)  # type: ignore[arg-type]
        if not include_deleted:
            query = query.where(GenerationRequest.deleted_at.is_(None))  # type: ignore[union-attr]
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_status(self, request_id: UUID) -> GenerationStatus | None:
        """Read only the current status (None if missing or soft-deleted).

        Used by the poller's per-tick cancellation check.
        """
        result = await self.session.execute(
            select(GenerationRequest.status).where(
                GenerationRequest.id == request_id,  # type: ignore[arg-type]
                GenerationRequest.deleted_at.is_(None),  # type: ignore[union-attr]
            )
        )
        return result.scalar_one_or_none()

    async def list_requests(
        self,
        status: GenerationStatus | None = None,
        provider_id: UUID | None = None,
        client_key_hash: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[GenerationRequest], int]:
        """List non-deleted requests, newest first.

        Args:
            status: Optional status filter
            provider_id: Optional provider filter
            client_key_hash: Optional owner filter
            limit: Page size
            offset: Number of rows to skip

        Returns:
            Tuple of (page of requests, total matching count)
        """
        conditions = [GenerationRequest.deleted_at.is_(None)]  # type: ignore[union-attr]
        if status is not None:
            conditions.append(GenerationRequest.status == status)  # type: ignore[arg-type]
        if provider_id is not None:
            conditions.append(GenerationRequest.provider_id == provider_id)  # type: ignore[arg-type]
        if client_key_hash is not None:
            conditions.append(GenerationRequest.client_key_hash == client_key_hash)  # type: ignore[arg-type]

        total_result = await self.session.execute(
            select(func.count()).select_from(GenerationRequest).where(*conditions)
        )
        total = total_result.scalar_one()

        result = await self.session.execute(
            select(GenerationRequest)
            .where(*conditions)
            .order_by(GenerationRequest.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def get_pending_for_dispatch(self, limit: int = 10) -> list[GenerationRequest]:
        """Retrieve requests waiting for dispatch with row-level locking.

        Uses FOR UPDATE SKIP LOCKED to ensure concurrent workers receive
        non-overlapping sets of requests. Orders by created_at ASC to
        process oldest requests first (FIFO).

        Query explanation:
        - WHERE status = 'PENDING' AND deleted_at IS NULL: Only undispatched requests
        - ORDER BY created_at ASC: Process oldest first
        - LIMIT: Batch size for worker
        - FOR UPDATE SKIP LOCKED: Lock rows, skip already locked ones

        Args:
            limit: Maximum number of requests to retrieve (default: 10)

        Returns:
            List of requests locked for this worker
        """
        result = await self.session.execute(
            select(GenerationRequest)
            .where(
                GenerationRequest.status == GenerationStatus.PENDING,  # type: ignore[arg-type]
                GenerationRequest.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .order_by(GenerationRequest.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def get_in_flight_jobs(self) -> list[GenerationRequest]:
        """PROCESSING requests that already hold a provider job handle."""
        result = await self.session.execute(
            select(GenerationRequest)
            .where(
                GenerationRequest.status == GenerationStatus.PROCESSING,  # type: ignore[arg-type]
                GenerationRequest.provider_task_id.is_not(None),  # type: ignore[union-attr]
                GenerationRequest.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .order_by(GenerationRequest.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def get_orphaned(self) -> list[GenerationRequest]:
        """PROCESSING requests without a job handle (dispatch interrupted by a crash)."""
        result = await self.session.execute(
            select(GenerationRequest).where(
                GenerationRequest.status == GenerationStatus.PROCESSING,  # type: ignore[arg-type]
                GenerationRequest.provider_task_id.is_(None),  # type: ignore[union-attr]
                GenerationRequest.deleted_at.is_(None),  # type: ignore[union-attr]
            )
        )
        return list(result.scalars().all())

    async def apply_transition(
        self, request: GenerationRequest, expected_status: GenerationStatus
    ) -> bool:
        """Persist a transition made on the entity, if the row is still in expected_status.

        The write is one UPDATE guarded by id, prior status and deleted_at IS NULL.
        The entity is detached from this session first so the ORM never flushes
        it unconditionally.

        Args:
            request: Entity after calling one of its mark_* methods
            expected_status: Status the row must still have for the write to apply

        Returns:
            True if the row was updated, False if it changed concurrently
        """
        if request in self.session:
            self.session.expunge(request)

        result = await self.session.execute(
            update(GenerationRequest)
            .where(
                GenerationRequest.id == request.id,  # type: ignore[arg-type]
                GenerationRequest.status == expected_status,  # type: ignore[arg-type]
                GenerationRequest.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .values(**request.transition_values())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def record_progress(self, request_id: UUID, progress: int) -> bool:
        """Store provider progress while the request is still PROCESSING."""
        result = await self.session.execute(
            update(GenerationRequest)
            .where(
                GenerationRequest.id == request_id,  # type: ignore[arg-type]
                GenerationRequest.status == GenerationStatus.PROCESSING,  # type: ignore[arg-type]
                GenerationRequest.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .values(progress=max(0, min(100, int(progress))), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def cancel(self, request: GenerationRequest) -> bool:
        """Cancel a non-terminal request.

        Raises:
            InvalidStateTransition: If the entity is already terminal

        Returns:
            True if cancelled, False if the row reached another state first
        """
        expected = request.status
        request.mark_cancelled()
        return await self.apply_transition(request, expected)

    async def soft_delete(self, request_id: UUID) -> bool:
        """Soft-delete a request, guarded by terminal status.

        Query:
            UPDATE generation_requests
            SET deleted_at = now()
            WHERE id = :id AND status IN ('SUCCESS', 'FAILED', 'CANCELLED')
              AND deleted_at IS NULL

        Returns:
            True if the row was deleted, False if missing, already deleted or not terminal
        """
        now = utcnow()
        result = await self.session.execute(
            update(GenerationRequest)
            .where(
                GenerationRequest.id == request_id,  # type: ignore[arg-type]
                GenerationRequest.status.in_(TERMINAL_STATUSES),  # type: ignore[attr-defined]
                GenerationRequest.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .values(deleted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
