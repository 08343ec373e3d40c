"""Generation worker: dispatches PENDING requests in the background.

Polls for PENDING generation requests, hands each one to the orchestrator in
its own asyncio task, and keeps polling while those tasks wait on providers.

Recovery on startup:
- PROCESSING requests with a provider_task_id are resumed (polling only; the
  provider job is not dispatched again)
- PROCESSING requests without one were interrupted mid-dispatch. The provider
  may or may not have accepted them, so they are failed rather than re-sent.

Each request runs independently: one request's failure never affects another.
Claims use FOR UPDATE SKIP LOCKED to spread work across workers, and the
orchestrator's conditional PENDING → PROCESSING write makes sure only one of
them actually dispatches.
"""

import asyncio
from typing import Awaitable, Callable
from uuid import UUID

import structlog

from unigen.core.config import Settings
from unigen.services.generation.orchestrator import TaskOrchestrator

logger = structlog.get_logger(__name__)

ERROR_BACKOFF_SECONDS = 5

InFlight = dict[UUID, asyncio.Task]


async def run_request(
    operation: Callable[[UUID], Awaitable[object]],
    request_id: UUID,
) -> None:
    """Run one orchestrator operation, logging instead of raising.

    Args:
        operation: orchestrator.process or orchestrator.resume
        request_id: Request to drive
    """
    try:
        await operation(request_id)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(
            "worker.request_failed",
            request_id=str(request_id),
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )


def spawn(
    in_flight: InFlight,
    operation: Callable[[UUID], Awaitable[object]],
    request_id: UUID,
) -> asyncio.Task:
    """Start a tracked task; it removes itself from in_flight when done."""
    task = asyncio.create_task(run_request(operation, request_id))
    in_flight[request_id] = task

    def _done(finished: asyncio.Task) -> None:
        if in_flight.get(request_id) is finished:
            del in_flight[request_id]

    task.add_done_callback(_done)
    return task


async def recover_requests(orchestrator: TaskOrchestrator, in_flight: InFlight) -> None:
    """Resume in-flight provider jobs and fail interrupted dispatches.

    Args:
        orchestrator: Orchestrator whose UoW factory is used for the queries
        in_flight: Registry the resumed polling tasks are added to
    """
    async with await orchestrator.uow_factory() as uow:
        jobs = await uow.generations.get_in_flight_jobs()
        orphaned = await uow.generations.get_orphaned()

    for request in orphaned:
        await orchestrator.fail_orphan(request.id)

    for request in jobs:
        spawn(in_flight, orchestrator.resume, request.id)

    if jobs or orphaned:
        logger.info("worker.recovery", resumed_jobs=len(jobs), failed_orphans=len(orphaned))


async def process_batch(
    orchestrator: TaskOrchestrator,
    settings: Settings,
    in_flight: InFlight,
) -> int:
    """Claim PENDING requests up to the free concurrency and start them.

    Returns:
        Number of requests started
    """
    free_slots = settings.worker_max_concurrency - len(in_flight)
    if free_slots <= 0:
        return 0

    async with await orchestrator.uow_factory() as uow:
        requests = await uow.generations.get_pending_for_dispatch(
            limit=min(settings.worker_batch_size, free_slots)
        )

    started = 0
    for request in requests:
        # Claimed on an earlier tick and not yet marked PROCESSING
        if request.id in in_flight:
            continue
        spawn(in_flight, orchestrator.process, request.id)
        started += 1

    if started:
        logger.debug("worker.batch_started", started=started, in_flight=len(in_flight))
    return started


async def run_generation_worker(orchestrator: TaskOrchestrator, settings: Settings) -> None:
    """Main worker loop.

    Workflow:
    1. Run startup recovery
    2. Claim and start a batch every WORKER_POLL_INTERVAL_SECONDS
    3. Back off on unexpected errors
    4. On cancellation, cancel running requests and wait for them

    Args:
        orchestrator: Drives individual requests
        settings: Poll interval, batch size and concurrency limit
    """
    in_flight: InFlight = {}
    await recover_requests(orchestrator, in_flight)

    logger.info(
        "worker.started",
        poll_interval=settings.worker_poll_interval_seconds,
        batch_size=settings.worker_batch_size,
        max_concurrency=settings.worker_max_concurrency,
    )

    try:
        while True:
            try:
                await process_batch(orchestrator, settings, in_flight)
                await asyncio.sleep(settings.worker_poll_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    except asyncio.CancelledError:
        tasks = list(in_flight.values())
        logger.info("worker.stopped", cancelled_requests=len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
