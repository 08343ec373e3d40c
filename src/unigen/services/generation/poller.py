"""Async task poller for job-based adapters.

State machine: DISPATCHED → POLLING → {SUCCEEDED, FAILED, TIMED_OUT, CANCELLED}.

Each tick checks for cancellation, then the elapsed-time ceiling, then asks
the adapter for status through the retry engine. A tick whose retries are
exhausted on a retryable error only counts as a failed attempt; the attempt
and time ceilings are always fatal. Cancellation is cooperative: it is
observed between ticks and never interrupts an in-flight status call.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog
from pydantic import BaseModel, ConfigDict, Field

from unigen.services.exceptions import ErrorKind, GenerationError
from unigen.services.generation.adapters.base import BaseAdapter
from unigen.services.generation.retry import RetryEngine
from unigen.services.generation.types import GenerationArtifact, JobHandle, TaskStatus

logger = structlog.get_logger(__name__)

CancelCheck = Callable[[], Awaitable[bool]]
ProgressCallback = Callable[[int], Awaitable[Any]]


class PollState(str, Enum):
    DISPATCHED = "DISPATCHED"
    POLLING = "POLLING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


class PollResult(BaseModel):
    """Terminal outcome of a polling session."""

    model_config = ConfigDict(frozen=True)

    state: PollState
    attempts: int = Field(ge=0)
    elapsed_seconds: float = Field(ge=0)
    artifacts: list[GenerationArtifact] = Field(default_factory=list)
    error_detail: str | None = None
    error_kind: ErrorKind | None = None
    last_error: dict[str, Any] | None = None
    raw_response: dict[str, Any] | None = None


class TaskPoller:
    """Polls a provider job until it reaches a terminal state or a ceiling.

    Args:
        retry_engine: Wraps every status call (transient failures are retried per tick)
        max_attempts: Ceiling on status-check ticks
        max_duration: Ceiling on total elapsed seconds
        default_interval: Seconds between ticks when the handle suggests none
        sleep: Injected for tests
        clock: Monotonic clock, injected for tests
    """

    def __init__(
        self,
        retry_engine: RetryEngine,
        max_attempts: int = 180,
        max_duration: float = 1800.0,
        default_interval: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.retry_engine = retry_engine
        self.max_attempts = max_attempts
        self.max_duration = max_duration
        self.default_interval = default_interval
        self._sleep = sleep
        self._clock = clock

    async def poll(
        self,
        adapter: BaseAdapter,
        handle: JobHandle,
        is_cancelled: CancelCheck | None = None,
        on_progress: ProgressCallback | None = None,
        **log_context: Any,
    ) -> PollResult:
        """Run the polling loop.

        Args:
            adapter: Adapter that issued the handle
            handle: Provider job handle
            is_cancelled: Returns True once the owning request was cancelled or deleted
            on_progress: Receives provider-reported progress (0-100)

        Returns:
            PollResult in SUCCEEDED, FAILED, TIMED_OUT or CANCELLED

        Raises:
            GenerationError: Non-retryable status-check failure (e.g. authentication)
        """
        task_id = handle.provider_task_id
        interval = handle.poll_interval
        if interval is None:
            interval = self.default_interval
        log = logger.bind(provider_task_id=task_id, adapter=adapter.kind.value, **log_context)

        state = PollState.DISPATCHED
        started = self._clock()
        attempts = 0
        last_error: GenerationError | None = None

        log.info(
            "poller.started",
            state=state.value,
            interval_seconds=interval,
            max_attempts=self.max_attempts,
            max_duration_seconds=self.max_duration,
        )

        def result(new_state: PollState, **kwargs: Any) -> PollResult:
            elapsed = max(0.0, self._clock() - started)
            log.info(
                "poller.finished", state=new_state.value, attempts=attempts, elapsed_seconds=elapsed
            )
            return PollResult(
                state=new_state,
                attempts=attempts,
                elapsed_seconds=elapsed,
                last_error=last_error.to_dict() if last_error else None,
                **kwargs,
            )

        while attempts < self.max_attempts:
            if is_cancelled is not None and await is_cancelled():
                await self._cancel_remote(adapter, task_id, log)
                return result(PollState.CANCELLED)

            if self._clock() - started >= self.max_duration:
                return result(
                    PollState.TIMED_OUT,
                    error_detail=f"Task exceeded {self.max_duration:g}s polling ceiling",
                )

            state = PollState.POLLING
            attempts += 1

            try:
                status: TaskStatus = await self.retry_engine.run(
                    lambda: adapter.check_status(task_id),
                    operation_name="check_status",
                    provider_task_id=task_id,
                    poll_attempt=attempts,
                )
            except GenerationError as e:
                if not e.retryable:
                    raise
                # Transient failures exhausted for this tick only
                last_error = e
                log.warning(
                    "poller.tick_failed", attempt=attempts, kind=e.kind.value, error=e.message
                )
            else:
                last_error = None
                if status.terminal and status.success:
                    return result(
                        PollState.SUCCEEDED,
                        artifacts=status.artifacts,
                        raw_response=status.raw_response,
                    )
                if status.terminal:
                    return result(
                        PollState.FAILED,
                        error_detail=status.error_detail or "Provider reported failure",
                        error_kind=status.error_kind,
                        raw_response=status.raw_response,
                    )
                if status.progress is not None and on_progress is not None:
                    await on_progress(status.progress)
                log.debug("poller.tick", attempt=attempts, progress=status.progress)

            if attempts < self.max_attempts:
                await self._sleep(interval)

        return result(
            PollState.TIMED_OUT,
            error_detail=f"Task did not complete within {self.max_attempts} status checks",
        )

    async def _cancel_remote(self, adapter: BaseAdapter, task_id: str, log: Any) -> None:
        """Best-effort provider-side cancel; local cancellation never depends on it."""
        try:
            await adapter.cancel(task_id)
        except Exception as e:
            log.warning("poller.remote_cancel_failed", error=str(e), error_type=type(e).__name__)
