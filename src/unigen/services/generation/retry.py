"""Retry engine with bounded exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from pydantic import BaseModel, Field, field_validator

from unigen.services.generation.error_classifier import classify_error, parse_retry_after_seconds

logger = structlog.get_logger(__name__)

T = TypeVar("T")

__all__ = [
    "DEFAULT_RETRY_POLICY",
    "HTTP_RETRY_POLICY",
    "RetryEngine",
    "RetryPolicy",
    "parse_retry_after_seconds",
]


class RetryPolicy(BaseModel):
    """Retry policy configuration.

    Args:
        max_attempts: Maximum number of attempts (including the initial call)
        initial_delay: Delay in seconds before the first retry
        max_delay: Maximum delay in seconds (caps exponential growth)
        backoff_multiplier: Growth factor between consecutive delays
        jitter: Jitter as fraction of delay (0.25 = ±25% randomization)
    """

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.25, ge=0.0, le=1.0)

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info) -> float:
        """Ensure max_delay >= initial_delay."""
        initial = info.data.get("initial_delay", 1.0)
        if v < initial:
            raise ValueError("max_delay must be >= initial_delay")
        return v

    def compute_delay(self, attempt: int) -> float:
        """Compute retry delay with exponential backoff and jitter.

        Args:
            attempt: Attempt number that just failed (1-indexed)

        Returns:
            Delay in seconds before the next attempt
        """
        delay: float = min(
            self.max_delay, self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        )
        if self.jitter > 0:
            spread: float = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay


DEFAULT_RETRY_POLICY = RetryPolicy()

# Lower-level HTTP work (downloads, uploads) backs off for at most 10 seconds
HTTP_RETRY_POLICY = RetryPolicy(max_delay=10.0)


class RetryEngine:
    """Executes an async operation under a RetryPolicy.

    Every failure goes through the error classifier. Non-retryable errors and
    the last failed attempt propagate the classified error, chained to the
    original exception. The engine holds no per-call state, so one instance
    can be shared by any number of concurrent requests.

    Example:
        engine = RetryEngine(settings.dispatch_retry_policy)
        result = await engine.run(
            lambda: adapter.dispatch(request),
            operation_name="dispatch",
            request_id=str(request.id),
        )
    """

    def __init__(
        self,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.policy = policy
        self._sleep = sleep

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Backoff delay after a failed attempt, raised to any provider hint."""
        delay = self.policy.compute_delay(attempt)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str = "operation",
        **log_context: Any,
    ) -> T:
        """Run the operation until it succeeds or retrying stops.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            operation_name: Name used in log events
            **log_context: Extra key/value pairs bound to every log event

        Returns:
            The operation's result

        Raises:
            GenerationError: Classified error of the final failed attempt
        """
        log = logger.bind(operation=operation_name, **log_context)
        max_attempts = self.policy.max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                classified = classify_error(e)

                if not classified.retryable:
                    log.warning(
                        "retry.non_retryable",
                        attempt=attempt,
                        kind=classified.kind.value,
                        error=classified.message,
                    )
                    classified.details.setdefault("attempts", attempt)
                    if classified is e:
                        raise
                    raise classified from e

                if attempt >= max_attempts:
                    log.error(
                        "retry.exhausted",
                        attempt=attempt,
                        max_attempts=max_attempts,
                        kind=classified.kind.value,
                        error=classified.message,
                    )
                    classified.details.setdefault("attempts", attempt)
                    if classified is e:
                        raise
                    raise classified from e

                delay = self.delay_for(attempt, classified.retry_after)
                log.info(
                    "retry.scheduled",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    kind=classified.kind.value,
                    delay_seconds=round(delay, 3),
                    error=classified.message,
                )
                await self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise RuntimeError("retry loop exited without result")
