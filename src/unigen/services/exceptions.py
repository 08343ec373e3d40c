"""Service error hierarchy for generation dispatch.

This module defines the closed error taxonomy that drives retry decisions:
- ErrorKind: the semantic kinds, each with a fixed retryability
- GenerationError: base for all classified errors
- TransientError: retryable errors (network, rate limits, provider outages)
- PermanentError: non-retryable errors (authentication, validation, timeouts)

Concrete subclasses pin one kind each. Instances may narrow retryability
(never widen it), e.g. a malformed 200 response classified as PROVIDER_ERROR
must not be re-sent.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Semantic error kinds surfaced by the dispatch pipeline."""

    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    S3_UPLOAD_FAILED = "S3_UPLOAD_FAILED"
    TASK_TIMEOUT = "TASK_TIMEOUT"
    TASK_FAILED = "TASK_FAILED"
    TASK_CANCELLED = "TASK_CANCELLED"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_KINDS


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMITED,
        ErrorKind.PROVIDER_ERROR,
        ErrorKind.PROVIDER_UNAVAILABLE,
        ErrorKind.PROVIDER_TIMEOUT,
        ErrorKind.S3_UPLOAD_FAILED,
    }
)


class GenerationError(Exception):
    """Base exception for all classified service errors."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        retry_after: float | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.retry_after = retry_after
        # Per-instance override may only turn retries off
        self._retryable_override = retryable

    @property
    def retryable(self) -> bool:
        if self._retryable_override is False:
            return False
        return self.kind.retryable

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the audit payload."""
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, message={self.message!r})"


class TransientError(GenerationError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Provider 5xx responses
    - Storage upload failures
    """

    kind = ErrorKind.PROVIDER_ERROR


class PermanentError(GenerationError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400, 422)
    - Exhausted credits (402)
    - Configuration errors
    """

    kind = ErrorKind.INTERNAL_ERROR


# Validation errors (raised before any provider call)
class InvalidRequestError(PermanentError):
    """Prompt or input images failed validation."""

    kind = ErrorKind.INVALID_REQUEST


class InvalidParametersError(PermanentError):
    """Output count or a known parameter is out of range."""

    kind = ErrorKind.INVALID_PARAMETERS


class ProviderNotFoundError(InvalidRequestError):
    """No active provider serves the requested model identifier."""


class RequestNotFoundError(InvalidRequestError):
    """Generation request does not exist (or is soft-deleted)."""


class DeletionNotAllowedError(InvalidRequestError):
    """Soft delete attempted on a request that is not terminal."""


class CancellationNotAllowedError(InvalidRequestError):
    """Cancel attempted on a request that already reached a terminal state."""


# Provider errors
class AuthenticationError(PermanentError):
    """Authentication failure (401, 403)."""

    kind = ErrorKind.AUTHENTICATION_FAILED


class QuotaExceededError(PermanentError):
    """Provider credits or quota exhausted (402)."""

    kind = ErrorKind.QUOTA_EXCEEDED


class RateLimitedError(TransientError):
    """Rate limit exceeded (429)."""

    kind = ErrorKind.RATE_LIMITED


class ProviderError(TransientError):
    """Provider failed to serve the call (5xx, transport errors)."""

    kind = ErrorKind.PROVIDER_ERROR


class ProviderUnavailableError(TransientError):
    """Provider could not be reached (connection refused, DNS failure)."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE


class ProviderTimeoutError(TransientError):
    """Provider call exceeded its per-call deadline."""

    kind = ErrorKind.PROVIDER_TIMEOUT


class S3UploadError(TransientError):
    """Result Transfer failed to store an artifact."""

    kind = ErrorKind.S3_UPLOAD_FAILED


# Task lifecycle errors
class TaskTimeoutError(PermanentError):
    """Async task did not reach a terminal state within the polling ceiling."""

    kind = ErrorKind.TASK_TIMEOUT


class TaskFailedError(PermanentError):
    """Provider reported an explicit task failure."""

    kind = ErrorKind.TASK_FAILED


class TaskCancelledError(PermanentError):
    """Request was cancelled while in flight."""

    kind = ErrorKind.TASK_CANCELLED


class InternalError(PermanentError):
    """Configuration error or unrecognized failure."""

    kind = ErrorKind.INTERNAL_ERROR


ERROR_CLASSES: dict[ErrorKind, type[GenerationError]] = {
    ErrorKind.INVALID_REQUEST: InvalidRequestError,
    ErrorKind.INVALID_PARAMETERS: InvalidParametersError,
    ErrorKind.AUTHENTICATION_FAILED: AuthenticationError,
    ErrorKind.QUOTA_EXCEEDED: QuotaExceededError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.PROVIDER_ERROR: ProviderError,
    ErrorKind.PROVIDER_UNAVAILABLE: ProviderUnavailableError,
    ErrorKind.PROVIDER_TIMEOUT: ProviderTimeoutError,
    ErrorKind.S3_UPLOAD_FAILED: S3UploadError,
    ErrorKind.TASK_TIMEOUT: TaskTimeoutError,
    ErrorKind.TASK_FAILED: TaskFailedError,
    ErrorKind.TASK_CANCELLED: TaskCancelledError,
    ErrorKind.INTERNAL_ERROR: InternalError,
}


def error_for_kind(kind: ErrorKind, message: str, **kwargs: Any) -> GenerationError:
    """Build the concrete error class for a kind."""
    return ERROR_CLASSES[kind](message, **kwargs)
