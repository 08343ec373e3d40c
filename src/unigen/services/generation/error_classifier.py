"""Error classification for provider calls.

Maps raw exceptions from httpx, the Replicate SDK and the network layer into
the closed GenerationError taxonomy. Anything unrecognized becomes a
non-retryable INTERNAL_ERROR so unknown conditions fail closed.
"""

import asyncio
import socket
from typing import Mapping

import httpx
from replicate.exceptions import ReplicateError as ReplicateAPIError

from unigen.services.exceptions import (
    AuthenticationError,
    GenerationError,
    InternalError,
    InvalidRequestError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    QuotaExceededError,
    RateLimitedError,
)

_QUOTA_MARKERS = ("credit",)
_UNREACHABLE_MARKERS = (
    "connection refused",
    "econnrefused",
    "enotfound",
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
)


def classify_http_status(
    status_code: int,
    message: str,
    headers: Mapping[str, str] | None = None,
) -> GenerationError:
    """Classify an HTTP error response.

    Evaluation order:
        - 401/403 → AUTHENTICATION_FAILED
        - 429 → RATE_LIMITED (with Retry-After hint)
        - 402 or a message mentioning credits → QUOTA_EXCEEDED
        - 400/422 → INVALID_REQUEST
        - 408 → PROVIDER_TIMEOUT
        - 5xx (503/504 included) → PROVIDER_ERROR
        - anything else → INTERNAL_ERROR
    """
    details = {"status_code": status_code}
    lowered = message.lower()

    if status_code in (401, 403):
        return AuthenticationError(
            f"Authentication failed ({status_code}): {message}", details=details
        )

    if status_code == 429:
        retry_after = parse_retry_after_seconds((headers or {}).get("retry-after"))
        return RateLimitedError(
            f"Rate limit exceeded: {message}", details=details, retry_after=retry_after
        )

    if status_code == 402 or any(marker in lowered for marker in _QUOTA_MARKERS):
        return QuotaExceededError(f"Quota exceeded ({status_code}): {message}", details=details)

    if status_code in (400, 422):
        return InvalidRequestError(
            f"Provider rejected request ({status_code}): {message}", details=details
        )

    if status_code == 408:
        return ProviderTimeoutError(f"Provider request timeout: {message}", details=details)

    if 500 <= status_code < 600:
        return ProviderError(f"Provider error ({status_code}): {message}", details=details)

    return InternalError(
        f"Unexpected provider response ({status_code}): {message}", details=details
    )


def parse_retry_after_seconds(value: str | None) -> float | None:
    """Parse Retry-After header value to seconds.

    Handles numeric seconds format only (not HTTP-date format).

    Args:
        value: Retry-After header value

    Returns:
        Seconds to wait, or None if invalid or not provided
    """
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


def _response_message(response: httpx.Response) -> str:
    try:
        text = response.text
    except httpx.ResponseNotRead:
        text = ""
    return text[:500] or response.reason_phrase


def _is_unreachable(exception: BaseException) -> bool:
    if isinstance(exception, (ConnectionRefusedError, socket.gaierror)):
        return True
    cause = exception.__cause__ or exception.__context__
    if cause is not None and isinstance(cause, (ConnectionRefusedError, socket.gaierror)):
        return True
    lowered = str(exception).lower()
    return any(marker in lowered for marker in _UNREACHABLE_MARKERS)


def classify_error(exception: BaseException) -> GenerationError:
    """Classify exception into the error taxonomy.

    Args:
        exception: Original exception from an adapter, SDK or network layer

    Returns:
        Classified GenerationError instance (the same object if already classified)
    """
    if isinstance(exception, GenerationError):
        return exception

    error_message = str(exception) or type(exception).__name__

    # HTTP error responses
    if isinstance(exception, httpx.HTTPStatusError):
        response = exception.response
        return classify_http_status(
            response.status_code, _response_message(response), response.headers
        )

    # Replicate SDK errors carry the HTTP status when the API rejected the call
    if isinstance(exception, ReplicateAPIError):
        status = getattr(exception, "status", None)
        if isinstance(status, int):
            return classify_http_status(status, error_message)
        return ProviderError(f"Replicate error: {error_message}")

    # Transport-level errors
    if isinstance(exception, httpx.TimeoutException):
        return ProviderError(f"Network timeout: {error_message}")

    if isinstance(exception, httpx.ConnectError):
        if _is_unreachable(exception):
            return ProviderUnavailableError(f"Provider unreachable: {error_message}")
        return ProviderError(f"Connection error: {error_message}")

    if isinstance(exception, httpx.TransportError):
        return ProviderError(f"Network error: {error_message}")

    # Per-call deadline (asyncio.wait_for) and builtin timeouts
    if isinstance(exception, (TimeoutError, asyncio.TimeoutError)):
        return ProviderTimeoutError(f"Provider call timed out: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        if _is_unreachable(exception):
            return ProviderUnavailableError(f"Provider unreachable: {error_message}")
        return ProviderError(f"Connection error: {error_message}")

    # Default: fail closed
    return InternalError(
        f"Unexpected error: {error_message}", details={"exception": type(exception).__name__}
    )
