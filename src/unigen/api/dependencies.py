"""FastAPI dependencies and error mapping shared by the API routers."""

from typing import Annotated

from fastapi import Header, HTTPException, Request, status

from unigen.services.exceptions import (
    CancellationNotAllowedError,
    DeletionNotAllowedError,
    GenerationError,
    InvalidParametersError,
    InvalidRequestError,
    ProviderNotFoundError,
    RequestNotFoundError,
)
from unigen.services.generation.orchestrator import TaskOrchestrator


def get_orchestrator(request: Request) -> TaskOrchestrator:
    """Get the TaskOrchestrator built in the app lifespan."""
    return request.app.state.orchestrator


def get_client_key(x_api_key: Annotated[str | None, Header()] = None) -> str | None:
    """Optional caller key from X-API-Key, used for attribution and ownership only."""
    return x_api_key or None


# Order matters: subclasses before their bases
_STATUS_BY_ERROR: tuple[tuple[type[GenerationError], int], ...] = (
    (RequestNotFoundError, status.HTTP_404_NOT_FOUND),
    (ProviderNotFoundError, status.HTTP_404_NOT_FOUND),
    (DeletionNotAllowedError, status.HTTP_409_CONFLICT),
    (CancellationNotAllowedError, status.HTTP_409_CONFLICT),
    (InvalidParametersError, status.HTTP_400_BAD_REQUEST),
    (InvalidRequestError, status.HTTP_400_BAD_REQUEST),
)


def status_code_for(error: GenerationError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_cls):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: GenerationError) -> HTTPException:
    """Convert a classified service error into an HTTPException.

    The response detail carries kind, message and details (field errors for
    validation failures) so clients can act on the error kind.
    """
    return HTTPException(
        status_code=status_code_for(error),
        detail={
            "kind": error.kind.value,
            "message": error.message,
            "details": error.details,
        },
    )
