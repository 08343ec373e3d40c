"""Generation request API endpoints.

- POST /api/generations - Validate and enqueue a request (202), or run it inline with ?wait=true
- GET /api/generations - List requests with status/provider filters
- GET /api/generations/{request_id} - Status projection of one request
- POST /api/generations/{request_id}/cancel - Cancel a PENDING or PROCESSING request
- DELETE /api/generations/{request_id} - Soft-delete a terminal request

An optional X-API-Key header attributes requests to a caller; requests created
with one key are invisible to other keys.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Body, Depends, Query, Response, status
from pydantic import BaseModel, Field

from unigen.api.dependencies import get_client_key, get_orchestrator, to_http_exception
from unigen.models.generation_request import GenerationRequest, GenerationStatus
from unigen.services.exceptions import GenerationError
from unigen.services.generation.orchestrator import TaskOrchestrator
from unigen.services.generation.types import GenerationArtifact

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/generations", tags=["generations"])


# Response Models


class GenerationResponse(BaseModel):
    """Status projection of a generation request."""

    id: UUID
    status: GenerationStatus
    model_identifier: str
    results: list[GenerationArtifact] | None = None
    error_message: str | None = None
    error_kind: str | None = None
    progress: int | None = Field(default=None, ge=0, le=100)
    provider_task_id: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None

    @classmethod
    def from_request(cls, request: GenerationRequest) -> "GenerationResponse":
        return cls(
            id=request.id,
            status=request.status,
            model_identifier=request.model_identifier,
            results=request.artifacts if request.results is not None else None,
            error_message=request.error_message,
            error_kind=request.error_kind,
            progress=request.progress,
            provider_task_id=request.provider_task_id,
            created_at=request.created_at,
            updated_at=request.updated_at,
            completed_at=request.completed_at,
            duration_ms=request.duration_ms,
        )


class GenerationListResponse(BaseModel):
    items: list[GenerationResponse]
    total: int
    limit: int
    offset: int


# Endpoints


@router.post(
    "",
    response_model=GenerationResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={200: {"description": "Processed inline (?wait=true)"}},
)
async def create_generation(
    response: Response,
    payload: dict[str, Any] = Body(...),
    wait: bool = Query(default=False, description="Dispatch inline and return the final state"),
    client_key: str | None = Depends(get_client_key),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> GenerationResponse:
    """Create a generation request.

    The body is validated before anything is persisted; validation failures
    return 400 with one entry per problem under detail.details.errors.

    Returns:
        202 with the PENDING projection (picked up by the worker), or 200 with
        the terminal projection when wait=true
    """
    try:
        if wait:
            request = await orchestrator.run(payload, client_key=client_key)
            response.status_code = status.HTTP_200_OK
        else:
            request = await orchestrator.submit(payload, client_key=client_key)
    except GenerationError as e:
        logger.info("api.generation.rejected", kind=e.kind.value, error=e.message)
        raise to_http_exception(e) from e

    return GenerationResponse.from_request(request)


@router.get("", response_model=GenerationListResponse)
async def list_generations(
    status_filter: GenerationStatus | None = Query(default=None, alias="status"),
    provider_id: UUID | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    client_key: str | None = Depends(get_client_key),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> GenerationListResponse:
    requests, total = await orchestrator.list_requests(
        status=status_filter,
        provider_id=provider_id,
        client_key=client_key,
        limit=limit,
        offset=offset,
    )
    return GenerationListResponse(
        items=[GenerationResponse.from_request(request) for request in requests],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{request_id}", response_model=GenerationResponse)
async def get_generation(
    request_id: UUID,
    client_key: str | None = Depends(get_client_key),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> GenerationResponse:
    try:
        request = await orchestrator.get(request_id, client_key=client_key)
    except GenerationError as e:
        raise to_http_exception(e) from e
    return GenerationResponse.from_request(request)


@router.post("/{request_id}/cancel", response_model=GenerationResponse)
async def cancel_generation(
    request_id: UUID,
    client_key: str | None = Depends(get_client_key),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> GenerationResponse:
    """Cancel a request; 409 if it already reached a terminal state."""
    try:
        request = await orchestrator.cancel(request_id, client_key=client_key)
    except GenerationError as e:
        raise to_http_exception(e) from e
    return GenerationResponse.from_request(request)


@router.delete("/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_generation(
    request_id: UUID,
    client_key: str | None = Depends(get_client_key),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Soft-delete a terminal request; 409 while it is PENDING or PROCESSING."""
    try:
        await orchestrator.delete(request_id, client_key=client_key)
    except GenerationError as e:
        raise to_http_exception(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)
