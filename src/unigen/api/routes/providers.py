"""Provider catalog API endpoints (read-only).

- GET /api/providers - Configured providers (?active_only=true to hide disabled ones)
- GET /api/providers/adapters - Registered adapters and their limits
- GET /api/providers/{model_identifier} - One provider by client-facing model name

Credentials are never returned; has_api_key reports whether one is stored.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from unigen.core.dependencies import get_uow
from unigen.models.provider import GenerationType, Provider
from unigen.services.generation.adapters.registry import available_adapters
from unigen.uow import UnitOfWork

router = APIRouter(prefix="/api/providers", tags=["providers"])


class ProviderResponse(BaseModel):
    id: UUID
    name: str
    model_identifier: str
    adapter_name: str
    generation_type: GenerationType
    is_active: bool
    has_api_key: bool
    upload_to_s3: bool
    call_count: int
    created_at: datetime

    @classmethod
    def from_provider(cls, provider: Provider) -> "ProviderResponse":
        return cls(
            id=provider.id,
            name=provider.name,
            model_identifier=provider.model_identifier,
            adapter_name=provider.adapter_name,
            generation_type=provider.generation_type,
            is_active=provider.is_active,
            has_api_key=bool(provider.auth_key),
            upload_to_s3=provider.upload_to_s3,
            call_count=provider.call_count,
            created_at=provider.created_at,
        )


class AdapterInfo(BaseModel):
    name: str
    class_name: str
    supports_polling: bool
    max_input_images: int
    max_outputs: int


@router.get("", response_model=list[ProviderResponse])
async def list_providers(
    active_only: bool = Query(default=False),
    uow: UnitOfWork = Depends(get_uow),
) -> list[ProviderResponse]:
    providers = await uow.providers.list_providers(active_only=active_only)
    return [ProviderResponse.from_provider(provider) for provider in providers]


@router.get("/adapters", response_model=list[AdapterInfo])
async def list_adapters() -> list[AdapterInfo]:
    return [AdapterInfo.model_validate(info) for info in available_adapters()]


@router.get("/{model_identifier}", response_model=ProviderResponse)
async def get_provider(
    model_identifier: str,
    uow: UnitOfWork = Depends(get_uow),
) -> ProviderResponse:
    provider = await uow.providers.get_by_model_identifier(model_identifier)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider '{model_identifier}' not found",
        )
    return ProviderResponse.from_provider(provider)
