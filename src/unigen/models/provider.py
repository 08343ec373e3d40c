"""Provider entity - one routable model behind a third-party generation API."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from unigen.core.timezone import utcnow


class GenerationType(str, Enum):
    """Media produced by a provider model."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class Provider(SQLModel, table=True):
    """Provider/model configuration read at dispatch time.

    adapter_name is stored as free text so that rows written by older
    deployments (class-style names such as "FluxAdapter") still load; it is
    resolved against the closed adapter registry when a request is dispatched.
    """

    __tablename__ = "providers"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=255)
    model_identifier: str = Field(max_length=255, unique=True, index=True)
    adapter_name: str = Field(max_length=100)
    generation_type: GenerationType = Field(default=GenerationType.IMAGE)
    api_endpoint: str = Field(max_length=500)
    auth_key: Optional[str] = Field(default=None, max_length=500)
    model_version: Optional[str] = Field(default=None, max_length=255)
    is_active: bool = Field(default=True, index=True)

    # Result Transfer
    upload_to_s3: bool = Field(default=False)
    s3_path_prefix: Optional[str] = Field(default=None, max_length=255)

    call_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
