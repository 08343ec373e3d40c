"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from unigen.models.generation_request import (
    GenerationRequest,
    GenerationStatus,
    InvalidStateTransition,
)
from unigen.models.provider import GenerationType, Provider

__all__ = [
    "GenerationRequest",
    "GenerationStatus",
    "GenerationType",
    "InvalidStateTransition",
    "Provider",
]
