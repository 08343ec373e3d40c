"""Repository layer for UniGen.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from unigen.repositories.generation_request import GenerationRequestRepository
from unigen.repositories.provider import ProviderRepository

__all__ = [
    "GenerationRequestRepository",
    "ProviderRepository",
]
