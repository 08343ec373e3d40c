"""Immutable provider configuration snapshot.

Built from the Provider row each time a request is dispatched, so edits to a
provider take effect on the next dispatch and never alter one in flight.
"""

import os
import re
from typing import Mapping
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from unigen.models.provider import GenerationType, Provider
from unigen.services.generation.adapters.kinds import AdapterKind, resolve_adapter_kind

_ENV_KEY_SANITIZER = re.compile(r"[^A-Z0-9]+")


def api_key_env_var(model_identifier: str) -> str:
    """Environment variable holding a model's API key.

    Example:
        >>> api_key_env_var("flux-pro-1.1")
        'AI_PROVIDER_FLUX_PRO_1_1_API_KEY'
    """
    normalized = _ENV_KEY_SANITIZER.sub("_", model_identifier.upper()).strip("_")
    return f"AI_PROVIDER_{normalized}_API_KEY"


class ProviderConfig(BaseModel):
    """Everything an adapter needs to call its provider."""

    model_config = ConfigDict(frozen=True)

    provider_id: UUID
    name: str
    model_identifier: str
    adapter_kind: AdapterKind
    generation_type: GenerationType
    api_endpoint: str
    api_key: str | None = None
    model_version: str | None = None
    upload_to_s3: bool = False
    s3_path_prefix: str | None = None
    request_timeout: float = 60.0

    @classmethod
    def from_provider(
        cls,
        provider: Provider,
        request_timeout: float = 60.0,
        environ: Mapping[str, str] | None = None,
    ) -> "ProviderConfig":
        """Snapshot a provider row.

        The API key comes from the database first, then from
        AI_PROVIDER_<MODEL_IDENTIFIER>_API_KEY. The environment is read on every
        call; nothing is cached.

        Raises:
            InternalError: If the provider's adapter name is not registered
        """
        env = os.environ if environ is None else environ
        api_key = provider.auth_key or env.get(api_key_env_var(provider.model_identifier))

        return cls(
            provider_id=provider.id,
            name=provider.name,
            model_identifier=provider.model_identifier,
            adapter_kind=resolve_adapter_kind(provider.adapter_name),
            generation_type=provider.generation_type,
            api_endpoint=provider.api_endpoint.rstrip("/"),
            api_key=api_key or None,
            model_version=provider.model_version,
            upload_to_s3=provider.upload_to_s3,
            s3_path_prefix=provider.s3_path_prefix,
            request_timeout=request_timeout,
        )
