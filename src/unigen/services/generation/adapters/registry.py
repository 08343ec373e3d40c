"""Adapter selector: explicit registry from AdapterKind to adapter class."""

import httpx

from unigen.services.generation.adapters.base import BaseAdapter
from unigen.services.generation.adapters.elevenlabs import ElevenLabsTTSAdapter
from unigen.services.generation.adapters.flux import FluxAdapter
from unigen.services.generation.adapters.kinds import AdapterKind, resolve_adapter_kind
from unigen.services.generation.adapters.kling import KlingAdapter
from unigen.services.generation.adapters.openai_image import OpenAIImageAdapter
from unigen.services.generation.adapters.replicate import ReplicateAdapter
from unigen.services.generation.provider_config import ProviderConfig
from unigen.services.generation.validation import ModelCapabilities

ADAPTER_REGISTRY: dict[AdapterKind, type[BaseAdapter]] = {
    AdapterKind.FLUX: FluxAdapter,
    AdapterKind.OPENAI_IMAGE: OpenAIImageAdapter,
    AdapterKind.KLING: KlingAdapter,
    AdapterKind.REPLICATE: ReplicateAdapter,
    AdapterKind.ELEVENLABS_TTS: ElevenLabsTTSAdapter,
}

__all__ = [
    "ADAPTER_REGISTRY",
    "AdapterKind",
    "adapter_class_for",
    "available_adapters",
    "capabilities_for",
    "create_adapter",
    "resolve_adapter_kind",
]


def adapter_class_for(kind: AdapterKind | str) -> type[BaseAdapter]:
    """Adapter class for a kind or configured name.

    Raises:
        InternalError: If the name is not registered
    """
    return ADAPTER_REGISTRY[resolve_adapter_kind(kind)]


def capabilities_for(kind: AdapterKind | str) -> ModelCapabilities:
    return adapter_class_for(kind).capabilities


def create_adapter(
    config: ProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseAdapter:
    """Build the adapter for a provider snapshot."""
    return adapter_class_for(config.adapter_kind)(config, transport=transport)


def available_adapters() -> list[dict[str, object]]:
    """Describe every registered adapter (used by the providers API and CLI)."""
    return [
        {
            "name": kind.value,
            "class_name": adapter_cls.__name__,
            "supports_polling": adapter_cls.supports_polling,
            "max_input_images": adapter_cls.capabilities.max_input_images,
            "max_outputs": adapter_cls.capabilities.max_outputs,
        }
        for kind, adapter_cls in ADAPTER_REGISTRY.items()
    ]
