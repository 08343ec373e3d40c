"""Closed set of adapter kinds and name resolution."""

from enum import Enum

from unigen.services.exceptions import InternalError


class AdapterKind(str, Enum):
    """Every adapter the dispatcher knows how to build."""

    FLUX = "flux"
    OPENAI_IMAGE = "openai_image"
    KLING = "kling"
    REPLICATE = "replicate"
    ELEVENLABS_TTS = "elevenlabs_tts"


# Class-style names stored by older provider rows
LEGACY_ADAPTER_NAMES: dict[str, AdapterKind] = {
    "FluxAdapter": AdapterKind.FLUX,
    "OpenAIImageAdapter": AdapterKind.OPENAI_IMAGE,
    "OpenAIAdapter": AdapterKind.OPENAI_IMAGE,
    "KlingAdapter": AdapterKind.KLING,
    "ReplicateAdapter": AdapterKind.REPLICATE,
    "ElevenLabsTTSAdapter": AdapterKind.ELEVENLABS_TTS,
}


def resolve_adapter_kind(name: str | AdapterKind) -> AdapterKind:
    """Resolve a configured adapter name to its kind.

    Accepts an AdapterKind, its value (case-insensitive) or a legacy class name.

    Raises:
        InternalError: For any unrecognized name; there is no default adapter
    """
    if isinstance(name, AdapterKind):
        return name

    candidate = (name or "").strip()
    if candidate in LEGACY_ADAPTER_NAMES:
        return LEGACY_ADAPTER_NAMES[candidate]

    try:
        return AdapterKind(candidate.lower())
    except ValueError:
        known = ", ".join(kind.value for kind in AdapterKind)
        raise InternalError(
            f"Unknown adapter '{name}'. Known adapters: {known}",
            details={"adapter_name": name},
        ) from None
