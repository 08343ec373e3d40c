"""ElevenLabs text-to-speech adapter (synchronous)."""

import base64
from typing import Any

from unigen.services.exceptions import ProviderError
from unigen.services.generation.adapters.base import BaseAdapter
from unigen.services.generation.adapters.kinds import AdapterKind
from unigen.services.generation.parameters import extract_numeric_parameter
from unigen.services.generation.types import AdapterResult, ArtifactType
from unigen.services.generation.validation import (
    ModelCapabilities,
    ParameterRule,
    ValidatedRequest,
)

DEFAULT_VOICE_ID = "UgBBYS2sOqTuMpoF3BR0"
DEFAULT_MODEL_ID = "eleven_v3"
OUTPUT_FORMAT = "mp3_44100_128"


class ElevenLabsTTSAdapter(BaseAdapter):
    """ElevenLabs /v1/text-to-speech/{voice_id}.

    The provider answers with raw MP3 bytes, returned here as a data URI
    for Result Transfer to persist.
    """

    kind = AdapterKind.ELEVENLABS_TTS
    artifact_type = ArtifactType.AUDIO
    default_endpoint = "https://api.elevenlabs.io"
    capabilities = ModelCapabilities(
        max_prompt_length=3000,
        max_input_images=0,
        max_outputs=1,
        parameter_rules={
            "stability": ParameterRule(minimum=0, maximum=1),
            "similarity_boost": ParameterRule(minimum=0, maximum=1),
            "style": ParameterRule(minimum=0, maximum=1),
        },
    )

    def auth_headers(self) -> dict[str, str]:
        return {"xi-api-key": self.require_api_key()}

    def build_payload(self, request: ValidatedRequest) -> tuple[str, dict[str, Any]]:
        params = request.parameters
        voice_id = params.get("custom_voice_id") or params.get("voice_id") or DEFAULT_VOICE_ID
        use_speaker_boost = params.get("use_speaker_boost", True)

        payload = {
            "text": request.prompt,
            "model_id": self.config.model_version or DEFAULT_MODEL_ID,
            "voice_settings": {
                "stability": extract_numeric_parameter(params, "stability", 0.5, 0, 1),
                "similarity_boost": extract_numeric_parameter(
                    params, "similarity_boost", 0.75, 0, 1
                ),
                "style": extract_numeric_parameter(params, "style", 0.5, 0, 1),
                "use_speaker_boost": bool(use_speaker_boost),
            },
        }
        return str(voice_id), payload

    async def dispatch(self, request: ValidatedRequest) -> AdapterResult:
        voice_id, payload = self.build_payload(request)
        self.log.info("adapter.dispatch.started", voice_id=voice_id, characters=len(request.prompt))

        async with self.client() as client:
            response = await client.post(
                self.url(f"/v1/text-to-speech/{voice_id}"),
                params={"output_format": OUTPUT_FORMAT},
                json=payload,
                headers={**self.auth_headers(), "Accept": "audio/mpeg"},
            )
            response.raise_for_status()

        content_type = response.headers.get("content-type", "")
        if "audio" not in content_type:
            raise ProviderError(
                f"Expected audio/mpeg but received {content_type or 'no content type'}",
                details={"body": response.text[:200]},
                retryable=False,
            )
        if not response.content:
            raise ProviderError("ElevenLabs returned an empty audio body", retryable=False)

        encoded = base64.b64encode(response.content).decode("ascii")
        artifact = self.artifact(
            f"data:audio/mpeg;base64,{encoded}",
            voice_id=voice_id,
            model_id=payload["model_id"],
            character_count=len(request.prompt),
            format="mp3",
            sample_rate=44100,
            bitrate=128,
        )
        return AdapterResult(
            artifacts=[artifact],
            raw_response={"content_type": content_type, "bytes": len(response.content)},
        )
