"""OpenAI image generation adapter (synchronous)."""

from typing import Any

from unigen.services.generation.adapters.base import BaseAdapter
from unigen.services.generation.adapters.kinds import AdapterKind
from unigen.services.generation.parameters import (
    DEFAULT_ASPECT_RATIO,
    aspect_ratio_to_openai_size,
)
from unigen.services.generation.types import AdapterResult, ArtifactType
from unigen.services.generation.validation import (
    ModelCapabilities,
    ParameterRule,
    ValidatedRequest,
)


class OpenAIImageAdapter(BaseAdapter):
    """OpenAI /images/generations.

    Base64 results are returned as data URIs so Result Transfer can store
    them like any other source.
    """

    kind = AdapterKind.OPENAI_IMAGE
    artifact_type = ArtifactType.IMAGE
    default_endpoint = "https://api.openai.com/v1"
    capabilities = ModelCapabilities(
        max_prompt_length=2000,
        max_input_images=0,
        max_outputs=1,
        parameter_rules={
            "quality": ParameterRule(choices=("standard", "hd")),
            "style": ParameterRule(choices=("vivid", "natural")),
            "response_format": ParameterRule(choices=("url", "b64_json")),
        },
    )

    def build_payload(self, request: ValidatedRequest) -> dict[str, Any]:
        params = request.parameters
        payload: dict[str, Any] = {
            "model": self.config.model_version or "dall-e-3",
            "prompt": request.prompt,
            "n": request.number_of_outputs,
            "size": aspect_ratio_to_openai_size(params.get("aspect_ratio", DEFAULT_ASPECT_RATIO)),
            "response_format": params.get("response_format", "url"),
        }
        for key in ("quality", "style"):
            if key in params:
                payload[key] = params[key]
        return payload

    async def dispatch(self, request: ValidatedRequest) -> AdapterResult:
        payload = self.build_payload(request)
        self.log.info("adapter.dispatch.started", size=payload["size"], n=payload["n"])

        data = await self._post_json("/images/generations", payload)

        artifacts = []
        for item in data.get("data") or []:
            if not isinstance(item, dict):
                continue
            if item.get("url"):
                url = item["url"]
            elif item.get("b64_json"):
                url = f"data:image/png;base64,{item['b64_json']}"
            else:
                continue
            metadata = {"size": payload["size"]}
            if item.get("revised_prompt"):
                metadata["revised_prompt"] = item["revised_prompt"]
            artifacts.append(self.artifact(url, **metadata))

        return AdapterResult(
            artifacts=self.require_artifacts(artifacts),
            raw_response={"created": data.get("created"), "count": len(artifacts)},
        )
