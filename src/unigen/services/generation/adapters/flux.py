"""Flux image adapter (synchronous)."""

from typing import Any

from unigen.services.generation.adapters.base import BaseAdapter
from unigen.services.generation.adapters.kinds import AdapterKind
from unigen.services.generation.parameters import (
    DEFAULT_ASPECT_RATIO,
    extract_int_parameter,
)
from unigen.services.generation.types import AdapterResult, ArtifactType
from unigen.services.generation.validation import (
    ModelCapabilities,
    ParameterRule,
    ValidatedRequest,
)

MAX_SEED = 2**32 - 1


class FluxAdapter(BaseAdapter):
    """Flux text-to-image through a synchronous generation endpoint.

    Reference images are passed by prefixing their URLs to the prompt, which
    is how Flux Kontext style endpoints accept image context.
    """

    kind = AdapterKind.FLUX
    artifact_type = ArtifactType.IMAGE
    default_endpoint = "https://api.bfl.ai"
    capabilities = ModelCapabilities(
        max_input_images=4,
        max_outputs=4,
        parameter_rules={
            "output_format": ParameterRule(choices=("jpeg", "png")),
            "seed": ParameterRule(minimum=0, maximum=MAX_SEED, integer=True),
        },
    )

    def build_payload(self, request: ValidatedRequest) -> dict[str, Any]:
        params = request.parameters
        prompt = request.prompt
        if request.input_images:
            prompt = " ".join([*request.input_images, prompt])

        payload: dict[str, Any] = {
            "prompt": prompt,
            "aspect_ratio": params.get("aspect_ratio", DEFAULT_ASPECT_RATIO),
            "safety_tolerance": extract_int_parameter(params, "safety_tolerance", 2, 0, 6),
            "num_images": request.number_of_outputs,
            "output_format": params.get("output_format", "jpeg"),
        }
        if "seed" in params:
            payload["seed"] = extract_int_parameter(params, "seed", 0, 0, MAX_SEED)
        if self.config.model_version:
            payload["model"] = self.config.model_version
        return payload

    async def dispatch(self, request: ValidatedRequest) -> AdapterResult:
        payload = self.build_payload(request)
        self.log.info(
            "adapter.dispatch.started",
            aspect_ratio=payload["aspect_ratio"],
            num_images=payload["num_images"],
        )

        data = await self._post_json("/v1/flux/generate", payload)

        # Endpoints answer either {"images": [...]} or {"data": [...]}
        items = data.get("images") or data.get("data") or []
        artifacts = [
            self.artifact(
                item["url"],
                aspect_ratio=payload["aspect_ratio"],
                seed=item.get("seed", payload.get("seed")),
            )
            for item in items
            if isinstance(item, dict) and item.get("url")
        ]
        return AdapterResult(artifacts=self.require_artifacts(artifacts), raw_response=data)
