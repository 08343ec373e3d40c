"""Replicate adapter (asynchronous predictions via the replicate SDK)."""

import asyncio
import re
from typing import Any

import httpx
import replicate

from unigen.services.exceptions import ProviderError
from unigen.services.generation.adapters.base import BaseAdapter
from unigen.services.generation.adapters.kinds import AdapterKind
from unigen.services.generation.provider_config import ProviderConfig
from unigen.services.generation.types import ArtifactType, JobHandle, TaskStatus
from unigen.services.generation.validation import ModelCapabilities, ValidatedRequest

RUNNING_STATUSES = frozenset({"starting", "processing"})
_PROGRESS_PATTERN = re.compile(r"(\d{1,3})%")
_VERSION_PATTERN = re.compile(r"^[0-9a-f]{64}$")

ARTIFACT_TYPE_BY_GENERATION = {
    "image": ArtifactType.IMAGE,
    "video": ArtifactType.VIDEO,
    "audio": ArtifactType.AUDIO,
}


def output_urls(output: Any) -> list[str]:
    """Normalize prediction output (URL, FileOutput or a list of them) to URL strings."""
    if output is None:
        return []
    items = output if isinstance(output, (list, tuple)) else [output]
    return [str(item) for item in items if item]


class ReplicateAdapter(BaseAdapter):
    """Runs any Replicate model as a prediction and polls it.

    The SDK is synchronous, so every call runs in a worker thread.
    model_version may be "owner/name", "owner/name:<version>" or a bare version id.
    """

    kind = AdapterKind.REPLICATE
    supports_polling = True
    dispatches_in_thread = True
    default_endpoint = "https://api.replicate.com"
    poll_interval = 5.0
    capabilities = ModelCapabilities(max_input_images=1, max_outputs=4)

    def __init__(
        self,
        config: ProviderConfig,
        transport: httpx.BaseTransport | httpx.AsyncBaseTransport | None = None,
        client: Any | None = None,
    ):
        super().__init__(config, transport)
        self._client = client

    @property
    def artifact_type(self) -> ArtifactType:  # type: ignore[override]
        return ARTIFACT_TYPE_BY_GENERATION.get(
            self.config.generation_type.value, ArtifactType.IMAGE
        )

    def sdk_client(self) -> Any:
        if self._client is None:
            kwargs: dict[str, Any] = {}
            if isinstance(self._transport, httpx.BaseTransport):
                kwargs["transport"] = self._transport
            self._client = replicate.Client(
                api_token=self.require_api_key(),
                base_url=self.endpoint,
                timeout=self.config.request_timeout,
                **kwargs,
            )
        return self._client

    def build_input(self, request: ValidatedRequest) -> dict[str, Any]:
        params = dict(request.parameters)
        model_input: dict[str, Any] = {"prompt": request.prompt, **params}
        if request.number_of_outputs > 1:
            model_input.setdefault("num_outputs", request.number_of_outputs)
        if request.input_images:
            model_input.setdefault("image", request.input_images[0])
        return model_input

    def _create_prediction(self, model_input: dict[str, Any]) -> Any:
        client = self.sdk_client()
        target = self.config.model_version or self.config.model_identifier
        owner_model, _, version = target.partition(":")

        if version:
            return client.predictions.create(version=version, input=model_input)
        if _VERSION_PATTERN.match(owner_model):
            return client.predictions.create(version=owner_model, input=model_input)
        return client.models.predictions.create(model=owner_model, input=model_input)

    async def dispatch(self, request: ValidatedRequest) -> JobHandle:
        model_input = self.build_input(request)
        self.log.info("adapter.dispatch.started", inputs=sorted(model_input))

        prediction = await asyncio.to_thread(self._create_prediction, model_input)

        prediction_id = getattr(prediction, "id", None)
        if not prediction_id:
            raise ProviderError("Replicate did not return a prediction id", retryable=False)
        return JobHandle(
            provider_task_id=prediction_id,
            poll_interval=self.poll_interval,
            raw_response={"id": prediction_id, "status": getattr(prediction, "status", None)},
        )

    @staticmethod
    def parse_progress(logs: str | None) -> int | None:
        if not logs:
            return None
        matches = _PROGRESS_PATTERN.findall(logs)
        if not matches:
            return None
        return min(100, int(matches[-1]))

    async def check_status(self, provider_task_id: str) -> TaskStatus:
        prediction = await asyncio.to_thread(self.sdk_client().predictions.get, provider_task_id)
        status = getattr(prediction, "status", None)
        raw = {"id": provider_task_id, "status": status}

        if status == "succeeded":
            urls = output_urls(getattr(prediction, "output", None))
            if not urls:
                return TaskStatus.failed("Prediction succeeded without output", raw_response=raw)
            return TaskStatus.succeeded([self.artifact(url) for url in urls], raw_response=raw)

        if status == "failed":
            detail = getattr(prediction, "error", None) or "Prediction failed"
            return TaskStatus.failed(str(detail), raw_response=raw)

        if status == "canceled":
            return TaskStatus.cancelled("Prediction canceled by provider", raw_response=raw)

        if status not in RUNNING_STATUSES:
            self.log.warning("adapter.status.unknown", status=status, task_id=provider_task_id)
        return TaskStatus.running(self.parse_progress(getattr(prediction, "logs", None)))

    async def cancel(self, provider_task_id: str) -> None:
        await asyncio.to_thread(self.sdk_client().predictions.cancel, provider_task_id)
        self.log.info("adapter.cancel.requested", provider_task_id=provider_task_id)
