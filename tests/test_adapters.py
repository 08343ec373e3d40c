"""Adapter tests against mocked provider HTTP APIs.

HTTP adapters get an httpx.MockTransport; the Replicate adapter gets a fake
SDK client. No network access is needed.
"""

import base64
import json
from types import SimpleNamespace
from uuid import uuid4

import httpx
import pytest

from unigen.models.provider import GenerationType
from unigen.services.exceptions import AuthenticationError, InternalError, ProviderError
from unigen.services.generation.adapters.elevenlabs import DEFAULT_VOICE_ID, ElevenLabsTTSAdapter
from unigen.services.generation.adapters.flux import FluxAdapter
from unigen.services.generation.adapters.kinds import AdapterKind
from unigen.services.generation.adapters.kling import KlingAdapter
from unigen.services.generation.adapters.openai_image import OpenAIImageAdapter
from unigen.services.generation.adapters.replicate import ReplicateAdapter, output_urls
from unigen.services.generation.provider_config import ProviderConfig
from unigen.services.generation.types import AdapterResult, ArtifactType, JobHandle
from unigen.services.generation.validation import ValidatedRequest


def config(kind: AdapterKind, **overrides) -> ProviderConfig:
    values = {
        "provider_id": uuid4(),
        "name": kind.value,
        "model_identifier": f"{kind.value}-model",
        "adapter_kind": kind,
        "generation_type": GenerationType.IMAGE,
        "api_endpoint": "https://provider.test",
        "api_key": "secret",
    }
    values.update(overrides)
    return ProviderConfig(**values)


def validated(prompt="a quiet harbour", images=(), outputs=1, **parameters) -> ValidatedRequest:
    return ValidatedRequest(
        model_identifier="model",
        prompt=prompt,
        input_images=tuple(images),
        number_of_outputs=outputs,
        parameters=parameters,
    )


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def body(self, index: int = 0) -> dict:
        return json.loads(self.requests[index].content)


class TestFluxAdapter:
    @pytest.mark.asyncio
    async def test_dispatch_returns_artifacts(self):
        recorder = Recorder(
            httpx.Response(200, json={"images": [{"url": "https://cdn.test/1.jpg", "seed": 9}]})
        )
        adapter = FluxAdapter(config(AdapterKind.FLUX), transport=recorder.transport)

        result = await adapter.dispatch(validated(aspect_ratio="16:9", seed=9))

        assert isinstance(result, AdapterResult)
        assert [a.url for a in result.artifacts] == ["https://cdn.test/1.jpg"]
        assert result.artifacts[0].type == ArtifactType.IMAGE
        assert result.artifacts[0].metadata == {"aspect_ratio": "16:9", "seed": 9}

        request = recorder.requests[0]
        assert request.url == "https://provider.test/v1/flux/generate"
        assert request.headers["Authorization"] == "Bearer secret"
        assert recorder.body() == {
            "prompt": "a quiet harbour",
            "aspect_ratio": "16:9",
            "safety_tolerance": 2,
            "num_images": 1,
            "output_format": "jpeg",
            "seed": 9,
        }

    @pytest.mark.asyncio
    async def test_reference_images_prefix_the_prompt(self):
        recorder = Recorder(httpx.Response(200, json={"data": [{"url": "https://cdn.test/a"}]}))
        adapter = FluxAdapter(config(AdapterKind.FLUX), transport=recorder.transport)

        await adapter.dispatch(validated(images=["https://img.test/ref.png"]))

        assert recorder.body()["prompt"] == "https://img.test/ref.png a quiet harbour"
        assert recorder.body()["aspect_ratio"] == "1:1"

    @pytest.mark.asyncio
    async def test_http_error_propagates_for_classification(self):
        recorder = Recorder(httpx.Response(503, text="overloaded"))
        adapter = FluxAdapter(config(AdapterKind.FLUX), transport=recorder.transport)

        with pytest.raises(httpx.HTTPStatusError):
            await adapter.dispatch(validated())

    @pytest.mark.asyncio
    async def test_malformed_body_is_not_retryable(self):
        recorder = Recorder(httpx.Response(200, text="<html>oops</html>"))
        adapter = FluxAdapter(config(AdapterKind.FLUX), transport=recorder.transport)

        with pytest.raises(ProviderError) as exc_info:
            await adapter.dispatch(validated())
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_empty_output_is_provider_error(self):
        recorder = Recorder(httpx.Response(200, json={"images": []}))
        adapter = FluxAdapter(config(AdapterKind.FLUX), transport=recorder.transport)

        with pytest.raises(ProviderError, match="no outputs"):
            await adapter.dispatch(validated())

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        adapter = FluxAdapter(config(AdapterKind.FLUX, api_key=None))

        with pytest.raises(AuthenticationError):
            await adapter.dispatch(validated())

    @pytest.mark.asyncio
    async def test_cannot_be_polled(self):
        adapter = FluxAdapter(config(AdapterKind.FLUX))

        with pytest.raises(InternalError):
            await adapter.check_status("anything")


class TestOpenAIImageAdapter:
    @pytest.mark.asyncio
    async def test_url_and_base64_outputs(self):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "created": 1,
                    "data": [
                        {"url": "https://oai.test/1.png", "revised_prompt": "a calm harbour"},
                        {"b64_json": "aGVsbG8="},
                    ],
                },
            )
        )
        adapter = OpenAIImageAdapter(config(AdapterKind.OPENAI_IMAGE), transport=recorder.transport)

        result = await adapter.dispatch(validated(aspect_ratio="9:16", quality="hd"))

        assert [a.url for a in result.artifacts] == [
            "https://oai.test/1.png",
            "data:image/png;base64,aGVsbG8=",
        ]
        assert result.artifacts[0].metadata["revised_prompt"] == "a calm harbour"
        assert recorder.requests[0].url == "https://provider.test/images/generations"
        body = recorder.body()
        assert body["size"] == "1024x1792"
        assert body["model"] == "dall-e-3"
        assert body["quality"] == "hd"


class TestKlingAdapter:
    @pytest.mark.asyncio
    async def test_text_to_video_dispatch_returns_job_handle(self):
        recorder = Recorder(httpx.Response(200, json={"code": 0, "data": {"task_id": "k-1"}}))
        adapter = KlingAdapter(
            config(AdapterKind.KLING, generation_type=GenerationType.VIDEO),
            transport=recorder.transport,
        )

        handle = await adapter.dispatch(validated(aspect_ratio="4:3", duration=10))

        assert isinstance(handle, JobHandle)
        assert handle.provider_task_id == "text2video:k-1"
        assert handle.poll_interval == 10.0
        assert recorder.requests[0].url == "https://provider.test/v1/videos/text2video"
        body = recorder.body()
        assert body["duration"] == "10"
        assert body["aspect_ratio"] == "16:9"

    @pytest.mark.asyncio
    async def test_image_to_video_mode(self):
        recorder = Recorder(httpx.Response(200, json={"data": {"task_id": "k-2"}}))
        adapter = KlingAdapter(config(AdapterKind.KLING), transport=recorder.transport)

        handle = await adapter.dispatch(validated(images=["https://img.test/still.png"]))

        assert handle.provider_task_id == "image2video:k-2"
        assert recorder.body()["image"] == "https://img.test/still.png"
        assert "aspect_ratio" not in recorder.body()

    @pytest.mark.asyncio
    async def test_missing_task_id(self):
        recorder = Recorder(httpx.Response(200, json={"code": 1, "message": "bad prompt"}))
        adapter = KlingAdapter(config(AdapterKind.KLING), transport=recorder.transport)

        with pytest.raises(ProviderError, match="bad prompt"):
            await adapter.dispatch(validated())

    @pytest.mark.asyncio
    async def test_check_status_lifecycle(self):
        recorder = Recorder(
            httpx.Response(200, json={"data": {"task_status": "processing"}}),
            httpx.Response(
                200,
                json={
                    "data": {
                        "task_status": "succeed",
                        "task_result": {
                            "videos": [
                                {"id": "v1", "url": "https://kling.test/v.mp4", "duration": "5"}
                            ]
                        },
                    }
                },
            ),
        )
        adapter = KlingAdapter(config(AdapterKind.KLING), transport=recorder.transport)

        running = await adapter.check_status("text2video:k-1")
        done = await adapter.check_status("text2video:k-1")

        assert not running.terminal
        assert done.terminal and done.success
        assert done.artifacts[0].url == "https://kling.test/v.mp4"
        assert done.artifacts[0].type == ArtifactType.VIDEO
        assert recorder.requests[0].url == "https://provider.test/v1/videos/text2video/k-1"

    @pytest.mark.asyncio
    async def test_check_status_failure_keeps_provider_message(self):
        recorder = Recorder(
            httpx.Response(
                200, json={"data": {"task_status": "failed", "task_status_msg": "NSFW content"}}
            )
        )
        adapter = KlingAdapter(config(AdapterKind.KLING), transport=recorder.transport)

        status = await adapter.check_status("image2video:k-9")

        assert status.terminal and not status.success
        assert status.error_detail == "NSFW content"
        assert recorder.requests[0].url.path == "/v1/videos/image2video/k-9"


class FakePredictions:
    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.created: list[dict] = []
        self.cancelled: list[str] = []

    def create(self, **kwargs):
        self.created.append(kwargs)
        return SimpleNamespace(id="pred-1", status="starting")

    def get(self, prediction_id):
        return self.statuses.pop(0)

    def cancel(self, prediction_id):
        self.cancelled.append(prediction_id)


def fake_replicate(*statuses):
    predictions = FakePredictions(*statuses)
    model_predictions = FakePredictions()
    client = SimpleNamespace(
        predictions=predictions, models=SimpleNamespace(predictions=model_predictions)
    )
    return client, predictions, model_predictions


class TestReplicateAdapter:
    @pytest.mark.asyncio
    async def test_dispatch_by_model_name(self):
        client, predictions, model_predictions = fake_replicate()
        adapter = ReplicateAdapter(
            config(AdapterKind.REPLICATE, model_version="black-forest-labs/flux-schnell"),
            client=client,
        )

        handle = await adapter.dispatch(validated(outputs=2, aspect_ratio="16:9"))

        assert handle.provider_task_id == "pred-1"
        assert predictions.created == []
        assert model_predictions.created == [
            {
                "model": "black-forest-labs/flux-schnell",
                "input": {"prompt": "a quiet harbour", "aspect_ratio": "16:9", "num_outputs": 2},
            }
        ]

    @pytest.mark.asyncio
    async def test_dispatch_by_version(self):
        client, predictions, _ = fake_replicate()
        adapter = ReplicateAdapter(
            config(AdapterKind.REPLICATE, model_version="owner/model:abc123"), client=client
        )

        await adapter.dispatch(validated(images=["https://img.test/x.png"]))

        assert predictions.created[0]["version"] == "abc123"
        assert predictions.created[0]["input"]["image"] == "https://img.test/x.png"

    @pytest.mark.asyncio
    async def test_check_status(self):
        client, _, _ = fake_replicate(
            SimpleNamespace(status="processing", logs="step 1\n 42%|####", output=None),
            SimpleNamespace(status="succeeded", output=["https://r.test/1.png"], logs=""),
            SimpleNamespace(status="failed", error="CUDA out of memory", output=None),
        )
        adapter = ReplicateAdapter(
            config(AdapterKind.REPLICATE, generation_type=GenerationType.VIDEO), client=client
        )

        running = await adapter.check_status("pred-1")
        assert not running.terminal
        assert running.progress == 42

        done = await adapter.check_status("pred-1")
        assert done.success
        assert done.artifacts[0].type == ArtifactType.VIDEO

        failed = await adapter.check_status("pred-1")
        assert failed.terminal and not failed.success
        assert failed.error_detail == "CUDA out of memory"

    @pytest.mark.asyncio
    async def test_cancel(self):
        client, predictions, _ = fake_replicate()
        adapter = ReplicateAdapter(config(AdapterKind.REPLICATE), client=client)

        await adapter.cancel("pred-1")

        assert predictions.cancelled == ["pred-1"]

    def test_output_urls(self):
        assert output_urls(None) == []
        assert output_urls("https://r.test/a") == ["https://r.test/a"]
        assert output_urls(["https://r.test/a", None, "https://r.test/b"]) == [
            "https://r.test/a",
            "https://r.test/b",
        ]


class TestElevenLabsTTSAdapter:
    @pytest.mark.asyncio
    async def test_dispatch_returns_audio_data_uri(self):
        audio = b"ID3 fake mp3 bytes"
        recorder = Recorder(
            httpx.Response(200, content=audio, headers={"content-type": "audio/mpeg"})
        )
        adapter = ElevenLabsTTSAdapter(
            config(AdapterKind.ELEVENLABS_TTS, generation_type=GenerationType.AUDIO),
            transport=recorder.transport,
        )

        result = await adapter.dispatch(validated(prompt="Hello there", stability=2))

        artifact = result.artifacts[0]
        assert artifact.type == ArtifactType.AUDIO
        assert artifact.url == "data:audio/mpeg;base64," + base64.b64encode(audio).decode()
        assert artifact.metadata["character_count"] == len("Hello there")

        request = recorder.requests[0]
        assert request.headers["xi-api-key"] == "secret"
        assert request.url.path == f"/v1/text-to-speech/{DEFAULT_VOICE_ID}"
        assert request.url.params["output_format"] == "mp3_44100_128"
        assert recorder.body()["voice_settings"]["stability"] == 1

    @pytest.mark.asyncio
    async def test_non_audio_response_is_rejected(self):
        recorder = Recorder(
            httpx.Response(200, json={"detail": "quota"})
        )
        adapter = ElevenLabsTTSAdapter(
            config(AdapterKind.ELEVENLABS_TTS), transport=recorder.transport
        )

        with pytest.raises(ProviderError, match="Expected audio/mpeg"):
            await adapter.dispatch(validated())
