"""Kling video adapter (asynchronous, job-based)."""

from typing import Any

from unigen.services.exceptions import ProviderError
from unigen.services.generation.adapters.base import BaseAdapter
from unigen.services.generation.adapters.kinds import AdapterKind
from unigen.services.generation.parameters import DEFAULT_ASPECT_RATIO
from unigen.services.generation.types import ArtifactType, JobHandle, TaskStatus
from unigen.services.generation.validation import (
    ModelCapabilities,
    ParameterRule,
    ValidatedRequest,
)

SUCCESS_STATUSES = frozenset({"completed", "success", "finished", "succeed", "succeeded"})
FAILURE_STATUSES = frozenset({"failed", "error"})
RUNNING_STATUSES = frozenset({"submitted", "processing", "running", "pending", "queued"})

TEXT_TO_VIDEO = "text2video"
IMAGE_TO_VIDEO = "image2video"

# Kling only renders these ratios
SUPPORTED_ASPECT_RATIOS = ("16:9", "9:16", "1:1")


class KlingAdapter(BaseAdapter):
    """Kling text-to-video / image-to-video.

    Task ids are returned as "<mode>:<task id>" because the status endpoint
    differs per generation mode.
    """

    kind = AdapterKind.KLING
    artifact_type = ArtifactType.VIDEO
    supports_polling = True
    default_endpoint = "https://api.klingai.com"
    poll_interval = 10.0
    capabilities = ModelCapabilities(
        max_input_images=1,
        max_outputs=1,
        parameter_rules={
            "duration": ParameterRule(choices=(5, 10, "5", "10")),
            "mode": ParameterRule(choices=("std", "pro")),
            "cfg_scale": ParameterRule(minimum=0, maximum=1),
        },
    )

    def build_payload(self, request: ValidatedRequest) -> tuple[str, dict[str, Any]]:
        params = request.parameters
        aspect_ratio = params.get("aspect_ratio", DEFAULT_ASPECT_RATIO)
        if aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
            aspect_ratio = "16:9"

        payload: dict[str, Any] = {
            "model_name": self.config.model_version or "kling-v1",
            "prompt": request.prompt,
            "duration": str(params.get("duration", 5)),
            "mode": params.get("mode", "std"),
        }
        for key in ("negative_prompt", "cfg_scale", "camera_control"):
            if key in params:
                payload[key] = params[key]

        if request.input_images:
            payload["image"] = request.input_images[0]
            return IMAGE_TO_VIDEO, payload

        payload["aspect_ratio"] = aspect_ratio
        return TEXT_TO_VIDEO, payload

    async def dispatch(self, request: ValidatedRequest) -> JobHandle:
        mode, payload = self.build_payload(request)
        self.log.info("adapter.dispatch.started", mode=mode, duration=payload["duration"])

        data = await self._post_json(f"/v1/videos/{mode}", payload)

        task_id = (data.get("data") or {}).get("task_id")
        if not task_id:
            raise ProviderError(
                f"Kling did not return a task id: {data.get('message', 'unknown error')}",
                details={"response": data},
                retryable=False,
            )
        return JobHandle(
            provider_task_id=f"{mode}:{task_id}",
            poll_interval=self.poll_interval,
            raw_response=data,
        )

    @staticmethod
    def split_task_id(provider_task_id: str) -> tuple[str, str]:
        mode, _, task_id = provider_task_id.rpartition(":")
        return (mode or TEXT_TO_VIDEO), task_id

    async def check_status(self, provider_task_id: str) -> TaskStatus:
        mode, task_id = self.split_task_id(provider_task_id)
        data = await self._get_json(f"/v1/videos/{mode}/{task_id}")
        task = data.get("data") or {}
        status = str(task.get("task_status", "")).lower()

        if status in SUCCESS_STATUSES:
            videos = (task.get("task_result") or {}).get("videos") or []
            artifacts = [
                self.artifact(
                    video["url"], duration=video.get("duration"), video_id=video.get("id")
                )
                for video in videos
                if isinstance(video, dict) and video.get("url")
            ]
            if not artifacts:
                return TaskStatus.failed("Kling task completed without videos", raw_response=data)
            return TaskStatus.succeeded(artifacts, raw_response=data)

        if status in FAILURE_STATUSES:
            detail = task.get("task_status_msg") or data.get("message") or "Kling task failed"
            return TaskStatus.failed(str(detail), raw_response=data)

        if status not in RUNNING_STATUSES:
            self.log.warning("adapter.status.unknown", status=status, task_id=task_id)
        return TaskStatus.running()
