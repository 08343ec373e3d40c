"""Value types exchanged between adapters, the poller and the orchestrator.

Adapters never write to the database; they return these objects and the
orchestrator persists them.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from unigen.services.exceptions import ErrorKind


class ArtifactType(str, Enum):
    """Kind of media a provider produced."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    TEXT = "text"


class GenerationArtifact(BaseModel):
    """One output artifact: {type, url, metadata}."""

    model_config = ConfigDict(frozen=True)

    type: ArtifactType
    url: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    def with_url(self, url: str, **metadata: Any) -> "GenerationArtifact":
        """Copy with a replaced URL and extra metadata (e.g. after Result Transfer)."""
        return self.model_copy(update={"url": url, "metadata": {**self.metadata, **metadata}})


class AdapterResult(BaseModel):
    """Terminal result of a synchronous dispatch."""

    model_config = ConfigDict(frozen=True)

    artifacts: list[GenerationArtifact]
    raw_response: dict[str, Any] | None = None


class JobHandle(BaseModel):
    """Provider job accepted for asynchronous processing.

    poll_interval is the provider's suggested delay between status checks in
    seconds; None means use the configured default.
    """

    model_config = ConfigDict(frozen=True)

    provider_task_id: str = Field(min_length=1)
    poll_interval: float | None = Field(default=None, ge=0)
    raw_response: dict[str, Any] | None = None


class TaskStatus(BaseModel):
    """Result of one provider status check."""

    model_config = ConfigDict(frozen=True)

    terminal: bool
    success: bool = False
    artifacts: list[GenerationArtifact] = Field(default_factory=list)
    error_detail: str | None = None
    # Kind recorded when a terminal status is not a success
    error_kind: ErrorKind = ErrorKind.TASK_FAILED
    progress: int | None = Field(default=None, ge=0, le=100)
    raw_response: dict[str, Any] | None = None

    @classmethod
    def running(cls, progress: int | None = None, **kwargs: Any) -> "TaskStatus":
        return cls(terminal=False, progress=progress, **kwargs)

    @classmethod
    def succeeded(cls, artifacts: list[GenerationArtifact], **kwargs: Any) -> "TaskStatus":
        return cls(terminal=True, success=True, artifacts=artifacts, progress=100, **kwargs)

    @classmethod
    def failed(cls, error_detail: str, **kwargs: Any) -> "TaskStatus":
        return cls(terminal=True, success=False, error_detail=error_detail, **kwargs)

    @classmethod
    def cancelled(cls, error_detail: str, **kwargs: Any) -> "TaskStatus":
        """Job stopped on the provider side without a local cancel request."""
        return cls.failed(error_detail, error_kind=ErrorKind.TASK_CANCELLED, **kwargs)


DispatchOutcome = AdapterResult | JobHandle
