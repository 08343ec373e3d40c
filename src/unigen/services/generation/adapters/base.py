"""Adapter contract shared by every provider implementation.

An adapter turns a validated request into provider HTTP calls and returns
either a terminal AdapterResult or a JobHandle to poll. Adapters are
stateless beyond their configuration snapshot and never touch persistence.
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar

import httpx
import structlog

from unigen.services.exceptions import AuthenticationError, InternalError, ProviderError
from unigen.services.generation.adapters.kinds import AdapterKind
from unigen.services.generation.provider_config import ProviderConfig
from unigen.services.generation.types import (
    AdapterResult,
    ArtifactType,
    GenerationArtifact,
    JobHandle,
    TaskStatus,
)
from unigen.services.generation.validation import ModelCapabilities, ValidatedRequest

logger = structlog.get_logger(__name__)


class BaseAdapter(ABC):
    """Base class for provider adapters.

    Subclasses set the class attributes and implement dispatch(); asynchronous
    adapters also set supports_polling and implement check_status().
    """

    kind: ClassVar[AdapterKind]
    artifact_type: ClassVar[ArtifactType] = ArtifactType.IMAGE
    capabilities: ClassVar[ModelCapabilities] = ModelCapabilities()
    supports_polling: ClassVar[bool] = False
    # dispatch() runs blocking SDK calls in a worker thread
    dispatches_in_thread: ClassVar[bool] = False
    poll_interval: ClassVar[float | None] = None
    default_endpoint: ClassVar[str] = ""

    def __init__(
        self,
        config: ProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize adapter.

        Args:
            config: Immutable provider snapshot for this dispatch
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.config = config
        self._transport = transport
        self.log = logger.bind(
            adapter=self.kind.value, model_identifier=config.model_identifier
        )

    @property
    def endpoint(self) -> str:
        return (self.config.api_endpoint or self.default_endpoint).rstrip("/")

    def require_api_key(self) -> str:
        if not self.config.api_key:
            raise AuthenticationError(
                f"Missing API key for {self.config.name}. Configure it on the provider "
                f"or set the provider's AI_PROVIDER_*_API_KEY environment variable.",
                details={"model_identifier": self.config.model_identifier},
            )
        return self.config.api_key

    def auth_headers(self) -> dict[str, str]:
        """Authentication headers; Bearer token unless the provider needs otherwise."""
        return {"Authorization": f"Bearer {self.require_api_key()}"}

    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.endpoint}/{path.lstrip('/')}"

    def client(self) -> httpx.AsyncClient:
        """New HTTP client bounded by the per-call timeout."""
        return httpx.AsyncClient(timeout=self.config.request_timeout, transport=self._transport)

    @staticmethod
    def parse_json(response: httpx.Response) -> dict[str, Any]:
        """Decode a JSON object body.

        A malformed 2xx body will not improve on resend, so it is a
        non-retryable provider error.
        """
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"Malformed JSON from provider: {response.text[:200]}",
                details={"status_code": response.status_code},
                retryable=False,
            ) from e
        if not isinstance(data, dict):
            raise ProviderError(
                f"Unexpected response shape from provider: {type(data).__name__}",
                retryable=False,
            )
        return data

    async def _post_json(
        self,
        path: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """POST JSON and return the decoded body.

        Raises:
            httpx.HTTPStatusError: On 4xx/5xx (classified by the retry engine)
        """
        async with self.client() as client:
            response = await client.post(
                self.url(path), json=payload, headers={**self.auth_headers(), **(headers or {})}
            )
            response.raise_for_status()
            return self.parse_json(response)

    async def _get_json(self, path: str, headers: dict[str, str] | None = None) -> dict[str, Any]:
        async with self.client() as client:
            response = await client.get(
                self.url(path), headers={**self.auth_headers(), **(headers or {})}
            )
            response.raise_for_status()
            return self.parse_json(response)

    def artifact(self, url: str, **metadata: Any) -> GenerationArtifact:
        return GenerationArtifact(type=self.artifact_type, url=url, metadata=metadata)

    def require_artifacts(self, artifacts: list[GenerationArtifact]) -> list[GenerationArtifact]:
        if not artifacts:
            raise ProviderError("Provider returned no outputs", retryable=False)
        return artifacts

    @abstractmethod
    async def dispatch(self, request: ValidatedRequest) -> AdapterResult | JobHandle:
        """Submit the request to the provider.

        Returns:
            AdapterResult for synchronous providers, JobHandle for asynchronous ones
        """

    async def check_status(self, provider_task_id: str) -> TaskStatus:
        """Query an asynchronous job.

        Raises:
            InternalError: Synchronous adapters cannot be polled
        """
        raise InternalError(f"Adapter '{self.kind.value}' does not support status polling")

    async def cancel(self, provider_task_id: str) -> None:
        """Best-effort provider-side cancellation; default is a no-op."""
        self.log.debug("adapter.cancel.unsupported", provider_task_id=provider_task_id)
