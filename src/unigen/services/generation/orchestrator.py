"""Task orchestrator: drives one generation request from PENDING to a terminal state.

Workflow of process():
1. PENDING → PROCESSING (conditional write, so two workers never both dispatch)
2. Snapshot provider configuration and select the adapter
3. Dispatch through the retry engine with a per-call deadline
4. Synchronous result → Result Transfer; JobHandle → poller → Result Transfer
5. Persist SUCCESS or FAILED, guarded by the expected prior status

Every write after the claim is conditional, so a concurrent cancel or delete
always wins over a late terminal write. Sessions are short: the orchestrator
holds no transaction open while waiting on a provider.
"""

import asyncio
import hashlib
from typing import Any, Callable, Mapping
from uuid import UUID

import structlog

from unigen.core.config import Settings
from unigen.models.generation_request import (
    GenerationRequest,
    GenerationStatus,
    InvalidStateTransition,
)
from unigen.models.provider import Provider
from unigen.services.exceptions import (
    CancellationNotAllowedError,
    DeletionNotAllowedError,
    ErrorKind,
    GenerationError,
    InternalError,
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
    RequestNotFoundError,
    S3UploadError,
    TaskTimeoutError,
    error_for_kind,
)
from unigen.services.generation.adapters.base import BaseAdapter
from unigen.services.generation.adapters.registry import capabilities_for, create_adapter
from unigen.services.generation.error_classifier import classify_error
from unigen.services.generation.poller import PollResult, PollState, TaskPoller
from unigen.services.generation.provider_config import ProviderConfig
from unigen.services.generation.retry import HTTP_RETRY_POLICY, RetryEngine
from unigen.services.generation.types import AdapterResult, GenerationArtifact, JobHandle
from unigen.services.generation.validation import (
    GenerationInput,
    ModelCapabilities,
    ValidatedRequest,
    parse_input,
    validate_request,
)
from unigen.services.storage.result_transfer import (
    PassthroughResultTransfer,
    ResultTransfer,
    create_result_transfer,
)
from unigen.uow import UoWFactory

logger = structlog.get_logger(__name__)

AdapterFactory = Callable[[ProviderConfig], BaseAdapter]

CLIENT_KEY_PREFIX_LENGTH = 8


def hash_client_key(client_key: str) -> str:
    return hashlib.sha256(client_key.encode("utf-8")).hexdigest()


class TaskOrchestrator:
    """Coordinates validation, dispatch, polling, transfer and persistence.

    Args:
        uow_factory: Produces a UnitOfWork per short transaction
        retry_engine: Wraps adapter dispatch
        poller: Drives asynchronous jobs
        result_transfer: Moves artifacts into durable storage
        transfer_retry_engine: Wraps each artifact transfer (defaults to retry_engine,
            or to an HTTP_RETRY_POLICY engine when neither is given)
        adapter_factory: Builds an adapter from a provider snapshot
        dispatch_timeout: Deadline in seconds for a single dispatch attempt
        request_timeout: Per-call HTTP timeout handed to adapters
        strict_sizes: Reject unrecognized size values instead of falling back to 1:1
        default_path_prefix: Storage prefix when the provider defines none
        environ: Environment used for API key lookup (defaults to os.environ)
    """

    def __init__(
        self,
        uow_factory: UoWFactory,
        retry_engine: RetryEngine | None = None,
        poller: TaskPoller | None = None,
        result_transfer: ResultTransfer | None = None,
        transfer_retry_engine: RetryEngine | None = None,
        adapter_factory: AdapterFactory = create_adapter,
        dispatch_timeout: float = 600.0,
        request_timeout: float = 60.0,
        strict_sizes: bool = False,
        default_path_prefix: str = "generations",
        environ: Mapping[str, str] | None = None,
    ):
        self.uow_factory = uow_factory
        self.retry_engine = retry_engine or RetryEngine()
        self.poller = poller or TaskPoller(self.retry_engine)
        self.result_transfer = result_transfer or PassthroughResultTransfer()
        if transfer_retry_engine is None:
            transfer_retry_engine = retry_engine or RetryEngine(HTTP_RETRY_POLICY)
        self.transfer_retry_engine = transfer_retry_engine
        self.adapter_factory = adapter_factory
        self.dispatch_timeout = dispatch_timeout
        self.request_timeout = request_timeout
        self.strict_sizes = strict_sizes
        self.default_path_prefix = default_path_prefix
        self.environ = environ

    @classmethod
    def from_settings(
        cls, uow_factory: UoWFactory, settings: Settings, **overrides: Any
    ) -> "TaskOrchestrator":
        """Wire an orchestrator from application settings.

        Keyword overrides replace any constructed collaborator (tests pass fakes).
        """
        retry_engine = RetryEngine(settings.dispatch_retry_policy)
        options: dict[str, Any] = {
            "retry_engine": retry_engine,
            "poller": TaskPoller(
                retry_engine,
                max_attempts=settings.poll_max_attempts,
                max_duration=settings.poll_max_duration_seconds,
                default_interval=settings.poll_interval_seconds,
            ),
            "transfer_retry_engine": RetryEngine(settings.transfer_retry_policy),
            "dispatch_timeout": settings.dispatch_timeout_seconds,
            "request_timeout": settings.provider_request_timeout_seconds,
            "strict_sizes": settings.strict_size_parsing,
            "default_path_prefix": settings.s3_default_prefix,
        }
        options.update(overrides)
        if "result_transfer" not in options:
            options["result_transfer"] = create_result_transfer(settings)
        return cls(uow_factory, **options)

    # ------------------------------------------------------------------
    # Client-facing operations
    # ------------------------------------------------------------------

    async def submit(
        self,
        payload: GenerationInput | dict[str, Any],
        client_key: str | None = None,
    ) -> GenerationRequest:
        """Validate a request and persist it as PENDING.

        Args:
            payload: Raw request body or parsed input
            client_key: Optional caller key; only its hash and prefix are stored

        Returns:
            The persisted request (detached)

        Raises:
            InvalidRequestError: Malformed body, bad prompt or image references
            InvalidParametersError: Parameter values outside the model's limits
            ProviderNotFoundError: No active provider serves the model identifier
        """
        data = parse_input(payload)

        async with await self.uow_factory() as uow:
            provider = await uow.providers.get_active_by_model_identifier(data.model_identifier)
        if provider is None:
            raise ProviderNotFoundError(
                f"No active provider for model '{data.model_identifier}'",
                details={"model_identifier": data.model_identifier},
            )

        validated = validate_request(data, self._capabilities(provider), self.strict_sizes)

        request = GenerationRequest(
            provider_id=provider.id,
            model_identifier=validated.model_identifier,
            prompt=validated.prompt,
            input_images=list(validated.input_images),
            number_of_outputs=validated.number_of_outputs,
            parameters=validated.parameters,
            request_payload=data.model_dump(mode="json"),
            client_key_hash=hash_client_key(client_key) if client_key else None,
            client_key_prefix=client_key[:CLIENT_KEY_PREFIX_LENGTH] if client_key else None,
        )
        async with await self.uow_factory() as uow:
            await uow.generations.add(request)

        logger.info(
            "generation.submitted",
            request_id=str(request.id),
            model_identifier=request.model_identifier,
            provider_id=str(provider.id),
        )
        return request

    async def run(
        self,
        payload: GenerationInput | dict[str, Any],
        client_key: str | None = None,
    ) -> GenerationRequest:
        """Submit and process inline; returns the request in its final state."""
        request = await self.submit(payload, client_key=client_key)
        return await self.process(request.id)

    async def get(self, request_id: UUID, client_key: str | None = None) -> GenerationRequest:
        """Fetch a request.

        Requests owned by a different client key are reported as missing.

        Raises:
            RequestNotFoundError: Unknown, deleted or foreign request
        """
        async with await self.uow_factory() as uow:
            request = await uow.generations.get_by_id(request_id)
        if request is None or not self._owned_by(request, client_key):
            raise RequestNotFoundError(
                f"Generation request {request_id} not found",
                details={"request_id": str(request_id)},
            )
        return request

    async def list_requests(
        self,
        status: GenerationStatus | None = None,
        provider_id: UUID | None = None,
        client_key: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[GenerationRequest], int]:
        async with await self.uow_factory() as uow:
            return await uow.generations.list_requests(
                status=status,
                provider_id=provider_id,
                client_key_hash=hash_client_key(client_key) if client_key else None,
                limit=limit,
                offset=offset,
            )

    async def cancel(self, request_id: UUID, client_key: str | None = None) -> GenerationRequest:
        """Cancel a PENDING or PROCESSING request.

        A running poller observes the cancellation on its next tick and asks the
        provider to cancel (best effort).

        Raises:
            RequestNotFoundError: Unknown, deleted or foreign request
            CancellationNotAllowedError: Request already terminal
        """
        request = await self.get(request_id, client_key)
        if request.is_terminal:
            raise CancellationNotAllowedError(
                f"Cannot cancel request in {request.status.value} state",
                details={"request_id": str(request_id), "status": request.status.value},
            )

        async with await self.uow_factory() as uow:
            cancelled = await uow.generations.cancel(request)

        if not cancelled:
            # Reached a terminal state (or was deleted) between read and write
            current = await self.get(request_id, client_key)
            raise CancellationNotAllowedError(
                f"Cannot cancel request in {current.status.value} state",
                details={"request_id": str(request_id), "status": current.status.value},
            )

        logger.info("generation.cancelled", request_id=str(request_id))
        return request

    async def delete(self, request_id: UUID, client_key: str | None = None) -> None:
        """Soft-delete a terminal request.

        Raises:
            RequestNotFoundError: Unknown, deleted or foreign request
            DeletionNotAllowedError: Request is still PENDING or PROCESSING
        """
        request = await self.get(request_id, client_key)
        try:
            request.mark_deleted()
        except InvalidStateTransition:
            raise DeletionNotAllowedError(
                f"Cannot delete request in {request.status.value} state; cancel it first",
                details={"request_id": str(request_id), "status": request.status.value},
            ) from None

        async with await self.uow_factory() as uow:
            deleted = await uow.generations.soft_delete(request_id)
        if not deleted:
            raise RequestNotFoundError(
                f"Generation request {request_id} not found",
                details={"request_id": str(request_id)},
            )
        logger.info("generation.deleted", request_id=str(request_id))

    # ------------------------------------------------------------------
    # Worker-facing operations
    # ------------------------------------------------------------------

    async def process(self, request_id: UUID) -> GenerationRequest:
        """Dispatch a PENDING request and drive it to a terminal state.

        Never raises for provider or storage failures: those are persisted as
        FAILED with the classified kind. A request another worker already
        claimed is returned unchanged.

        Raises:
            RequestNotFoundError: Unknown or deleted request
        """
        async with await self.uow_factory() as uow:
            request = await uow.generations.get_by_id(request_id)
            provider = await uow.providers.get_by_id(request.provider_id) if request else None
        if request is None:
            raise RequestNotFoundError(
                f"Generation request {request_id} not found",
                details={"request_id": str(request_id)},
            )

        log = logger.bind(request_id=str(request_id), model_identifier=request.model_identifier)
        if request.status != GenerationStatus.PENDING:
            log.info("generation.process.skipped", status=request.status.value)
            return request

        request.mark_processing()
        async with await self.uow_factory() as uow:
            claimed = await uow.generations.apply_transition(request, GenerationStatus.PENDING)
        if not claimed:
            log.info("generation.process.claim_lost")
            return await self._reload(request_id)

        log.info("generation.processing")

        try:
            config, adapter = self._build_adapter(provider)
            outcome = await self.retry_engine.run(
                lambda: self._dispatch_once(adapter, self._validated(request)),
                operation_name="dispatch",
                request_id=str(request_id),
            )

            if isinstance(outcome, JobHandle):
                return await self._follow_job(request, adapter, config, outcome)

            return await self._complete(
                request, config, outcome.artifacts, outcome.raw_response
            )
        except asyncio.CancelledError:
            raise
        except GenerationError as e:
            return await self._fail(request_id, e)
        except Exception as e:
            log.error("generation.process.unexpected_error", error=str(e), exc_info=True)
            return await self._fail(request_id, classify_error(e))

    async def resume(self, request_id: UUID) -> GenerationRequest:
        """Re-enter polling for a PROCESSING request that already holds a job handle.

        Used by the worker after a restart; the provider job is not re-dispatched.
        """
        async with await self.uow_factory() as uow:
            request = await uow.generations.get_by_id(request_id)
            provider = await uow.providers.get_by_id(request.provider_id) if request else None
        if request is None:
            raise RequestNotFoundError(
                f"Generation request {request_id} not found",
                details={"request_id": str(request_id)},
            )
        if request.status != GenerationStatus.PROCESSING or not request.provider_task_id:
            logger.info(
                "generation.resume.skipped",
                request_id=str(request_id),
                status=request.status.value,
            )
            return request

        logger.info(
            "generation.resumed",
            request_id=str(request_id),
            provider_task_id=request.provider_task_id,
        )
        try:
            config, adapter = self._build_adapter(provider)
            handle = JobHandle(
                provider_task_id=request.provider_task_id, poll_interval=adapter.poll_interval
            )
            return await self._poll(request, adapter, config, handle)
        except asyncio.CancelledError:
            raise
        except GenerationError as e:
            return await self._fail(request_id, e)
        except Exception as e:
            logger.error(
                "generation.resume.unexpected_error",
                request_id=str(request_id),
                error=str(e),
                exc_info=True,
            )
            return await self._fail(request_id, classify_error(e))

    async def fail_orphan(self, request_id: UUID) -> GenerationRequest:
        """Fail a PROCESSING request whose dispatch was interrupted before a job handle existed.

        Re-dispatching could bill the caller twice, so the request is failed instead.
        """
        return await self._fail(
            request_id,
            InternalError("Dispatch was interrupted before the provider confirmed the job"),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _capabilities(self, provider: Provider) -> ModelCapabilities:
        try:
            return capabilities_for(provider.adapter_name)
        except InternalError:
            # Unknown adapters are failed at dispatch time, where the error is persisted
            logger.warning(
                "generation.adapter_unknown",
                adapter_name=provider.adapter_name,
                model_identifier=provider.model_identifier,
            )
            return ModelCapabilities()

    def _build_adapter(self, provider: Provider | None) -> tuple[ProviderConfig, BaseAdapter]:
        if provider is None:
            raise InternalError("Provider for this request no longer exists")
        config = ProviderConfig.from_provider(
            provider, request_timeout=self.request_timeout, environ=self.environ
        )
        return config, self.adapter_factory(config)

    @staticmethod
    def _validated(request: GenerationRequest) -> ValidatedRequest:
        return ValidatedRequest(
            model_identifier=request.model_identifier,
            prompt=request.prompt,
            input_images=tuple(request.input_images),
            number_of_outputs=request.number_of_outputs,
            parameters=request.parameters,
        )

    @staticmethod
    def _owned_by(request: GenerationRequest, client_key: str | None) -> bool:
        if client_key is None or request.client_key_hash is None:
            return True
        return request.client_key_hash == hash_client_key(client_key)

    async def _reload(self, request_id: UUID) -> GenerationRequest | None:
        async with await self.uow_factory() as uow:
            return await uow.generations.get_by_id(request_id, include_deleted=True)

    async def _dispatch_once(
        self, adapter: BaseAdapter, request: ValidatedRequest
    ) -> AdapterResult | JobHandle:
        """One dispatch attempt under the per-call deadline.

        Thread-backed adapters cannot be interrupted: the provider call keeps
        running after the deadline, so their timeouts are not retried.
        """
        try:
            return await asyncio.wait_for(adapter.dispatch(request), timeout=self.dispatch_timeout)
        except TimeoutError:
            if not adapter.dispatches_in_thread:
                raise
            raise ProviderTimeoutError(
                f"Dispatch exceeded the {self.dispatch_timeout:g}s deadline",
                details={"deadline_seconds": self.dispatch_timeout},
                retryable=False,
            ) from None

    async def _follow_job(
        self,
        request: GenerationRequest,
        adapter: BaseAdapter,
        config: ProviderConfig,
        handle: JobHandle,
    ) -> GenerationRequest:
        if not adapter.supports_polling:
            raise InternalError(f"Adapter '{adapter.kind.value}' returned a job but cannot poll")

        request.attach_provider_task(handle.provider_task_id)
        async with await self.uow_factory() as uow:
            stored = await uow.generations.apply_transition(request, GenerationStatus.PROCESSING)
        if not stored:
            # Cancelled or deleted while the provider accepted the job
            logger.info(
                "generation.dispatch.superseded",
                request_id=str(request.id),
                provider_task_id=handle.provider_task_id,
            )
            await self._cancel_remote(adapter, handle.provider_task_id)
            return await self._reload(request.id)

        logger.info(
            "generation.dispatched",
            request_id=str(request.id),
            provider_task_id=handle.provider_task_id,
        )
        return await self._poll(request, adapter, config, handle)

    async def _poll(
        self,
        request: GenerationRequest,
        adapter: BaseAdapter,
        config: ProviderConfig,
        handle: JobHandle,
    ) -> GenerationRequest:
        request_id = request.id

        async def is_cancelled() -> bool:
            async with await self.uow_factory() as uow:
                status = await uow.generations.get_status(request_id)
            return status != GenerationStatus.PROCESSING

        async def on_progress(progress: int) -> None:
            async with await self.uow_factory() as uow:
                await uow.generations.record_progress(request_id, progress)

        result: PollResult = await self.poller.poll(
            adapter,
            handle,
            is_cancelled=is_cancelled,
            on_progress=on_progress,
            request_id=str(request_id),
        )

        if result.state == PollState.SUCCEEDED:
            return await self._complete(request, config, result.artifacts, result.raw_response)

        if result.state == PollState.FAILED:
            return await self._fail(
                request_id,
                error_for_kind(
                    result.error_kind or ErrorKind.TASK_FAILED,
                    result.error_detail or "Provider reported failure",
                    details={"provider_task_id": handle.provider_task_id},
                ),
                raw_response=result.raw_response,
            )

        if result.state == PollState.TIMED_OUT:
            return await self._fail(
                request_id,
                TaskTimeoutError(
                    result.error_detail or "Task timed out",
                    details={
                        "provider_task_id": handle.provider_task_id,
                        "attempts": result.attempts,
                        "elapsed_seconds": result.elapsed_seconds,
                        "last_error": result.last_error,
                    },
                ),
            )

        logger.info("generation.poll.cancelled", request_id=str(request_id))
        return await self._reload(request_id)

    async def _complete(
        self,
        request: GenerationRequest,
        config: ProviderConfig,
        artifacts: list[GenerationArtifact],
        raw_response: dict[str, Any] | None,
    ) -> GenerationRequest:
        if not artifacts:
            raise ProviderError("Provider returned no outputs", retryable=False)

        final_artifacts = await self._transfer_artifacts(request, config, artifacts)

        request.mark_succeeded(final_artifacts, response_payload=raw_response)
        async with await self.uow_factory() as uow:
            stored = await uow.generations.apply_transition(request, GenerationStatus.PROCESSING)
            if stored:
                await uow.providers.increment_call_count(config.provider_id)

        if not stored:
            logger.info("generation.result.discarded", request_id=str(request.id))
            return await self._reload(request.id)

        logger.info(
            "generation.succeeded",
            request_id=str(request.id),
            artifact_count=len(final_artifacts),
            duration_ms=request.duration_ms,
        )
        return request

    async def _transfer_artifacts(
        self,
        request: GenerationRequest,
        config: ProviderConfig,
        artifacts: list[GenerationArtifact],
    ) -> list[GenerationArtifact]:
        """Copy artifacts to durable storage when the provider asks for it.

        A failed artifact keeps its provider URL and records the failure in its
        metadata; only a complete failure fails the request.

        Raises:
            S3UploadError: Every artifact failed to transfer
        """
        if not config.upload_to_s3:
            return artifacts

        prefix = f"{(config.s3_path_prefix or self.default_path_prefix).strip('/')}/{request.id}"
        transferred: list[GenerationArtifact] = []
        last_error: GenerationError | None = None

        for index, artifact in enumerate(artifacts):
            try:
                url = await self.transfer_retry_engine.run(
                    lambda source=artifact.url: self.result_transfer.transfer(source, prefix),
                    operation_name="transfer",
                    request_id=str(request.id),
                    artifact_index=index,
                )
            except GenerationError as e:
                last_error = e
                logger.warning(
                    "generation.transfer.failed",
                    request_id=str(request.id),
                    artifact_index=index,
                    error=e.message,
                )
                transferred.append(artifact.with_url(artifact.url, transfer_error=e.message))
                continue

            metadata: dict[str, Any] = {}
            if artifact.url.startswith(("http://", "https://")):
                metadata["source_url"] = artifact.url
            transferred.append(artifact.with_url(url, **metadata))

        failures = sum(1 for item in transferred if "transfer_error" in item.metadata)
        if failures == len(artifacts) and last_error is not None:
            raise S3UploadError(
                f"All {failures} artifact(s) failed to transfer: {last_error.message}",
                details={"last_error": last_error.to_dict()},
            )
        return transferred

    async def _fail(
        self,
        request_id: UUID,
        error: GenerationError,
        raw_response: dict[str, Any] | None = None,
    ) -> GenerationRequest | None:
        """Persist FAILED for a request that is still non-terminal.

        Reads the current row first, so the write is guarded by whatever status
        the request actually has; a request that was cancelled, deleted or
        completed meanwhile is left untouched.
        """
        current = await self._reload(request_id)
        if current is None or current.is_terminal or current.is_deleted:
            logger.info(
                "generation.failure.discarded",
                request_id=str(request_id),
                kind=error.kind.value,
                status=current.status.value if current else None,
            )
            return current

        payload: dict[str, Any] = {"error": error.to_dict()}
        if raw_response is not None:
            payload["provider_response"] = raw_response

        expected = current.status
        current.mark_failed(error.message, error.kind.value, response_payload=payload)
        async with await self.uow_factory() as uow:
            stored = await uow.generations.apply_transition(current, expected)

        if not stored:
            logger.info("generation.failure.discarded", request_id=str(request_id))
            return await self._reload(request_id)

        logger.error(
            "generation.failed",
            request_id=str(request_id),
            kind=error.kind.value,
            error=error.message,
            retryable=error.retryable,
        )
        return current

    @staticmethod
    async def _cancel_remote(adapter: BaseAdapter, provider_task_id: str) -> None:
        try:
            await adapter.cancel(provider_task_id)
        except Exception as e:
            logger.warning(
                "generation.remote_cancel_failed",
                provider_task_id=provider_task_id,
                error=str(e),
                error_type=type(e).__name__,
            )
