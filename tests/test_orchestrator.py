"""Orchestrator tests: full request lifecycles against SQLite with fake adapters.

Fake adapters are duck-typed stand-ins for BaseAdapter; the orchestrator's
adapter_factory hands them out instead of building real HTTP adapters.
"""

import asyncio
import hashlib
from uuid import uuid4

import httpx
import pytest

from unigen.models.generation_request import GenerationRequest, GenerationStatus
from unigen.services.exceptions import (
    AuthenticationError,
    CancellationNotAllowedError,
    DeletionNotAllowedError,
    InvalidRequestError,
    ProviderError,
    ProviderNotFoundError,
    RequestNotFoundError,
    S3UploadError,
)
from unigen.services.generation.adapters.kinds import AdapterKind
from unigen.services.generation.adapters.registry import create_adapter
from unigen.services.generation.orchestrator import TaskOrchestrator
from unigen.services.generation.poller import TaskPoller
from unigen.services.generation.retry import RetryEngine, RetryPolicy
from unigen.services.generation.types import (
    AdapterResult,
    ArtifactType,
    GenerationArtifact,
    JobHandle,
    TaskStatus,
)


def image(url: str) -> GenerationArtifact:
    return GenerationArtifact(type=ArtifactType.IMAGE, url=url)


def video(url: str) -> GenerationArtifact:
    return GenerationArtifact(type=ArtifactType.VIDEO, url=url)


def scripted(outcomes: list):
    """Pop outcomes in order, repeating the last one."""
    return outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]


class FakeSyncAdapter:
    kind = AdapterKind.FLUX
    supports_polling = False
    dispatches_in_thread = False
    poll_interval = None

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.dispatched = []

    async def dispatch(self, request):
        self.dispatched.append(request)
        outcome = scripted(self.outcomes)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def cancel(self, provider_task_id):
        pass


class FakeJobAdapter:
    kind = AdapterKind.KLING
    supports_polling = True
    dispatches_in_thread = False
    poll_interval = 0.0

    def __init__(self, *statuses, on_dispatch=None, on_status=None):
        self.statuses = list(statuses)
        self.on_dispatch = on_dispatch
        self.on_status = on_status
        self.dispatched = []
        self.checks = 0
        self.cancelled = []

    async def dispatch(self, request):
        self.dispatched.append(request)
        if self.on_dispatch:
            await self.on_dispatch()
        return JobHandle(provider_task_id="job-1", poll_interval=0.0, raw_response={"id": 1})

    async def check_status(self, provider_task_id):
        self.checks += 1
        if self.on_status:
            await self.on_status(self.checks)
        outcome = scripted(self.statuses)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def cancel(self, provider_task_id):
        self.cancelled.append(provider_task_id)


class FakeTransfer:
    """Stores every source except those containing "broken"."""

    def __init__(self):
        self.calls = []

    async def transfer(self, source_url, path_prefix):
        self.calls.append((source_url, path_prefix))
        if "broken" in source_url:
            raise S3UploadError("bucket unreachable", retryable=False)
        return f"https://store.test/{path_prefix}/{len(self.calls)}"


@pytest.fixture
def build(uow_factory, no_sleep):
    """build(adapter, **options) → TaskOrchestrator wired with fast retries."""

    def _build(adapter, poll_attempts=5, **options):
        engine = RetryEngine(
            RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=0.0),
            sleep=no_sleep,
        )
        poller = TaskPoller(engine, max_attempts=poll_attempts, sleep=no_sleep)
        return TaskOrchestrator(
            uow_factory,
            retry_engine=engine,
            poller=poller,
            adapter_factory=lambda config: adapter,
            **options,
        )

    return _build


def body(**overrides):
    values = {"model_identifier": "flux-pro", "prompt": "an owl reading by candlelight"}
    values.update(overrides)
    return values


async def stored(uow_factory, request_id):
    async with await uow_factory() as uow:
        return await uow.generations.get_by_id(request_id, include_deleted=True)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_persists_pending_request(self, build, make_provider, uow_factory):
        provider = await make_provider()
        orchestrator = build(FakeSyncAdapter())

        request = await orchestrator.submit(
            body(parameters={"size_or_ratio": "1920x1080"}), client_key="sk-live-0123456789"
        )

        row = await stored(uow_factory, request.id)
        assert row.status == GenerationStatus.PENDING
        assert row.provider_id == provider.id
        assert row.parameters == {"aspect_ratio": "16:9"}
        assert row.request_payload["parameters"] == {"size_or_ratio": "1920x1080"}
        assert row.client_key_prefix == "sk-live-"
        assert row.client_key_hash == hashlib.sha256(b"sk-live-0123456789").hexdigest()

    @pytest.mark.asyncio
    async def test_unknown_or_inactive_model(self, build, make_provider, uow_factory):
        provider = await make_provider()
        orchestrator = build(FakeSyncAdapter())

        with pytest.raises(ProviderNotFoundError):
            await orchestrator.submit(body(model_identifier="nope"))

        async with await uow_factory() as uow:
            await uow.providers.set_active(provider.id, False)
        with pytest.raises(ProviderNotFoundError):
            await orchestrator.submit(body())

    @pytest.mark.asyncio
    async def test_invalid_request_is_not_persisted(self, build, make_provider, uow_factory):
        await make_provider()
        orchestrator = build(FakeSyncAdapter())

        with pytest.raises(InvalidRequestError):
            await orchestrator.submit(body(prompt="   "))

        async with await uow_factory() as uow:
            _, total = await uow.generations.list_requests()
        assert total == 0


class TestSyncProcessing:
    @pytest.mark.asyncio
    async def test_success_records_results_and_counts_call(
        self, build, make_provider, uow_factory
    ):
        provider = await make_provider()
        adapter = FakeSyncAdapter(
            AdapterResult(artifacts=[image("https://cdn.test/1.png")], raw_response={"ok": 1})
        )
        orchestrator = build(adapter)

        result = await orchestrator.run(body(parameters={"size_or_ratio": "16:9"}))

        assert result.status == GenerationStatus.SUCCESS
        assert result.artifacts == [image("https://cdn.test/1.png")]
        assert adapter.dispatched[0].parameters == {"aspect_ratio": "16:9"}

        row = await stored(uow_factory, result.id)
        assert row.status == GenerationStatus.SUCCESS
        assert row.progress == 100
        assert row.response_payload == {"ok": 1}
        assert row.error_message is None
        assert row.completed_at is not None

        async with await uow_factory() as uow:
            assert (await uow.providers.get_by_id(provider.id)).call_count == 1

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, build, make_provider):
        await make_provider()
        adapter = FakeSyncAdapter(
            ProviderError("502"),
            ProviderError("503"),
            AdapterResult(artifacts=[image("https://cdn.test/1.png")]),
        )

        result = await build(adapter).run(body())

        assert result.status == GenerationStatus.SUCCESS
        assert len(adapter.dispatched) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_with_kind(self, build, make_provider, uow_factory):
        provider = await make_provider()
        adapter = FakeSyncAdapter(ProviderError("Provider error (500): boom"))

        result = await build(adapter).run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "PROVIDER_ERROR"
        assert len(adapter.dispatched) == 3
        row = await stored(uow_factory, result.id)
        assert row.results is None
        assert row.response_payload["error"]["kind"] == "PROVIDER_ERROR"
        async with await uow_factory() as uow:
            assert (await uow.providers.get_by_id(provider.id)).call_count == 0

    @pytest.mark.asyncio
    async def test_authentication_failure_is_not_retried(self, build, make_provider):
        await make_provider()
        adapter = FakeSyncAdapter(AuthenticationError("Authentication failed (401): bad key"))

        result = await build(adapter).run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "AUTHENTICATION_FAILED"
        assert result.error_message == "Authentication failed (401): bad key"
        assert len(adapter.dispatched) == 1

    @pytest.mark.asyncio
    async def test_dispatch_deadline(self, build, make_provider):
        await make_provider()

        class SlowAdapter(FakeSyncAdapter):
            async def dispatch(self, request):
                self.dispatched.append(request)
                await asyncio.sleep(5)

        adapter = SlowAdapter()
        result = await build(adapter, dispatch_timeout=0.01).run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "PROVIDER_TIMEOUT"
        assert len(adapter.dispatched) == 3

    @pytest.mark.asyncio
    async def test_thread_dispatch_deadline_is_not_retried(self, build, make_provider):
        await make_provider()

        class SlowThreadAdapter(FakeSyncAdapter):
            dispatches_in_thread = True

            async def dispatch(self, request):
                self.dispatched.append(request)
                await asyncio.sleep(5)

        adapter = SlowThreadAdapter()
        result = await build(adapter, dispatch_timeout=0.01).run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "PROVIDER_TIMEOUT"
        assert len(adapter.dispatched) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code, kind, attempts",
        [
            (503, "PROVIDER_ERROR", 3),
            (401, "AUTHENTICATION_FAILED", 1),
        ],
    )
    async def test_http_errors_from_real_adapter(
        self, build, make_provider, status_code, kind, attempts
    ):
        await make_provider()
        sent = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(request)
            return httpx.Response(status_code, json={"detail": "nope"})

        transport = httpx.MockTransport(handler)
        orchestrator = build(None)
        orchestrator.adapter_factory = lambda config: create_adapter(config, transport=transport)

        result = await orchestrator.run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == kind
        assert f"({status_code})" in result.error_message
        assert len(sent) == attempts
        assert sent[0].url.path == "/v1/flux/generate"

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_closed(self, build, make_provider):
        await make_provider()

        result = await build(FakeSyncAdapter(KeyError("images"))).run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_adapter_fails_at_dispatch(self, uow_factory, make_provider, no_sleep):
        await make_provider(adapter_name="mystery")
        orchestrator = TaskOrchestrator(
            uow_factory, retry_engine=RetryEngine(RetryPolicy(jitter=0.0), sleep=no_sleep)
        )

        result = await orchestrator.run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "INTERNAL_ERROR"
        assert "mystery" in result.error_message

    @pytest.mark.asyncio
    async def test_job_from_non_polling_adapter(self, build, make_provider):
        await make_provider()
        adapter = FakeSyncAdapter(JobHandle(provider_task_id="t-1"))

        result = await build(adapter).run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_non_pending_request_is_skipped(self, build, make_provider):
        await make_provider()
        adapter = FakeSyncAdapter(AdapterResult(artifacts=[image("https://cdn.test/1.png")]))
        orchestrator = build(adapter)
        request = await orchestrator.submit(body())
        await orchestrator.cancel(request.id)

        result = await orchestrator.process(request.id)

        assert result.status == GenerationStatus.CANCELLED
        assert adapter.dispatched == []

    @pytest.mark.asyncio
    async def test_process_unknown_request(self, build):
        with pytest.raises(RequestNotFoundError):
            await build(FakeSyncAdapter()).process(uuid4())


class TestAsyncProcessing:
    @pytest.mark.asyncio
    async def test_job_is_polled_to_success(self, build, make_provider, uow_factory):
        await make_provider(model_identifier="kling-v1", adapter_name="kling")
        adapter = FakeJobAdapter(
            TaskStatus.running(progress=30),
            TaskStatus.succeeded([video("https://kling.test/v.mp4")], raw_response={"s": "ok"}),
        )

        result = await build(adapter).run(body(model_identifier="kling-v1"))

        assert result.status == GenerationStatus.SUCCESS
        assert result.provider_task_id == "job-1"
        assert adapter.checks == 2
        row = await stored(uow_factory, result.id)
        assert row.artifacts == [video("https://kling.test/v.mp4")]
        assert row.response_payload == {"s": "ok"}

    @pytest.mark.asyncio
    async def test_provider_failure_detail_is_verbatim(self, build, make_provider):
        await make_provider()
        adapter = FakeJobAdapter(
            TaskStatus.failed("Prompt flagged by moderation", raw_response={"code": 1301})
        )

        result = await build(adapter).run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "TASK_FAILED"
        assert result.error_message == "Prompt flagged by moderation"
        assert result.response_payload["provider_response"] == {"code": 1301}

    @pytest.mark.asyncio
    async def test_provider_side_cancellation_fails_request(self, build, make_provider):
        await make_provider()
        adapter = FakeJobAdapter(TaskStatus.cancelled("Prediction canceled by provider"))

        result = await build(adapter).run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "TASK_CANCELLED"
        assert result.error_message == "Prediction canceled by provider"
        assert adapter.cancelled == []

    @pytest.mark.asyncio
    async def test_poll_ceiling_times_out(self, build, make_provider):
        await make_provider()
        adapter = FakeJobAdapter(TaskStatus.running())

        result = await build(adapter, poll_attempts=3).run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "TASK_TIMEOUT"
        assert result.response_payload["error"]["details"]["attempts"] == 3
        assert adapter.checks == 3

    @pytest.mark.asyncio
    async def test_cancel_during_polling(self, build, make_provider, uow_factory):
        await make_provider()
        holder = {}

        async def cancel_on_first_check(check):
            if check == 1:
                await holder["orchestrator"].cancel(holder["request_id"])

        adapter = FakeJobAdapter(TaskStatus.running(), on_status=cancel_on_first_check)
        orchestrator = build(adapter)
        request = await orchestrator.submit(body())
        holder.update(orchestrator=orchestrator, request_id=request.id)

        result = await orchestrator.process(request.id)

        assert result.status == GenerationStatus.CANCELLED
        assert adapter.cancelled == ["job-1"]
        assert adapter.checks == 1

    @pytest.mark.asyncio
    async def test_late_success_does_not_overwrite_cancel(
        self, build, make_provider, uow_factory
    ):
        provider = await make_provider()
        holder = {}

        async def cancel_then_succeed(check):
            await holder["orchestrator"].cancel(holder["request_id"])

        adapter = FakeJobAdapter(
            TaskStatus.succeeded([video("https://kling.test/late.mp4")]),
            on_status=cancel_then_succeed,
        )
        orchestrator = build(adapter)
        request = await orchestrator.submit(body())
        holder.update(orchestrator=orchestrator, request_id=request.id)

        result = await orchestrator.process(request.id)

        assert result.status == GenerationStatus.CANCELLED
        assert result.results is None
        async with await uow_factory() as uow:
            assert (await uow.providers.get_by_id(provider.id)).call_count == 0

    @pytest.mark.asyncio
    async def test_cancel_during_dispatch_cancels_remote_job(self, build, make_provider):
        await make_provider()
        holder = {}

        async def cancel_before_handle():
            await holder["orchestrator"].cancel(holder["request_id"])

        adapter = FakeJobAdapter(TaskStatus.running(), on_dispatch=cancel_before_handle)
        orchestrator = build(adapter)
        request = await orchestrator.submit(body())
        holder.update(orchestrator=orchestrator, request_id=request.id)

        result = await orchestrator.process(request.id)

        assert result.status == GenerationStatus.CANCELLED
        assert result.provider_task_id is None
        assert adapter.cancelled == ["job-1"]
        assert adapter.checks == 0

    @pytest.mark.asyncio
    async def test_resume_polls_existing_job(self, build, make_provider, uow_factory):
        provider = await make_provider()
        request = GenerationRequest(
            provider_id=provider.id,
            model_identifier="flux-pro",
            prompt="resumed",
            status=GenerationStatus.PROCESSING,
            provider_task_id="job-1",
        )
        async with await uow_factory() as uow:
            await uow.generations.add(request)
        adapter = FakeJobAdapter(TaskStatus.succeeded([video("https://kling.test/r.mp4")]))

        result = await build(adapter).resume(request.id)

        assert result.status == GenerationStatus.SUCCESS
        assert adapter.dispatched == []
        assert adapter.checks == 1

    @pytest.mark.asyncio
    async def test_fail_orphan(self, build, make_provider, uow_factory):
        provider = await make_provider()
        request = GenerationRequest(
            provider_id=provider.id,
            model_identifier="flux-pro",
            prompt="orphan",
            status=GenerationStatus.PROCESSING,
        )
        async with await uow_factory() as uow:
            await uow.generations.add(request)

        result = await build(FakeJobAdapter()).fail_orphan(request.id)

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "INTERNAL_ERROR"


class TestResultTransfer:
    @pytest.mark.asyncio
    async def test_artifacts_are_moved_to_storage(self, build, make_provider):
        await make_provider(upload_to_s3=True, s3_path_prefix="/media/")
        transfer = FakeTransfer()
        adapter = FakeSyncAdapter(
            AdapterResult(
                artifacts=[image("https://cdn.test/1.png"), image("data:image/png;base64,aGk=")]
            )
        )

        result = await build(adapter, result_transfer=transfer).run(body())

        assert result.status == GenerationStatus.SUCCESS
        prefix = f"media/{result.id}"
        assert [call[1] for call in transfer.calls] == [prefix, prefix]
        first, second = result.artifacts
        assert first.url == f"https://store.test/{prefix}/1"
        assert first.metadata == {"source_url": "https://cdn.test/1.png"}
        assert second.url == f"https://store.test/{prefix}/2"
        assert second.metadata == {}

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_provider_url(self, build, make_provider):
        await make_provider(upload_to_s3=True)
        adapter = FakeSyncAdapter(
            AdapterResult(
                artifacts=[image("https://cdn.test/ok.png"), image("https://cdn.test/broken.png")]
            )
        )

        result = await build(adapter, result_transfer=FakeTransfer()).run(body())

        assert result.status == GenerationStatus.SUCCESS
        ok, broken = result.artifacts
        assert ok.url.startswith(f"https://store.test/generations/{result.id}/")
        assert broken.url == "https://cdn.test/broken.png"
        assert broken.metadata["transfer_error"] == "bucket unreachable"

    @pytest.mark.asyncio
    async def test_total_failure_fails_request(self, build, make_provider):
        await make_provider(upload_to_s3=True)
        adapter = FakeSyncAdapter(
            AdapterResult(artifacts=[image("https://cdn.test/broken.png")])
        )

        result = await build(adapter, result_transfer=FakeTransfer()).run(body())

        assert result.status == GenerationStatus.FAILED
        assert result.error_kind == "S3_UPLOAD_FAILED"

    @pytest.mark.asyncio
    async def test_transfer_skipped_when_disabled(self, build, make_provider):
        await make_provider(upload_to_s3=False)
        transfer = FakeTransfer()
        adapter = FakeSyncAdapter(AdapterResult(artifacts=[image("https://cdn.test/1.png")]))

        result = await build(adapter, result_transfer=transfer).run(body())

        assert result.artifacts == [image("https://cdn.test/1.png")]
        assert transfer.calls == []


class TestClientOperations:
    @pytest.mark.asyncio
    async def test_foreign_client_key_sees_not_found(self, build, make_provider):
        await make_provider()
        orchestrator = build(FakeSyncAdapter())
        request = await orchestrator.submit(body(), client_key="key-alice")

        assert (await orchestrator.get(request.id, "key-alice")).id == request.id
        assert (await orchestrator.get(request.id)).id == request.id
        with pytest.raises(RequestNotFoundError):
            await orchestrator.get(request.id, "key-bob")

        items, total = await orchestrator.list_requests(client_key="key-bob")
        assert (items, total) == ([], 0)
        _, total = await orchestrator.list_requests(client_key="key-alice")
        assert total == 1

    @pytest.mark.asyncio
    async def test_cancel_terminal_request_is_rejected(self, build, make_provider):
        await make_provider()
        adapter = FakeSyncAdapter(AdapterResult(artifacts=[image("https://cdn.test/1.png")]))
        orchestrator = build(adapter)
        result = await orchestrator.run(body())

        with pytest.raises(CancellationNotAllowedError):
            await orchestrator.cancel(result.id)

    @pytest.mark.asyncio
    async def test_delete_requires_terminal_state(self, build, make_provider):
        await make_provider()
        orchestrator = build(FakeSyncAdapter())
        request = await orchestrator.submit(body())

        with pytest.raises(DeletionNotAllowedError):
            await orchestrator.delete(request.id)

        cancelled = await orchestrator.cancel(request.id)
        assert cancelled.status == GenerationStatus.CANCELLED

        await orchestrator.delete(request.id)
        with pytest.raises(RequestNotFoundError):
            await orchestrator.get(request.id)
        with pytest.raises(RequestNotFoundError):
            await orchestrator.delete(request.id)
