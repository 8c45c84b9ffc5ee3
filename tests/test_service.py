import asyncio

import httpx
import pytest
import pytest_asyncio

from orchestrator_library.errors import (
    CredentialsRequiredError,
    ProviderRequestError,
    QuotaExhaustedError,
    RequestCancelledError,
    UnknownProviderError,
    UnsupportedOperationError,
)
from orchestrator_library.models import (
    GenerationKind,
    GenerationStatus,
    ProviderResult,
    TaskStatus,
    TaskStatusResult,
)
from orchestrator_library.persistence import MemoryStateFile
from orchestrator_library.providers.custom_provider import CustomProvider
from orchestrator_library.service import GenerationService

from conftest import StubProvider


@pytest_asyncio.fixture
async def make_service(clock):
    """Builds services on the test clock and stops each one at teardown."""
    services = []

    def factory(*adapters, credentials=None, history=None, client=None):
        service = GenerationService(
            {adapter.provider_id: adapter for adapter in adapters},
            credentials=credentials,
            clock=clock,
            history_state=history or MemoryStateFile(),
            history_retention_seconds=24 * 3600,
            client=client,
        )
        services.append(service)
        return service

    yield factory
    for service in services:
        await service.stop()


@pytest.mark.asyncio
async def test_sync_submission_resolves_to_success(make_service):
    provider = StubProvider(
        behaviors=[ProviderResult(url="https://x/cat.png", metadata={"seed": 11, "steps": None})]
    )
    service = make_service(provider, credentials={"stub": ["k1"]})

    record = await service.submit("stub", "image", {"prompt": "a cat"})

    assert record.status is GenerationStatus.SUCCESS
    assert record.result_url == "https://x/cat.png"
    assert record.params == {"prompt": "a cat", "seed": 11}
    assert service.get(record.id) == record
    assert provider.calls == [(GenerationKind.IMAGE, "k1")]


@pytest.mark.asyncio
async def test_prompt_rewrite_stores_text(make_service):
    provider = StubProvider(behaviors=[ProviderResult(text="a majestic cat, golden hour")])
    service = make_service(provider)

    record = await service.submit("stub", GenerationKind.PROMPT, {"prompt": "cat"})

    assert record.result_text == "a majestic cat, golden hour"
    assert record.result_url is None


@pytest.mark.asyncio
async def test_async_submission_respects_predict_hint(clock, make_service):
    provider = StubProvider(behaviors=[ProviderResult(task_id="task-1", predict=10)])
    provider.status_results["task-1"] = TaskStatusResult(
        status=TaskStatus.SUCCESS, result_url="https://x/video.mp4"
    )
    service = make_service(provider)

    record = await service.submit("stub", "video", {"image_url": "https://x/frame.png"})
    assert record.status is GenerationStatus.GENERATING
    assert record.task_id == "task-1"
    assert record.next_poll_eligible_at == clock.now() + 10

    clock.advance(9.5)
    await service.poller.run_cycle()
    assert provider.status_calls == []

    clock.advance(0.5)
    await service.poller.run_cycle()
    assert provider.status_calls == [("task-1", None)]
    assert service.get(record.id).status is GenerationStatus.SUCCESS


@pytest.mark.asyncio
async def test_quota_exhaustion_marks_record_failed_and_raises(make_service):
    provider = StubProvider(behaviors=[ProviderRequestError.quota("error_quota_exhausted")])
    service = make_service(provider, credentials={"stub": ["k1", "k2"]})

    with pytest.raises(QuotaExhaustedError):
        await service.submit("stub", "image", {"prompt": "x"})

    [record] = service.history()
    assert record.status is GenerationStatus.FAILED
    assert "exhausted" in record.error_message
    assert [credential for _, credential in provider.calls] == ["k1", "k2"]
    assert service.stats("stub") == {"total": 2, "active": 0, "exhausted": 2}


@pytest.mark.asyncio
async def test_transient_error_marks_record_failed(make_service):
    provider = StubProvider(behaviors=[ProviderRequestError("Space is sleeping", status_code=503)])
    service = make_service(provider, credentials={"stub": ["k1", "k2"]})

    with pytest.raises(ProviderRequestError):
        await service.submit("stub", "image", {"prompt": "x"})

    [record] = service.history()
    assert record.error_message == "Space is sleeping"
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_provider_requiring_credentials(make_service):
    provider = StubProvider(requires_credentials=True)
    service = make_service(provider)

    with pytest.raises(CredentialsRequiredError):
        await service.submit("stub", "image", {"prompt": "x"})

    assert provider.calls == []
    assert service.history()[0].status is GenerationStatus.FAILED


@pytest.mark.asyncio
async def test_public_kind_bypasses_the_pool(make_service):
    provider = StubProvider(
        behaviors=[ProviderResult(text="rewritten")], public_kinds={GenerationKind.PROMPT}
    )
    service = make_service(provider, credentials={"stub": ["k1"]})

    await service.submit("stub", "prompt", {"prompt": "x"})

    assert provider.calls == [(GenerationKind.PROMPT, None)]


@pytest.mark.asyncio
async def test_unknown_provider_and_kind_create_no_record(make_service):
    service = make_service(StubProvider())

    with pytest.raises(UnknownProviderError):
        await service.submit("nope", "image", {})
    with pytest.raises(UnsupportedOperationError):
        await service.submit("stub", "hologram", {})

    assert service.history() == []


@pytest.mark.asyncio
async def test_cancel_removes_record_and_flags_nothing(make_service):
    started = asyncio.Event()

    async def hang(credential):
        started.set()
        await asyncio.Event().wait()

    provider = StubProvider(behaviors=[hang])
    service = make_service(provider, credentials={"stub": ["k1"]})

    submission = asyncio.create_task(service.submit("stub", "image", {"prompt": "x"}))
    await asyncio.wait_for(started.wait(), timeout=1.0)
    [record] = service.history()

    assert service.cancel(record.id) is True
    with pytest.raises(RequestCancelledError):
        await submission

    assert service.history() == []
    assert service.stats("stub")["exhausted"] == 0
    assert service.cancel(record.id) is False


@pytest.mark.asyncio
async def test_pre_set_cancel_event_never_calls_provider(make_service):
    provider = StubProvider()
    service = make_service(provider)
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(RequestCancelledError):
        await service.submit("stub", "image", {"prompt": "x"}, cancel_event=cancel)

    assert provider.calls == []
    assert service.history() == []


@pytest.mark.asyncio
async def test_poll_status_uses_first_available_credential(make_service):
    provider = StubProvider()
    provider.status_results["t"] = ProviderRequestError.quota("quota")
    service = make_service(provider, credentials={"stub": ["k1", "k2"]})
    await service.pool.mark_exhausted("stub", "k1")

    with pytest.raises(ProviderRequestError):
        await service.poll_status("stub", "t")

    assert provider.status_calls == [("t", "k2")]
    # Status checks never flag credentials
    assert not service.pool.is_exhausted("stub", "k2")


@pytest.mark.asyncio
async def test_delete_clears_selection(make_service):
    service = make_service(StubProvider())
    record = await service.submit("stub", "image", {"prompt": "x"})
    service.select(record.id)

    assert await service.delete(record.id) is True
    assert service.current() is None
    assert await service.delete(record.id) is False


@pytest.mark.asyncio
async def test_start_evicts_expired_history(clock, make_service):
    service = make_service(StubProvider())
    old = await service.submit("stub", "image", {"prompt": "x"})
    clock.advance(25 * 3600)
    fresh = await service.submit("stub", "image", {"prompt": "y"})

    await service.start()
    try:
        assert service.poller.is_alive
        assert [r.id for r in service.history()] == [fresh.id]
        assert old.id not in service.store
    finally:
        await service.stop()

    assert not service.poller.is_alive


@pytest.mark.asyncio
async def test_from_settings_reads_environment(clock):
    env = {
        "MODELSCOPE_API_KEY": "ms-1,ms-2",
        "CUSTOM_PROVIDERS": '[{"id": "mine", "api_url": "https://gen.test", "token": "c-1"}]',
        "ORCHESTRATOR_STATE_DIR": "memory",
    }
    service = GenerationService.from_settings(environ=env, clock=clock)
    try:
        assert set(service.providers) == {"huggingface", "modelscope", "mine"}
        assert service.stats("modelscope")["total"] == 2
        assert service.stats("mine")["total"] == 1
        assert service.pool.today("modelscope") == "2026-01-01"
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_http_client_is_created_lazily_and_closed_on_stop(make_service):
    service = make_service(StubProvider())
    assert service._client is None

    client = service.client
    assert service.client is client

    await service.stop()
    assert client.is_closed
    assert service._client is None


@pytest.mark.asyncio
async def test_injected_http_client_is_left_open(make_service):
    async with httpx.AsyncClient() as client:
        service = make_service(StubProvider(), client=client)
        await service.stop()

        assert service.client is client
        assert not client.is_closed


@pytest.mark.asyncio
async def test_raw_image_bytes_are_not_persisted(make_service):
    provider = StubProvider(behaviors=[ProviderResult(url="https://x/edited.png")])
    history = MemoryStateFile()
    service = make_service(provider, history=history)

    record = await service.submit(
        "stub", "edit", {"prompt": "x", "images": [b"\x89PNG1234", "https://x/ref.png"]}
    )

    assert record.params["images"] == ["<8 bytes>", "https://x/ref.png"]
    assert history.data["records"][0]["params"]["images"] == ["<8 bytes>", "https://x/ref.png"]


@pytest.mark.asyncio
async def test_list_models_uses_first_available_credential(make_service):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "flux", "type": ["text2image"]}])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        service = make_service(
            CustomProvider("mine", "https://gen.test"), credentials={"mine": ["c-1"]}, client=client
        )
        grouped = await service.list_models("mine")

    assert seen[0].headers["Authorization"] == "Bearer c-1"
    assert [m["id"] for m in grouped["generate"]] == ["flux"]
    with pytest.raises(UnknownProviderError):
        await service.list_models("nope")


@pytest.mark.asyncio
async def test_list_models_unsupported_by_provider(make_service):
    service = make_service(StubProvider())

    with pytest.raises(UnsupportedOperationError):
        await service.list_models("stub")
