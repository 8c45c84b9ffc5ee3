# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import asyncio
import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Union

import httpx

from .clock import Clock, SystemClock
from .config import OrchestratorSettings, load_credentials_from_env
from .credential_pool import CredentialPool
from .errors import (
    ProviderRequestError,
    RequestCancelledError,
    UnknownProviderError,
    UnsupportedOperationError,
)
from .executor import RetryingRequestExecutor
from .models import GenerationKind, GenerationRecord, ProviderResult, TaskStatusResult
from .persistence import JsonStateFile, MemoryStateFile
from .poller import DEFAULT_POLL_INTERVAL, AsyncTaskPoller
from .providers import ProviderAdapter, build_adapters
from .store import GenerationStore, SelectionProjection

lib_logger = logging.getLogger("orchestrator_library")

CREDENTIAL_STATUS_FILE = "credential_status.json"
GENERATION_HISTORY_FILE = "generation_history.json"


class GenerationService:
    """
    Session facade over the orchestration core.

    Wires the provider adapters to one CredentialPool, one executor, the
    history store with its selection projection and a single poller, and
    owns the shared httpx.AsyncClient.
    """

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter],
        credentials: Optional[Mapping[str, List[str]]] = None,
        clock: Optional[Clock] = None,
        credential_state: Optional[Union[JsonStateFile, MemoryStateFile]] = None,
        history_state: Optional[Union[JsonStateFile, MemoryStateFile]] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        history_retention_seconds: Optional[float] = None,
        request_timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ):
        self._adapters: Dict[str, ProviderAdapter] = dict(adapters)
        self._clock = clock or SystemClock()
        self._retention_seconds = history_retention_seconds

        self._pool = CredentialPool(
            credentials=credentials,
            state_file=credential_state,
            clock=self._clock,
            day_offsets={pid: a.day_offset_hours for pid, a in self._adapters.items()},
        )
        self._executor = RetryingRequestExecutor(self._pool)
        self._store = GenerationStore(
            state_file=history_state,
            retention_seconds=history_retention_seconds,
            now=self._clock.now(),
        )
        self._selection = SelectionProjection(self._store)
        self._poller = AsyncTaskPoller(
            self._store,
            self._selection,
            self.poll_status,
            clock=self._clock,
            base_interval=poll_interval,
            sleep=sleep,
        )

        self._owns_client = client is None
        self._client = client
        self._request_timeout = request_timeout
        # record id -> event that aborts the in-flight submission
        self._cancel_events: Dict[str, asyncio.Event] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Optional[OrchestratorSettings] = None,
        environ: Optional[Mapping[str, str]] = None,
        clock: Optional[Clock] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "GenerationService":
        """Builds a service from environment configuration."""
        settings = settings or OrchestratorSettings.from_env(environ)
        credentials = load_credentials_from_env(environ, settings.custom_providers)

        if settings.state_dir:
            credential_state = JsonStateFile(os.path.join(settings.state_dir, CREDENTIAL_STATUS_FILE))
            history_state = JsonStateFile(os.path.join(settings.state_dir, GENERATION_HISTORY_FILE))
        else:
            credential_state = MemoryStateFile()
            history_state = MemoryStateFile()

        adapters = build_adapters(settings.custom_providers)
        configured = ", ".join(f"{pid} ({len(credentials.get(pid, []))})" for pid in adapters)
        lib_logger.info(f"Providers configured: {configured}")

        return cls(
            adapters,
            credentials=credentials,
            clock=clock,
            credential_state=credential_state,
            history_state=history_state,
            poll_interval=settings.poll_interval_seconds,
            history_retention_seconds=settings.history_retention_seconds,
            request_timeout=settings.request_timeout_seconds,
            client=client,
        )

    # =========================================================================
    # COMPONENTS
    # =========================================================================

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    @property
    def store(self) -> GenerationStore:
        return self._store

    @property
    def selection(self) -> SelectionProjection:
        return self._selection

    @property
    def poller(self) -> AsyncTaskPoller:
        return self._poller

    @property
    def client(self) -> httpx.AsyncClient:
        """Shared HTTP client, created on first use when none was injected."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._request_timeout)
        return self._client

    @property
    def providers(self) -> List[str]:
        return list(self._adapters)

    def adapter(self, provider_id: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            raise UnknownProviderError(f"Unknown provider '{provider_id}'")
        return adapter

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def submit(
        self,
        provider_id: str,
        kind: Union[GenerationKind, str],
        params: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationRecord:
        """
        Submits one generation request.

        The record is stored as generating before the provider is called.
        A synchronous result resolves it to success in the same call; an
        asynchronous one leaves it generating with a task id for the poller.

        Args:
            provider_id: Target provider
            kind: What to generate
            params: Provider request parameters
            cancel_event: Setting this event aborts the submission

        Returns:
            The stored record after submission

        Raises:
            QuotaExhaustedError, CredentialsRequiredError, ProviderRequestError:
                the record is marked failed first
            RequestCancelledError: the record is removed
        """
        adapter = self.adapter(provider_id)
        try:
            kind = GenerationKind(kind)
        except ValueError:
            raise UnsupportedOperationError(f"Unknown generation kind '{kind}'") from None
        if not adapter.supports(kind):
            raise adapter.unsupported(kind)

        params = dict(params or {})
        record = GenerationRecord(
            provider_id=provider_id,
            kind=kind,
            created_at=self._clock.now(),
            params=_storable(params),
        )
        await self._store.add(record)

        cancel_event = cancel_event or asyncio.Event()
        self._cancel_events[record.id] = cancel_event

        async def operation(credential: Optional[str]) -> ProviderResult:
            return await adapter.generate(kind, params, credential, self.client)

        try:
            if adapter.uses_credentials(kind):
                call = self._executor.execute(
                    provider_id,
                    operation,
                    requires_credentials=adapter.requires_credentials,
                    operation_name=f"{kind.value} generation",
                )
            else:
                call = operation(None)
            result = await _run_cancellable(call, cancel_event)
        except (RequestCancelledError, asyncio.CancelledError):
            await self._store.delete(record.id)
            lib_logger.info(f"Submission {record.id} to '{provider_id}' cancelled, record removed")
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            await self._store.update(record.id, lambda r: r.mark_failed(message))
            lib_logger.warning(f"Submission {record.id} to '{provider_id}' failed: {message}")
            raise
        finally:
            self._cancel_events.pop(record.id, None)

        return await self._resolve(record, result)

    async def _resolve(self, record: GenerationRecord, result: ProviderResult) -> GenerationRecord:
        if result.is_async:
            eligible_at = None
            if result.predict is not None and result.predict > 0:
                eligible_at = self._clock.now() + result.predict

            def mutate(r: GenerationRecord) -> None:
                r.attach_task(result.task_id, eligible_at)

            lib_logger.info(
                f"Submission {record.id} queued as task {result.task_id} on '{record.provider_id}'"
            )
        elif result.url or result.text is not None:
            def mutate(r: GenerationRecord) -> None:
                r.params.update({k: v for k, v in result.metadata.items() if v is not None})
                r.mark_success(result_url=result.url, result_text=result.text)
        else:
            message = f"Provider '{record.provider_id}' returned no result"
            await self._store.update(record.id, lambda r: r.mark_failed(message))
            raise ProviderRequestError(message)

        updated = await self._store.update(record.id, mutate)
        if updated is None:
            # Deleted by the user while the provider was working
            lib_logger.info(f"Record {record.id} was removed during submission, result not stored")
            mutate(record)
            return record
        return updated

    def cancel(self, record_id: str) -> bool:
        """Aborts an in-flight submission. False when nothing is in flight for record_id."""
        event = self._cancel_events.get(record_id)
        if event is None:
            return False
        event.set()
        return True

    # =========================================================================
    # POLLING / CREDENTIALS
    # =========================================================================

    async def poll_status(self, provider_id: str, task_id: str) -> TaskStatusResult:
        """Status check for the poller. Uses the first available credential, no failover."""
        adapter = self.adapter(provider_id)
        credential = self._pool.next_available(provider_id)
        return await adapter.poll_status(task_id, credential, self.client)

    async def list_models(self, provider_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """Models the provider advertises, grouped by purpose."""
        adapter = self.adapter(provider_id)
        credential = self._pool.next_available(provider_id)
        return await adapter.list_models(credential, self.client)

    def stats(self, provider_id: str) -> Dict[str, int]:
        self.adapter(provider_id)
        return self._pool.stats(provider_id)

    # =========================================================================
    # HISTORY / SELECTION
    # =========================================================================

    def history(self) -> List[GenerationRecord]:
        return self._store.snapshot()

    def get(self, record_id: str) -> Optional[GenerationRecord]:
        return self._store.get(record_id)

    async def delete(self, record_id: str) -> bool:
        deleted = await self._store.delete(record_id)
        if deleted and self._selection.is_selected(record_id):
            self._selection.clear()
        return deleted

    def select(self, record_id: Optional[str]) -> Optional[GenerationRecord]:
        return self._selection.select(record_id)

    def current(self) -> Optional[GenerationRecord]:
        return self._selection.current()

    async def evict_expired(self) -> int:
        if self._retention_seconds is None:
            return 0
        removed = await self._store.evict_older_than(self._clock.now() - self._retention_seconds)
        if removed:
            lib_logger.info(f"Evicted {removed} history record(s) past retention")
        return removed

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        await self.evict_expired()
        self._poller.start()

    async def stop(self) -> None:
        await self._poller.stop()
        for event in self._cancel_events.values():
            event.set()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def _storable(params: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of params that survives JSON persistence. Raw image bytes become a size marker."""

    def convert(value):
        if isinstance(value, (bytes, bytearray)):
            return f"<{len(value)} bytes>"
        if isinstance(value, (list, tuple)):
            return [convert(v) for v in value]
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        return value

    return {k: convert(v) for k, v in params.items()}


async def _run_cancellable(call, cancel_event: asyncio.Event):
    """Awaits call, aborting it with RequestCancelledError once cancel_event is set."""
    if cancel_event.is_set():
        call.close()
        raise RequestCancelledError("Request cancelled before it started")

    call_task = asyncio.ensure_future(call)
    cancel_task = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({call_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (call_task, cancel_task):
            if not task.done():
                task.cancel()

    if call_task.done() and not call_task.cancelled():
        return call_task.result()

    try:
        await call_task
    except asyncio.CancelledError:
        pass
    raise RequestCancelledError("Request cancelled by user")
