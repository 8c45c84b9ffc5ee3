# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Completion poller for asynchronous provider tasks.

One scheduling loop per session. Each cycle re-reads the store, checks
every record whose poll time has come, waits for the whole batch, writes
terminal results back and then sleeps. A cycle never overlaps the next,
so outstanding status requests are bounded by the number of ready tasks.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from .clock import Clock, SystemClock
from .errors import InvalidTransitionError, UnknownProviderError
from .models import (
    DEFAULT_TASK_FAILURE_MESSAGE,
    GenerationRecord,
    TaskStatus,
    TaskStatusResult,
)
from .store import GenerationStore, SelectionProjection

lib_logger = logging.getLogger("orchestrator_library")

DEFAULT_POLL_INTERVAL = 5.0

StatusChecker = Callable[[str, str], Awaitable[TaskStatusResult]]
Sleeper = Callable[[float], Awaitable[None]]


class AsyncTaskPoller:
    """
    Scheduler with explicit start/stop and a single-flight guard.

    Tests drive run_cycle() directly; start() wraps it in a loop that
    sleeps for the delay each cycle returns.
    """

    def __init__(
        self,
        store: GenerationStore,
        selection: SelectionProjection,
        status_checker: StatusChecker,
        clock: Optional[Clock] = None,
        base_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Sleeper = asyncio.sleep,
    ):
        """
        Args:
            store: History store to discover and reconcile records in
            selection: Current-selection projection to keep in sync
            status_checker: (provider_id, task_id) -> TaskStatusResult
            clock: Time source for poll eligibility
            base_interval: Minimum seconds between cycles
            sleep: Awaitable sleep used between cycles
        """
        self._store = store
        self._selection = selection
        self._check_status = status_checker
        self._clock = clock or SystemClock()
        self._base_interval = base_interval
        self._sleep = sleep

        self._alive = False
        self._task: Optional[asyncio.Task] = None
        self._wait: Optional[asyncio.Future] = None
        self.cycles = 0
        # Records already reported as belonging to an unconfigured provider
        self._unroutable: Set[str] = set()

    @property
    def is_alive(self) -> bool:
        return self._alive

    @property
    def base_interval(self) -> float:
        return self._base_interval

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> asyncio.Task:
        if self._alive and self._task is not None and not self._task.done():
            lib_logger.warning("Task poller already running, not starting a second loop")
            return self._task
        self._alive = True
        self._task = asyncio.create_task(self._loop(), name="async-task-poller")
        lib_logger.info(f"Task poller started (interval {self._base_interval:.1f}s)")
        return self._task

    async def stop(self) -> None:
        """Stops the loop and cancels any scheduled wait."""
        self._alive = False
        if self._wait is not None and not self._wait.done():
            self._wait.cancel()
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        lib_logger.info("Task poller stopped")

    async def _loop(self) -> None:
        while self._alive:
            try:
                delay = await self.run_cycle()
            except Exception as e:
                lib_logger.error(f"Task poller cycle failed: {e}", exc_info=True)
                delay = self._base_interval

            # Checked before every reschedule so a stopped poller never re-arms
            if not self._alive:
                break
            self._wait = asyncio.ensure_future(self._sleep(delay))
            try:
                await self._wait
            finally:
                self._wait = None

    # =========================================================================
    # CYCLE
    # =========================================================================

    async def run_cycle(self) -> float:
        """
        Runs one discover/check/reconcile pass.

        Returns:
            Seconds to wait before the next cycle
        """
        self.cycles += 1
        pending = self._store.pending_tasks()
        self._unroutable.intersection_update(r.id for r in pending)
        if not pending:
            return self._base_interval

        now = self._clock.now()
        ready = [r for r in pending if r.is_poll_ready(now)]
        if not ready:
            earliest = min(r.next_poll_eligible_at for r in pending)
            delay = max(self._base_interval, earliest - now)
            lib_logger.debug(
                f"{len(pending)} task(s) pending, none ready. Next check in {delay:.1f}s"
            )
            return delay

        lib_logger.debug(f"Checking {len(ready)}/{len(pending)} pending task(s)")
        results = await asyncio.gather(*(self._check(record) for record in ready))

        for record, result in zip(ready, results):
            if result is None:
                continue
            try:
                await self._reconcile(record, result)
            except Exception as e:
                lib_logger.warning(
                    f"Failed to reconcile task {record.task_id} for record {record.id}: {e}",
                    exc_info=True,
                )

        return self._base_interval

    async def _check(self, record: GenerationRecord) -> Optional[TaskStatusResult]:
        try:
            return await self._check_status(record.provider_id, record.task_id)
        except UnknownProviderError:
            if record.id not in self._unroutable:
                self._unroutable.add(record.id)
                lib_logger.warning(
                    f"Task {record.task_id} belongs to unconfigured provider "
                    f"'{record.provider_id}', leaving it pending"
                )
            else:
                lib_logger.debug(f"Skipping task {record.task_id}, provider '{record.provider_id}' unconfigured")
            return None
        except Exception as e:
            # Left pending, the next cycle retries it
            lib_logger.warning(
                f"Failed to poll task {record.task_id} on '{record.provider_id}': {e}",
                exc_info=True,
            )
            return None

    async def _reconcile(self, record: GenerationRecord, result: TaskStatusResult) -> None:
        if result.status is TaskStatus.SUCCESS and result.result_url:
            updated = await self._apply_terminal(
                record, lambda r: r.mark_success(result_url=result.result_url)
            )
        elif result.status is TaskStatus.FAILED:
            message = result.error_message or DEFAULT_TASK_FAILURE_MESSAGE
            updated = await self._apply_terminal(record, lambda r: r.mark_failed(message))
        else:
            if result.retry_after is not None:
                eligible_at = self._clock.now() + result.retry_after
                await self._store.update(record.id, lambda r: r.defer_poll(eligible_at))
            return

        if updated is None:
            return
        lib_logger.info(
            f"Task {record.task_id} on '{record.provider_id}' finished: {updated.status.value}"
        )
        self._selection.refresh_if_current(updated)

    async def _apply_terminal(
        self,
        record: GenerationRecord,
        mutate: Callable[[GenerationRecord], None],
    ) -> Optional[GenerationRecord]:
        try:
            updated = await self._store.update(record.id, mutate)
        except InvalidTransitionError:
            lib_logger.debug(f"Record {record.id} already finished, skipping")
            return None
        if updated is None:
            lib_logger.info(
                f"Task {record.task_id} finished but record {record.id} was removed, discarding result"
            )
        return updated

