# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Generation history store and the current-selection projection.

The store is mutated from two directions without locks: user actions
(submit, delete, select) and the poller's reconcile step. Every mutation
is a single synchronous swap on the in-memory list followed by a save, so
a concurrent reader never sees a half-applied record.
"""

import copy
import logging
from typing import Callable, List, Optional

from .models import GenerationRecord, GenerationStatus
from .persistence import JsonStateFile, MemoryStateFile

lib_logger = logging.getLogger("orchestrator_library")

HISTORY_SCHEMA_VERSION = 1

SelectionListener = Callable[[GenerationRecord], None]


class GenerationStore:
    """Ordered generation history, newest first."""

    def __init__(
        self,
        state_file: Optional[JsonStateFile] = None,
        retention_seconds: Optional[float] = None,
        now: Optional[float] = None,
    ):
        """
        Args:
            state_file: Where history is persisted
            retention_seconds: Records older than this are dropped on load
            now: Reference time for the retention check
        """
        self._state_file = state_file or MemoryStateFile()
        self._records: List[GenerationRecord] = self._load(retention_seconds, now)

    def _load(self, retention_seconds: Optional[float], now: Optional[float]) -> List[GenerationRecord]:
        data = self._state_file.load()
        records = []
        dropped = 0
        raw_records = data.get("records") or []
        if not isinstance(raw_records, list):
            lib_logger.warning(
                f"History 'records' is a {type(raw_records).__name__}, not a list. Starting with empty history"
            )
            raw_records = []
        for raw in raw_records:
            try:
                record = GenerationRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                dropped += 1
                lib_logger.warning(f"Dropping malformed history entry: {e}")
                continue
            if retention_seconds is not None and now is not None and now - record.created_at >= retention_seconds:
                dropped += 1
                continue
            records.append(record)
        if records or dropped:
            lib_logger.info(f"Loaded {len(records)} history records ({dropped} dropped)")
        return records

    def _find(self, record_id: str) -> Optional[int]:
        for index, record in enumerate(self._records):
            if record.id == record_id:
                return index
        return None

    async def _save(self) -> None:
        await self._state_file.save(
            {
                "schema_version": HISTORY_SCHEMA_VERSION,
                "records": [record.to_dict() for record in self._records],
            }
        )

    # =========================================================================
    # READS (always copies)
    # =========================================================================

    def get(self, record_id: str) -> Optional[GenerationRecord]:
        index = self._find(record_id)
        return copy.deepcopy(self._records[index]) if index is not None else None

    def __contains__(self, record_id: str) -> bool:
        return self._find(record_id) is not None

    def __len__(self) -> int:
        return len(self._records)

    def snapshot(self) -> List[GenerationRecord]:
        return copy.deepcopy(self._records)

    def pending_tasks(self) -> List[GenerationRecord]:
        """Records still generating that have a provider task to poll."""
        return [copy.deepcopy(r) for r in self._records if r.is_pending_task]

    # =========================================================================
    # WRITES
    # =========================================================================

    async def add(self, record: GenerationRecord) -> GenerationRecord:
        if self._find(record.id) is not None:
            raise ValueError(f"Record {record.id} already exists")
        self._records.insert(0, copy.deepcopy(record))
        await self._save()
        return copy.deepcopy(record)

    async def update(
        self,
        record_id: str,
        mutate: Callable[[GenerationRecord], None],
    ) -> Optional[GenerationRecord]:
        """
        Applies mutate to the stored record and swaps it in whole.

        Returns the updated record, or None when the record no longer
        exists. If mutate raises, the stored record is left unchanged.
        """
        index = self._find(record_id)
        if index is None:
            return None
        updated = copy.deepcopy(self._records[index])
        mutate(updated)
        self._records[index] = updated
        await self._save()
        return copy.deepcopy(updated)

    async def delete(self, record_id: str) -> bool:
        index = self._find(record_id)
        if index is None:
            return False
        del self._records[index]
        await self._save()
        return True

    async def evict_older_than(self, cutoff: float) -> int:
        """Drops finished records created before cutoff. Generating records stay."""
        before = len(self._records)
        self._records = [
            r for r in self._records
            if r.created_at >= cutoff or r.status is GenerationStatus.GENERATING
        ]
        removed = before - len(self._records)
        if removed:
            await self._save()
        return removed


class SelectionProjection:
    """
    The record currently shown to the user.

    Holds only a record id and resolves it against the store on every use.
    If the record is gone the selection clears itself instead of keeping a
    stale copy alive.
    """

    def __init__(self, store: GenerationStore):
        self._store = store
        self._record_id: Optional[str] = None
        self._listeners: List[SelectionListener] = []

    @property
    def record_id(self) -> Optional[str]:
        return self._record_id

    def select(self, record_id: Optional[str]) -> Optional[GenerationRecord]:
        """Points the selection at record_id (None clears it)."""
        if record_id is None:
            self._record_id = None
            return None
        record = self._store.get(record_id)
        if record is None:
            raise KeyError(record_id)
        self._record_id = record_id
        self._notify(record)
        return record

    def clear(self) -> None:
        self._record_id = None

    def current(self) -> Optional[GenerationRecord]:
        if self._record_id is None:
            return None
        record = self._store.get(self._record_id)
        if record is None:
            lib_logger.debug(f"Selected record {self._record_id} is gone, clearing selection")
            self._record_id = None
        return record

    def is_selected(self, record_id: str) -> bool:
        return self._record_id is not None and self._record_id == record_id

    def refresh_if_current(self, record: GenerationRecord) -> bool:
        """Pushes an updated record to listeners only if it is still the selected one."""
        if not self.is_selected(record.id):
            return False
        self._notify(record)
        return True

    def subscribe(self, listener: SelectionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, record: GenerationRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                lib_logger.error(f"Selection listener failed: {e}", exc_info=True)
