# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set

from .clock import Clock, SystemClock
from .errors import mask_credential
from .persistence import JsonStateFile, MemoryStateFile

lib_logger = logging.getLogger("orchestrator_library")


@dataclass
class PoolEntry:
    """Exhaustion record for one provider. Only valid while exhausted_on is today."""

    provider_id: str
    exhausted_on: str
    exhausted: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict:
        return {
            "date": self.exhausted_on,
            "exhausted": {credential: True for credential in sorted(self.exhausted)},
        }


class CredentialPool:
    """
    Per-provider ordered credentials with a same-day exhaustion record.

    Selection is stable: the first configured credential not flagged for
    today wins, no rotation. Flags reset lazily, the first read after a
    provider's day boundary simply ignores yesterday's flags. Lookups are
    synchronous and never suspend; only persisting a new flag awaits I/O,
    after the in-memory state has already changed.
    """

    def __init__(
        self,
        credentials: Optional[Mapping[str, Iterable[str]]] = None,
        state_file: Optional[JsonStateFile] = None,
        clock: Optional[Clock] = None,
        day_offsets: Optional[Mapping[str, float]] = None,
    ):
        """
        Args:
            credentials: provider_id -> ordered credentials (from configuration)
            state_file: Where exhaustion flags are persisted
            clock: Time source for day boundaries
            day_offsets: provider_id -> UTC offset in hours of its quota day
        """
        self._credentials: Dict[str, List[str]] = {}
        for provider_id, values in (credentials or {}).items():
            self.set_credentials(provider_id, values)
        self._state_file = state_file or MemoryStateFile()
        self._clock = clock or SystemClock()
        self._day_offsets: Dict[str, float] = dict(day_offsets or {})
        self._entries: Dict[str, PoolEntry] = self._load_entries()

    def _load_entries(self) -> Dict[str, PoolEntry]:
        entries = {}
        for provider_id, raw in self._state_file.load().items():
            if not isinstance(raw, dict):
                lib_logger.warning(f"Ignoring malformed credential state for '{provider_id}'")
                continue
            exhausted = raw.get("exhausted") or {}
            if not isinstance(exhausted, dict):
                lib_logger.warning(
                    f"Ignoring malformed exhaustion flags for '{provider_id}': expected an object"
                )
                exhausted = {}
            entries[provider_id] = PoolEntry(
                provider_id=provider_id,
                exhausted_on=str(raw.get("date", "")),
                exhausted={c for c, flagged in exhausted.items() if flagged},
            )
        return entries

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    def set_credentials(self, provider_id: str, credentials: Iterable[str]) -> None:
        """Replaces the configured credentials for a provider. Order is kept."""
        ordered: List[str] = []
        for credential in credentials:
            credential = credential.strip()
            if credential and credential not in ordered:
                ordered.append(credential)
        self._credentials[provider_id] = ordered

    def set_day_offset(self, provider_id: str, utc_offset_hours: float) -> None:
        self._day_offsets[provider_id] = utc_offset_hours

    def credentials(self, provider_id: str) -> List[str]:
        return list(self._credentials.get(provider_id, []))

    def credential_count(self, provider_id: str) -> int:
        return len(self._credentials.get(provider_id, []))

    def today(self, provider_id: str) -> str:
        return self._clock.today(self._day_offsets.get(provider_id, 0.0))

    # =========================================================================
    # EXHAUSTION TRACKING
    # =========================================================================

    def _entry(self, provider_id: str) -> PoolEntry:
        today = self.today(provider_id)
        entry = self._entries.get(provider_id)
        if entry is None or entry.exhausted_on != today:
            if entry is not None and entry.exhausted:
                lib_logger.info(
                    f"New quota day {today} for provider '{provider_id}', "
                    f"{len(entry.exhausted)} credential(s) active again"
                )
            entry = PoolEntry(provider_id=provider_id, exhausted_on=today)
            self._entries[provider_id] = entry
        return entry

    def is_exhausted(self, provider_id: str, credential: str) -> bool:
        return credential in self._entry(provider_id).exhausted

    def stats(self, provider_id: str) -> Dict[str, int]:
        """Returns {total, active, exhausted} for today."""
        credentials = self._credentials.get(provider_id, [])
        flagged = self._entry(provider_id).exhausted
        exhausted = sum(1 for c in credentials if c in flagged)
        return {
            "total": len(credentials),
            "active": len(credentials) - exhausted,
            "exhausted": exhausted,
        }

    def next_available(self, provider_id: str) -> Optional[str]:
        flagged = self._entry(provider_id).exhausted
        for credential in self._credentials.get(provider_id, []):
            if credential not in flagged:
                return credential
        return None

    async def mark_exhausted(self, provider_id: str, credential: str) -> None:
        """Flags a credential as spent for today. Idempotent."""
        entry = self._entry(provider_id)
        if credential in entry.exhausted:
            return
        entry.exhausted.add(credential)
        lib_logger.warning(
            f"Credential {mask_credential(credential)} for provider '{provider_id}' "
            f"exhausted for {entry.exhausted_on}. Switching to next credential."
        )
        await self._save()

    async def _save(self) -> None:
        data = {provider_id: entry.to_dict() for provider_id, entry in self._entries.items()}
        await self._state_file.save(data)
