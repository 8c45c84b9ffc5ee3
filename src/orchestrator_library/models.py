# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for generation records and provider results.

A GenerationRecord is one generation attempt from submission until it
reaches a terminal status. Provider adapters hand back ProviderResult
(submission) and TaskStatusResult (polling) so nothing provider-specific
leaks past the adapter boundary.
"""

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidTransitionError


# =============================================================================
# ENUMS
# =============================================================================


class GenerationStatus(str, Enum):
    GENERATING = "generating"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not GenerationStatus.GENERATING


class GenerationKind(str, Enum):
    IMAGE = "image"
    EDIT = "edit"
    UPSCALE = "upscale"
    PROMPT = "prompt"  # Prompt rewrite, result is text
    VIDEO = "video"


class TaskStatus(str, Enum):
    """Normalized status of a provider-side asynchronous task."""

    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


DEFAULT_TASK_FAILURE_MESSAGE = "Video generation failed"


# =============================================================================
# PROVIDER RESULTS
# =============================================================================


@dataclass
class ProviderResult:
    """
    Outcome of a successful submission call.

    Exactly one of url, text or task_id is expected. predict is the
    provider's estimate (seconds) before an asynchronous task may be done.
    """

    url: Optional[str] = None
    text: Optional[str] = None
    task_id: Optional[str] = None
    predict: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_async(self) -> bool:
        return self.task_id is not None


@dataclass
class TaskStatusResult:
    status: TaskStatus
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    retry_after: Optional[float] = None  # Fresh poll hint in seconds

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.SUCCESS, TaskStatus.FAILED)


# =============================================================================
# GENERATION RECORD
# =============================================================================


@dataclass
class GenerationRecord:
    provider_id: str
    kind: GenerationKind
    created_at: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: GenerationStatus = GenerationStatus.GENERATING
    task_id: Optional[str] = None
    result_url: Optional[str] = None
    result_text: Optional[str] = None
    next_poll_eligible_at: Optional[float] = None
    error_message: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_pending_task(self) -> bool:
        return self.status is GenerationStatus.GENERATING and bool(self.task_id)

    def is_poll_ready(self, now: float) -> bool:
        return self.next_poll_eligible_at is None or now >= self.next_poll_eligible_at

    def _ensure_generating(self) -> None:
        if self.status.is_terminal:
            raise InvalidTransitionError(
                f"Record {self.id} is already {self.status.value}"
            )

    def mark_success(self, result_url: Optional[str] = None, result_text: Optional[str] = None) -> None:
        self._ensure_generating()
        self.status = GenerationStatus.SUCCESS
        self.result_url = result_url
        self.result_text = result_text
        self.error_message = None

    def mark_failed(self, message: str) -> None:
        self._ensure_generating()
        self.status = GenerationStatus.FAILED
        self.error_message = message

    def attach_task(self, task_id: str, eligible_at: Optional[float] = None) -> None:
        self._ensure_generating()
        self.task_id = task_id
        if eligible_at is not None:
            self.defer_poll(eligible_at)

    def defer_poll(self, eligible_at: float) -> bool:
        """Moves next_poll_eligible_at forward. Never rewinds it."""
        if self.next_poll_eligible_at is not None and eligible_at <= self.next_poll_eligible_at:
            return False
        self.next_poll_eligible_at = eligible_at
        return True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationRecord":
        """
        Rebuild a record from storage.

        Raises ValueError/KeyError/TypeError for entries that are not
        well-formed, including terminal records missing their terminal
        fields, so callers can drop them.
        """
        record = cls(
            id=str(data["id"]),
            provider_id=str(data["provider_id"]),
            kind=GenerationKind(data["kind"]),
            created_at=float(data["created_at"]),
            status=GenerationStatus(data.get("status", GenerationStatus.GENERATING.value)),
            task_id=data.get("task_id"),
            result_url=data.get("result_url"),
            result_text=data.get("result_text"),
            next_poll_eligible_at=(
                float(data["next_poll_eligible_at"])
                if data.get("next_poll_eligible_at") is not None
                else None
            ),
            error_message=data.get("error_message"),
            params=dict(data.get("params") or {}),
        )
        if record.status is GenerationStatus.SUCCESS and not (record.result_url or record.result_text is not None):
            raise ValueError(f"Record {record.id} is successful but has no result")
        if record.status is GenerationStatus.FAILED and not record.error_message:
            raise ValueError(f"Record {record.id} failed without an error message")
        return record
