# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Closed error taxonomy for provider calls.

Provider adapters translate their own wire-level failures (HTTP status
codes, SSE sentinel events, quota wording in error bodies) into
ProviderRequestError with an ErrorKind. The executor only ever asks
classify_error() what happened and never looks at error text.
"""

from enum import Enum
from typing import Optional

from litellm.exceptions import RateLimitError


class ErrorKind(str, Enum):
    QUOTA = "quota"
    CANCELLED = "cancelled"
    TRANSIENT = "transient"


class OrchestratorError(Exception):
    """Base class for all errors raised by the orchestration core."""


class QuotaExhaustedError(OrchestratorError):
    """Every configured credential for a provider is spent for today."""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"All credentials for provider '{provider_id}' are exhausted for today")


class CredentialsRequiredError(OrchestratorError):
    """The provider refuses unauthenticated calls and none are configured."""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Provider '{provider_id}' requires at least one credential")


class RequestCancelledError(OrchestratorError):
    """User-initiated abort. Never retried and never flags a credential."""


class UnknownProviderError(OrchestratorError, ValueError):
    pass


class UnsupportedOperationError(OrchestratorError, ValueError):
    pass


class InvalidRequestError(OrchestratorError, ValueError):
    """Submission parameters are missing or malformed."""


class InvalidTransitionError(OrchestratorError):
    """A terminal GenerationRecord was asked to change status again."""


class ProviderRequestError(OrchestratorError):
    """
    A normalized failure from a provider adapter.

    Args:
        message: Human readable message (surfaced to the user as-is)
        kind: ErrorKind decided by the adapter
        status_code: HTTP status, when the failure came from a response
        response_text: Raw body, kept for the failure log
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.response_text = response_text

    @classmethod
    def quota(cls, message: str, **kwargs) -> "ProviderRequestError":
        return cls(message, kind=ErrorKind.QUOTA, **kwargs)


class ProviderTaskFailedError(ProviderRequestError):
    """An asynchronous task finished in the provider's failed state."""


def classify_error(e: BaseException) -> ErrorKind:
    """Maps any exception raised by a provider operation onto an ErrorKind."""
    if isinstance(e, ProviderRequestError):
        return e.kind
    if isinstance(e, RequestCancelledError):
        return ErrorKind.CANCELLED
    if isinstance(e, RateLimitError):
        return ErrorKind.QUOTA
    return ErrorKind.TRANSIENT


def is_quota_error(e: BaseException) -> bool:
    return classify_error(e) == ErrorKind.QUOTA


def is_cancellation(e: BaseException) -> bool:
    return classify_error(e) == ErrorKind.CANCELLED


def mask_credential(credential: Optional[str]) -> str:
    """Display-safe form of a credential: only the last 6 characters."""
    if not credential:
        return "<anonymous>"
    return f"...{credential[-6:]}"
