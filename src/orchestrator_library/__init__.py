# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from typing import TYPE_CHECKING

from .clock import Clock, SystemClock
from .config import CustomProviderConfig, OrchestratorSettings, load_credentials_from_env
from .credential_pool import CredentialPool
from .errors import (
    CredentialsRequiredError,
    ErrorKind,
    InvalidRequestError,
    InvalidTransitionError,
    OrchestratorError,
    ProviderRequestError,
    QuotaExhaustedError,
    RequestCancelledError,
    UnknownProviderError,
    UnsupportedOperationError,
    classify_error,
)
from .executor import RetryingRequestExecutor
from .models import (
    GenerationKind,
    GenerationRecord,
    GenerationStatus,
    ProviderResult,
    TaskStatus,
    TaskStatusResult,
)
from .poller import AsyncTaskPoller
from .service import GenerationService
from .store import GenerationStore, SelectionProjection

# Library logging stays silent unless the host app configures it
lib_logger = logging.getLogger("orchestrator_library")
lib_logger.propagate = False
lib_logger.addHandler(logging.NullHandler())

# For type checkers, import PROVIDER_ADAPTERS statically
# At runtime, it's lazy-loaded via __getattr__
if TYPE_CHECKING:
    from .providers import PROVIDER_ADAPTERS
    from .providers.provider_interface import ProviderAdapter

__all__ = [
    "AsyncTaskPoller",
    "Clock",
    "CredentialPool",
    "CredentialsRequiredError",
    "CustomProviderConfig",
    "ErrorKind",
    "GenerationKind",
    "GenerationRecord",
    "GenerationService",
    "GenerationStatus",
    "GenerationStore",
    "InvalidRequestError",
    "InvalidTransitionError",
    "OrchestratorError",
    "OrchestratorSettings",
    "PROVIDER_ADAPTERS",
    "ProviderAdapter",
    "ProviderRequestError",
    "ProviderResult",
    "QuotaExhaustedError",
    "RequestCancelledError",
    "RetryingRequestExecutor",
    "SelectionProjection",
    "SystemClock",
    "TaskStatus",
    "TaskStatusResult",
    "UnknownProviderError",
    "UnsupportedOperationError",
    "classify_error",
    "load_credentials_from_env",
]


def __getattr__(name):
    """Lazy-load the provider registry."""
    if name == "PROVIDER_ADAPTERS":
        from .providers import PROVIDER_ADAPTERS

        return PROVIDER_ADAPTERS
    if name == "ProviderAdapter":
        from .providers.provider_interface import ProviderAdapter

        return ProviderAdapter
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
