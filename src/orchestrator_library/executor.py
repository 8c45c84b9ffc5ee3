# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Request execution with credential failover.

RetryingRequestExecutor wraps one provider operation and walks the
provider's CredentialPool when the operation reports quota exhaustion.
Attempts are strictly sequential: each one depends on the exhaustion
flags left behind by the previous one.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .credential_pool import CredentialPool
from .errors import (
    CredentialsRequiredError,
    ErrorKind,
    QuotaExhaustedError,
    classify_error,
    mask_credential,
)
from .failure_logger import log_failure

lib_logger = logging.getLogger("orchestrator_library")

T = TypeVar("T")

Operation = Callable[[Optional[str]], Awaitable[T]]


class RetryingRequestExecutor:
    """
    Failover across exhaustible credentials.

    This class handles:
    - Unauthenticated single attempt when a provider has no credentials
    - Stable credential selection through the pool
    - Flagging a credential on quota signals and moving to the next one
    - Immediate propagation of cancellations and every other error
    """

    def __init__(self, pool: CredentialPool):
        self._pool = pool

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    async def execute(
        self,
        provider_id: str,
        operation: Operation,
        requires_credentials: bool = False,
        operation_name: Optional[str] = None,
    ) -> T:
        """
        Run operation(credential) until it succeeds or fails for good.

        Args:
            provider_id: Provider whose credential pool is used
            operation: Coroutine function taking a credential (or None)
            requires_credentials: Raise CredentialsRequiredError instead of
                running unauthenticated when the provider has no credentials
            operation_name: Label for logs

        Returns:
            Whatever the operation returns
        """
        credential_count = self._pool.credential_count(provider_id)

        if credential_count == 0:
            if requires_credentials:
                raise CredentialsRequiredError(provider_id)
            lib_logger.info(
                f"No credentials configured for '{provider_id}', calling without authentication"
            )
            return await operation(None)

        max_attempts = credential_count + 1
        last_exception: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            credential = self._pool.next_available(provider_id)
            if credential is None:
                stats = self._pool.stats(provider_id)
                lib_logger.warning(
                    f"All {stats['total']} credentials for '{provider_id}' are exhausted for today"
                )
                raise QuotaExhaustedError(provider_id)

            lib_logger.info(
                f"Attempting {operation_name or 'call'} on '{provider_id}' with credential "
                f"{mask_credential(credential)} (Attempt {attempt}/{max_attempts})"
            )
            try:
                return await operation(credential)
            except Exception as e:
                last_exception = e
                kind = classify_error(e)

                if kind == ErrorKind.CANCELLED:
                    lib_logger.info(f"{operation_name or 'Call'} on '{provider_id}' cancelled by user")
                    raise

                log_failure(provider_id, credential, attempt, e, operation=operation_name)

                if kind == ErrorKind.QUOTA:
                    await self._pool.mark_exhausted(provider_id, credential)
                    continue

                raise

        lib_logger.error(
            f"{operation_name or 'Call'} on '{provider_id}' gave up after {max_attempts} attempts"
        )
        if last_exception is not None:
            raise last_exception
        raise QuotaExhaustedError(provider_id)
