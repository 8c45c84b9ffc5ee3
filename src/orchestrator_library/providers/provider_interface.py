# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, List, Optional

import httpx
import litellm

from ..errors import (
    ErrorKind,
    InvalidRequestError,
    ProviderRequestError,
    UnsupportedOperationError,
)
from ..models import GenerationKind, ProviderResult, TaskStatusResult


class ProviderAdapter(ABC):
    """
    An interface for a remote generation provider.

    Adapters own every provider-specific detail: endpoints, payload shapes
    and how failures are reported. They return ProviderResult /
    TaskStatusResult and raise only ProviderRequestError, so nothing above
    them needs to know which provider it talks to.
    """

    provider_id: str = ""
    # Kinds this provider can run
    supported_kinds: FrozenSet[GenerationKind] = frozenset()
    # UTC offset (hours) of the day boundary the provider's quota resets on
    day_offset_hours: float = 0.0
    # False means the provider serves a public tier without credentials
    requires_credentials: bool = False
    # Text fragments in an error body that mean "quota spent"
    quota_markers: tuple = ()
    # Kinds served by a public endpoint that never uses the credential pool
    public_kinds: FrozenSet[GenerationKind] = frozenset()

    def supports(self, kind: GenerationKind) -> bool:
        return kind in self.supported_kinds

    def uses_credentials(self, kind: GenerationKind) -> bool:
        return kind not in self.public_kinds

    @abstractmethod
    async def generate(
        self,
        kind: GenerationKind,
        params: Dict[str, Any],
        credential: Optional[str],
        client: httpx.AsyncClient,
    ) -> ProviderResult:
        """
        Runs one submission attempt with the given credential.

        Args:
            kind: What to generate
            params: Request parameters (prompt, model, aspect_ratio, ...)
            credential: Credential chosen by the executor, or None
            client: Shared httpx.AsyncClient

        Returns:
            A synchronous result or an asynchronous task reference
        """
        pass

    async def poll_status(
        self,
        task_id: str,
        credential: Optional[str],
        client: httpx.AsyncClient,
    ) -> TaskStatusResult:
        raise UnsupportedOperationError(
            f"Provider '{self.provider_id}' does not run asynchronous tasks"
        )

    async def list_models(
        self, credential: Optional[str], client: httpx.AsyncClient
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Models grouped by purpose, for providers that advertise them."""
        raise UnsupportedOperationError(
            f"Provider '{self.provider_id}' does not list its models"
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def auth_headers(self, credential: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    def is_quota_text(self, text: Optional[str]) -> bool:
        if not text:
            return False
        return any(marker in text for marker in self.quota_markers)

    def error_from_response(self, response: httpx.Response, message: Optional[str] = None) -> ProviderRequestError:
        """Builds the normalized error for a non-2xx response."""
        text = response.text
        detail = message or text or f"Request failed with status {response.status_code}"
        kind = ErrorKind.TRANSIENT
        if response.status_code == 429 or self.is_quota_text(detail):
            kind = ErrorKind.QUOTA
        return ProviderRequestError(
            detail, kind=kind, status_code=response.status_code, response_text=text
        )

    def error_from_transport(self, e: httpx.HTTPError) -> ProviderRequestError:
        return ProviderRequestError(
            f"Connection to provider '{self.provider_id}' failed: {e}",
            kind=ErrorKind.TRANSIENT,
        )

    def unsupported(self, kind: GenerationKind) -> UnsupportedOperationError:
        return UnsupportedOperationError(
            f"Provider '{self.provider_id}' does not support '{kind.value}'"
        )


# =============================================================================
# SHARED REQUEST BUILDING
# =============================================================================

ASPECT_RATIO_DIMENSIONS = {
    "1:1": (1024, 1024),
    "16:9": (1024, 576),
    "4:3": (1024, 768),
    "3:2": (960, 640),
    "9:16": (576, 1024),
    "3:4": (768, 1024),
    "2:3": (640, 960),
}

DEFAULT_REWRITE_SYSTEM_PROMPT = (
    "You are a prompt engineer for text-to-image models. Rewrite the user's "
    "idea into a single detailed English prompt describing subject, style, "
    "lighting and composition. Reply with the prompt only."
)


def require_param(params: Dict[str, Any], name: str) -> Any:
    value = params.get(name)
    if value is None or value == "":
        raise InvalidRequestError(f"Missing required parameter '{name}'")
    return value


def get_dimensions(aspect_ratio: Optional[str], enable_hd: bool = False) -> tuple:
    """(width, height) for an aspect ratio; HD doubles both sides."""
    width, height = ASPECT_RATIO_DIMENSIONS.get(aspect_ratio or "1:1", ASPECT_RATIO_DIMENSIONS["1:1"])
    if enable_hd:
        return width * 2, height * 2
    return width, height


async def chat_rewrite(
    adapter: ProviderAdapter,
    prompt: str,
    model: str,
    api_base: str,
    credential: Optional[str],
    system_prompt: Optional[str] = None,
) -> str:
    """
    Rewrites a prompt through an OpenAI-compatible chat endpoint.

    Falls back to the original prompt when the reply is empty.
    """
    try:
        response = await litellm.acompletion(
            model=f"openai/{model}",
            api_base=api_base,
            api_key=credential or "anonymous",
            messages=[
                {"role": "system", "content": system_prompt or DEFAULT_REWRITE_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            stream=False,
        )
    except litellm.exceptions.RateLimitError:
        raise
    except Exception as e:
        status_code = getattr(e, "status_code", None)
        kind = ErrorKind.QUOTA if status_code == 429 or adapter.is_quota_text(str(e)) else ErrorKind.TRANSIENT
        raise ProviderRequestError(str(e), kind=kind, status_code=status_code) from e

    content = None
    if response.choices:
        content = response.choices[0].message.content
    return (content or "").strip() or prompt
