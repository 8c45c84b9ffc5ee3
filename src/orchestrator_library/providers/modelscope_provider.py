# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import random
from typing import Any, Dict, Optional

import httpx

from ..errors import InvalidRequestError, ProviderRequestError
from ..models import GenerationKind, ProviderResult
from .provider_interface import (
    ProviderAdapter,
    chat_rewrite,
    get_dimensions,
    require_param,
)

MS_API_BASE = "https://api-inference.modelscope.cn/v1"
MS_GENERATE_API_URL = f"{MS_API_BASE}/images/generations"

# Standardized model id -> ModelScope model path
API_MODEL_MAP = {
    "z-image-turbo": "Tongyi-MAI/Z-Image-Turbo",
    "qwen-image": "Qwen/Qwen-Image",
    "qwen-image-edit": "Qwen/Qwen-Image-Edit-2509",
    "flux-1-krea": "black-forest-labs/FLUX.1-Krea-dev",
    "deepseek-v3": "deepseek-ai/DeepSeek-V3.2-Exp",
    "qwen3": "Qwen/Qwen3-235B-A22B-Instruct-2507",
}

DEFAULT_IMAGE_MODEL = "z-image-turbo"
DEFAULT_PROMPT_MODEL = "qwen3"
MAX_SEED = 2147483647


class ModelScopeProvider(ProviderAdapter):
    """
    ModelScope API-Inference.

    Every call needs a token, and free-tier quotas reset at Beijing
    midnight. Quota problems come back as 429 or as an error message that
    mentions quota, credit or billing.
    """

    provider_id = "modelscope"
    supported_kinds = frozenset(
        {GenerationKind.IMAGE, GenerationKind.EDIT, GenerationKind.PROMPT}
    )
    day_offset_hours = 8.0
    requires_credentials = True
    quota_markers = ("429", "quota", "credit", "Arrearage", "Bill")

    def resolve_model(self, model: str) -> str:
        api_model = API_MODEL_MAP.get(model)
        if api_model:
            return api_model
        if "/" in model:
            return model
        raise InvalidRequestError(f"Model {model} not supported on Model Scope")

    async def generate(
        self,
        kind: GenerationKind,
        params: Dict[str, Any],
        credential: Optional[str],
        client: httpx.AsyncClient,
    ) -> ProviderResult:
        if kind is GenerationKind.IMAGE:
            return await self._generate_image(params, credential, client)
        if kind is GenerationKind.EDIT:
            return await self._edit_image(params, credential, client)
        if kind is GenerationKind.PROMPT:
            model = self.resolve_model(params.get("model") or DEFAULT_PROMPT_MODEL)
            text = await chat_rewrite(
                self,
                require_param(params, "prompt"),
                model,
                MS_API_BASE,
                credential,
                params.get("system_prompt"),
            )
            return ProviderResult(text=text)
        raise self.unsupported(kind)

    async def _post_generation(
        self, body: Dict[str, Any], credential: Optional[str], client: httpx.AsyncClient
    ) -> str:
        try:
            response = await client.post(
                MS_GENERATE_API_URL, headers=self.auth_headers(credential), json=body
            )
        except httpx.HTTPError as e:
            raise self.error_from_transport(e) from e

        if response.status_code >= 400:
            try:
                message = response.json().get("message")
            except ValueError:
                message = None
            raise self.error_from_response(
                response, message or f"Model Scope API Error: {response.status_code}"
            )

        try:
            url = response.json()["images"][0]["url"]
        except (ValueError, KeyError, IndexError, TypeError):
            url = None
        if not url:
            raise ProviderRequestError("error_invalid_response", response_text=response.text)
        return url

    async def _generate_image(
        self, params: Dict[str, Any], credential: Optional[str], client: httpx.AsyncClient
    ) -> ProviderResult:
        model = params.get("model") or DEFAULT_IMAGE_MODEL
        width, height = get_dimensions(params.get("aspect_ratio"), bool(params.get("enable_hd")))
        seed = params.get("seed")
        if seed is None:
            seed = random.randint(0, MAX_SEED)
        steps = params.get("steps") or 9

        body = {
            "prompt": require_param(params, "prompt"),
            "model": self.resolve_model(model),
            "size": f"{width}x{height}",
            "seed": seed,
            "steps": steps,
        }
        if params.get("guidance_scale") is not None:
            body["guidance"] = params["guidance_scale"]

        url = await self._post_generation(body, credential, client)
        return ProviderResult(
            url=url, metadata={"model": model, "seed": seed, "steps": steps}
        )

    async def _edit_image(
        self, params: Dict[str, Any], credential: Optional[str], client: httpx.AsyncClient
    ) -> ProviderResult:
        image_urls = params.get("image_urls") or []
        if not image_urls:
            raise InvalidRequestError("Image edit needs at least one image URL")
        seed = params.get("seed")
        if seed is None:
            seed = random.randint(0, MAX_SEED)
        body = {
            "prompt": require_param(params, "prompt"),
            "model": self.resolve_model("qwen-image-edit"),
            "image_url": list(image_urls),
            "seed": seed,
            "steps": params.get("steps", 16),
            "guidance": params.get("guidance_scale", 4),
        }
        url = await self._post_generation(body, credential, client)
        return ProviderResult(url=url, metadata={"model": "qwen-image-edit", "seed": seed})
