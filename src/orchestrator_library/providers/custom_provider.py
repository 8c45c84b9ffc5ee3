# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
User-configured generation server.

Speaks the small REST contract of a self-hosted server:
/v1/generate, /v1/edit, /v1/upscaler, /v1/text, /v1/video and
/v1/task-status. Video may come back as a task id plus a "predict"
estimate, which makes this the asynchronous provider.
"""

import logging
import random
from typing import Any, Dict, List, Optional

import httpx

from ..errors import InvalidRequestError, ProviderRequestError
from ..models import (
    DEFAULT_TASK_FAILURE_MESSAGE,
    GenerationKind,
    ProviderResult,
    TaskStatus,
    TaskStatusResult,
)
from .provider_interface import ProviderAdapter, require_param

lib_logger = logging.getLogger("orchestrator_library")

MAX_SEED = 2147483647


class CustomProvider(ProviderAdapter):
    supported_kinds = frozenset(
        {
            GenerationKind.IMAGE,
            GenerationKind.EDIT,
            GenerationKind.UPSCALE,
            GenerationKind.PROMPT,
            GenerationKind.VIDEO,
        }
    )
    quota_markers = ()

    def __init__(self, provider_id: str, api_url: str):
        if not provider_id:
            raise ValueError("Custom provider needs an id")
        if not api_url:
            raise ValueError(f"Custom provider '{provider_id}' needs an api_url")
        self.provider_id = provider_id
        self.base_url = api_url.rstrip("/")

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        credential: Optional[str],
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> Any:
        if headers is None:
            headers = self.auth_headers(credential)
        try:
            response = await client.request(
                method, f"{self.base_url}{path}", headers=headers, **kwargs
            )
        except httpx.HTTPError as e:
            raise self.error_from_transport(e) from e
        if response.status_code >= 400:
            raise self.error_from_response(response)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderRequestError(
                f"Invalid JSON from custom provider '{self.provider_id}'",
                response_text=response.text,
            ) from e

    async def generate(
        self,
        kind: GenerationKind,
        params: Dict[str, Any],
        credential: Optional[str],
        client: httpx.AsyncClient,
    ) -> ProviderResult:
        model = params.get("model")
        if kind is GenerationKind.IMAGE:
            seed = params.get("seed")
            if seed is None:
                seed = random.randint(0, MAX_SEED)
            data = await self._request(
                client, "POST", "/v1/generate", credential,
                json={
                    "model": model,
                    "prompt": require_param(params, "prompt"),
                    "ar": params.get("aspect_ratio", "1:1"),
                    "seed": seed,
                    "steps": params.get("steps"),
                    "guidance": params.get("guidance_scale"),
                    "enableHD": bool(params.get("enable_hd", False)),
                },
            )
            metadata = {
                "model": model,
                "seed": data.get("seed", seed),
                "steps": data.get("steps", params.get("steps")),
                "guidance": data.get("guidance", params.get("guidance_scale")),
                "width": data.get("width"),
                "height": data.get("height"),
            }
            return ProviderResult(url=self._url_from(data), metadata=metadata)

        if kind is GenerationKind.EDIT:
            return await self._edit_image(params, credential, client)

        if kind is GenerationKind.UPSCALE:
            data = await self._request(
                client, "POST", "/v1/upscaler", credential,
                json={"model": model, "imageUrl": require_param(params, "image_url")},
            )
            return ProviderResult(url=self._url_from(data))

        if kind is GenerationKind.PROMPT:
            prompt = require_param(params, "prompt")
            data = await self._request(
                client, "POST", "/v1/text", credential,
                json={"model": model, "prompt": prompt},
            )
            text = data.get("text") if isinstance(data, dict) else None
            return ProviderResult(text=(text or "").strip() or prompt)

        if kind is GenerationKind.VIDEO:
            return await self._generate_video(params, credential, client)

        raise self.unsupported(kind)

    async def _edit_image(
        self, params: Dict[str, Any], credential: Optional[str], client: httpx.AsyncClient
    ) -> ProviderResult:
        """
        /v1/edit takes multipart form data: scalar fields plus one "image"
        part per source image. Raw bytes go up as files, strings (URLs or
        server-side paths) as plain form values.
        """
        images = list(params.get("images") or params.get("image_urls") or [])
        if not images:
            raise InvalidRequestError("Image edit needs at least one image")

        model = params.get("model")
        fields = {"model": model, "prompt": require_param(params, "prompt")}
        for name, key in (("seed", "seed"), ("steps", "steps"), ("guidance", "guidance_scale")):
            if params.get(key) is not None:
                fields[name] = str(params[key])

        parts = []
        for index, image in enumerate(images):
            if isinstance(image, (bytes, bytearray)):
                parts.append(("image", (f"image_{index}.png", bytes(image), "image/png")))
            else:
                parts.append(("image", (None, str(image).encode("utf-8"))))

        # httpx sets the multipart Content-Type with its boundary
        headers = {"Authorization": f"Bearer {credential}"} if credential else {}
        data = await self._request(
            client, "POST", "/v1/edit", credential,
            headers=headers,
            data={k: v for k, v in fields.items() if v is not None},
            files=parts,
        )
        return ProviderResult(
            url=self._url_from(data), metadata={"model": model, "seed": params.get("seed")}
        )

    async def _generate_video(
        self, params: Dict[str, Any], credential: Optional[str], client: httpx.AsyncClient
    ) -> ProviderResult:
        data = await self._request(
            client, "POST", "/v1/video", credential,
            json={
                "model": params.get("model"),
                "imageUrl": require_param(params, "image_url"),
                "prompt": params.get("prompt", ""),
                "duration": params.get("duration"),
                "seed": params.get("seed", 42),
                "steps": params.get("steps"),
                "guidance": params.get("guidance"),
            },
        )
        if isinstance(data, str) and data:
            return ProviderResult(url=data)
        if isinstance(data, dict):
            if data.get("taskId"):
                predict = data.get("predict")
                try:
                    predict = float(predict) if predict is not None else None
                except (TypeError, ValueError):
                    lib_logger.warning(f"Ignoring malformed predict hint from '{self.provider_id}': {predict!r}")
                    predict = None
                return ProviderResult(task_id=str(data["taskId"]), predict=predict)
            if data.get("url"):
                return ProviderResult(url=self._url_from(data))
        raise ProviderRequestError("Video URL or Task ID not found in response")

    async def poll_status(
        self,
        task_id: str,
        credential: Optional[str],
        client: httpx.AsyncClient,
    ) -> TaskStatusResult:
        data = await self._request(
            client, "GET", "/v1/task-status", credential, params={"taskId": task_id}
        )
        if not isinstance(data, dict):
            return TaskStatusResult(status=TaskStatus.PROCESSING)

        status = data.get("status")
        if status == TaskStatus.SUCCESS.value:
            url = data.get("url")
            if isinstance(url, list):
                url = url[0] if url else None
            if url:
                return TaskStatusResult(status=TaskStatus.SUCCESS, result_url=url)
            return TaskStatusResult(status=TaskStatus.PROCESSING)
        if status == TaskStatus.FAILED.value:
            return TaskStatusResult(
                status=TaskStatus.FAILED,
                error_message=data.get("error") or DEFAULT_TASK_FAILURE_MESSAGE,
            )

        retry_after = data.get("predict")
        try:
            retry_after = float(retry_after) if retry_after is not None else None
        except (TypeError, ValueError):
            retry_after = None
        return TaskStatusResult(status=TaskStatus.PROCESSING, retry_after=retry_after)

    def _url_from(self, data: Any) -> str:
        url = data.get("url") if isinstance(data, dict) else None
        if isinstance(url, list):
            url = url[0] if url else None
        if not isinstance(url, str) or not url:
            raise ProviderRequestError(
                f"Invalid response format from custom provider '{self.provider_id}': URL not found"
            )
        return url

    # =========================================================================
    # MODEL LISTING
    # =========================================================================

    async def list_models(
        self, credential: Optional[str], client: httpx.AsyncClient
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Models the server advertises at /v1/models, grouped by what they do."""
        data = await self._request(client, "GET", "/v1/models", credential)
        return transform_model_list(data)


# Group name -> server model "type" tag
MODEL_TYPE_GROUPS = {
    "generate": "text2image",
    "edit": "image2image",
    "video": "image2video",
    "text": "text2text",
    "upscaler": "upscaler",
}


def transform_model_list(models: Any) -> Dict[str, List[Dict[str, Any]]]:
    """
    Groups a flat model list by type. A model tagged with several types
    appears in each matching group; anything that is not a list yields {}.
    """
    if not isinstance(models, list):
        return {}
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for group, tag in MODEL_TYPE_GROUPS.items():
        grouped[group] = [
            m for m in models
            if isinstance(m, dict) and m.get("type") and tag in m["type"]
        ]
    return grouped
