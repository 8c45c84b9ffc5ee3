# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Hugging Face Spaces (Gradio) provider.

Gradio calls are two-step: POST /gradio_api/call/<fn> returns an event id,
then GET /gradio_api/call/<fn>/<event_id> streams SSE text until the
"complete" event carries the result. An "error" event is how a Space
reports that the caller's ZeroGPU quota is used up.
"""

import json
import logging
import random
from typing import Any, Dict, List, Optional

import httpx

from ..errors import InvalidRequestError, ProviderRequestError
from ..models import GenerationKind, ProviderResult
from .provider_interface import (
    ProviderAdapter,
    chat_rewrite,
    get_dimensions,
    require_param,
)

lib_logger = logging.getLogger("orchestrator_library")

QUOTA_ERROR_KEY = "error_quota_exhausted"
INVALID_RESPONSE_KEY = "error_invalid_response"

ZIMAGE_BASE_API_URL = "https://luca115-z-image-turbo.hf.space"
QWEN_IMAGE_BASE_API_URL = "https://mcp-tools-qwen-image-fast.hf.space"
OVIS_IMAGE_BASE_API_URL = "https://aidc-ai-ovis-image-7b.hf.space"
FLUX_SCHNELL_BASE_API_URL = "https://black-forest-labs-flux-1-schnell.hf.space"
QWEN_IMAGE_EDIT_BASE_API_URL = "https://linoyts-qwen-image-edit-2509-fast.hf.space"
UPSCALER_BASE_API_URL = "https://tuan2308-upscaler.hf.space"
WAN2_VIDEO_API_URL = "https://fradeck619-wan2-2-fp8da-aoti-faster.hf.space"
POLLINATIONS_API_BASE = "https://text.pollinations.ai/openai"

DEFAULT_IMAGE_MODEL = "z-image-turbo"
DEFAULT_PROMPT_MODEL = "openai"

VIDEO_NEGATIVE_PROMPT = (
    "Vivid colors, overexposed, static, blurry details, subtitles, style, artwork, "
    "painting, image, still, overall grayish tone, worst quality, low quality, JPEG "
    "compression artifacts, ugly, incomplete, extra fingers, poorly drawn hands, "
    "poorly drawn face, deformed, disfigured, malformed limbs, fused fingers, still "
    "image, cluttered background, three legs, many people in the background, "
    "walking backward, Screen shaking"
)

MAX_SEED = 2147483647


def extract_complete_event_data(sse_stream: str) -> Optional[Any]:
    """
    Returns the JSON payload of the first "complete" event in an SSE body.

    Raises the quota sentinel when the stream carries an "error" event.
    Returns None when no complete event with data is present.
    """
    is_complete_event = False
    for line in sse_stream.split("\n"):
        if line.startswith("event:"):
            event = line[len("event:"):].strip()
            if event == "error":
                raise ProviderRequestError.quota(QUOTA_ERROR_KEY, response_text=sse_stream)
            is_complete_event = event == "complete"
        elif line.startswith("data:") and is_complete_event:
            try:
                return json.loads(line[len("data:"):].strip())
            except json.JSONDecodeError as e:
                lib_logger.error(f"Error parsing Gradio complete event: {e}")
                return None
    return None


def gradio_file(path: str) -> Dict[str, Any]:
    return {"path": path, "meta": {"_type": "gradio.FileData"}}


class HuggingFaceProvider(ProviderAdapter):
    provider_id = "huggingface"
    supported_kinds = frozenset(
        {
            GenerationKind.IMAGE,
            GenerationKind.EDIT,
            GenerationKind.UPSCALE,
            GenerationKind.PROMPT,
            GenerationKind.VIDEO,
        }
    )
    public_kinds = frozenset({GenerationKind.PROMPT})
    day_offset_hours = 0.0  # ZeroGPU quota resets at UTC midnight
    requires_credentials = False
    quota_markers = ("429",)

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
        if kind is GenerationKind.UPSCALE:
            return await self._upscale(params, credential, client)
        if kind is GenerationKind.VIDEO:
            return await self._generate_video(params, credential, client)
        if kind is GenerationKind.PROMPT:
            text = await chat_rewrite(
                self,
                require_param(params, "prompt"),
                params.get("model") or DEFAULT_PROMPT_MODEL,
                POLLINATIONS_API_BASE,
                None,
                params.get("system_prompt"),
            )
            return ProviderResult(text=text)
        raise self.unsupported(kind)

    # =========================================================================
    # GRADIO TRANSPORT
    # =========================================================================

    async def _gradio_call(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        fn_name: str,
        data: List[Any],
        credential: Optional[str],
    ) -> Any:
        headers = self.auth_headers(credential)
        try:
            queue = await client.post(
                f"{base_url}/gradio_api/call/{fn_name}", headers=headers, json={"data": data}
            )
            if queue.status_code >= 400:
                raise self.error_from_response(queue)
            event_id = queue.json().get("event_id")
            if not event_id:
                raise ProviderRequestError(INVALID_RESPONSE_KEY, response_text=queue.text)

            response = await client.get(
                f"{base_url}/gradio_api/call/{fn_name}/{event_id}",
                headers={"Accept": "text/event-stream", **headers},
            )
            if response.status_code >= 400:
                raise self.error_from_response(response)
        except httpx.HTTPError as e:
            raise self.error_from_transport(e) from e
        except ValueError as e:
            raise ProviderRequestError(f"{INVALID_RESPONSE_KEY}: {e}") from e

        result = extract_complete_event_data(response.text)
        if result is None:
            raise ProviderRequestError(INVALID_RESPONSE_KEY, response_text=response.text)
        return result

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def _generate_image(
        self, params: Dict[str, Any], credential: Optional[str], client: httpx.AsyncClient
    ) -> ProviderResult:
        model = params.get("model") or DEFAULT_IMAGE_MODEL
        prompt = require_param(params, "prompt")
        aspect_ratio = params.get("aspect_ratio", "1:1")
        enable_hd = bool(params.get("enable_hd", False))
        seed = params.get("seed")
        if seed is None:
            seed = random.randint(0, MAX_SEED)
        width, height = get_dimensions(aspect_ratio, enable_hd)

        if model == "flux-1-schnell":
            steps = params.get("steps") or 4
            data = await self._gradio_call(
                client, FLUX_SCHNELL_BASE_API_URL, "infer",
                [prompt, seed, False, width, height, steps], credential,
            )
        elif model == "qwen-image":
            steps = params.get("steps") or 8
            data = await self._gradio_call(
                client, QWEN_IMAGE_BASE_API_URL, "generate_image",
                [prompt, seed, params.get("seed") is None, aspect_ratio, 3, steps], credential,
            )
        elif model == "ovis-image":
            steps = params.get("steps") or 24
            data = await self._gradio_call(
                client, OVIS_IMAGE_BASE_API_URL, "generate",
                [prompt, height, width, seed, steps, 4], credential,
            )
        elif model == "z-image-turbo":
            steps = params.get("steps") or 9
            data = await self._gradio_call(
                client, ZIMAGE_BASE_API_URL, "generate_image",
                [prompt, height, width, steps, seed, False], credential,
            )
        else:
            raise InvalidRequestError(f"Model {model} not supported on Hugging Face")

        return ProviderResult(
            url=_first_url(data),
            metadata={"model": model, "seed": seed, "steps": steps, "width": width, "height": height},
        )

    async def _edit_image(
        self, params: Dict[str, Any], credential: Optional[str], client: httpx.AsyncClient
    ) -> ProviderResult:
        images = [{"image": gradio_file(path)} for path in params.get("images", [])]
        if not images:
            raise InvalidRequestError("Image edit needs at least one uploaded image")
        seed = params.get("seed")
        if seed is None:
            seed = random.randint(0, MAX_SEED)
        data = await self._gradio_call(
            client,
            QWEN_IMAGE_EDIT_BASE_API_URL,
            "infer",
            [
                images,
                require_param(params, "prompt"),
                seed,
                False,
                params.get("guidance_scale", 1),
                params.get("steps", 4),
                params.get("height"),
                params.get("width"),
                True,  # Rewrite prompt on the Space
            ],
            credential,
        )
        try:
            url = data[0][0]["image"]["url"]
        except (IndexError, KeyError, TypeError):
            raise ProviderRequestError(INVALID_RESPONSE_KEY)
        return ProviderResult(url=url, metadata={"model": "qwen-image-edit", "seed": seed})

    async def _upscale(
        self, params: Dict[str, Any], credential: Optional[str], client: httpx.AsyncClient
    ) -> ProviderResult:
        data = await self._gradio_call(
            client,
            UPSCALER_BASE_API_URL,
            "realesrgan",
            [gradio_file(require_param(params, "image_url")), "RealESRGAN_x4plus", 0.5, False, 4],
            credential,
        )
        return ProviderResult(url=_first_url(data))

    async def _generate_video(
        self, params: Dict[str, Any], credential: Optional[str], client: httpx.AsyncClient
    ) -> ProviderResult:
        """Wan2 Space holds the connection open until the video is rendered."""
        seed = params.get("seed")
        if seed is None:
            seed = 42
        guidance = params.get("guidance", 1)
        data = await self._gradio_call(
            client,
            WAN2_VIDEO_API_URL,
            "generate_video",
            [
                gradio_file(require_param(params, "image_url")),
                params.get("prompt", "make this image come alive, cinematic motion, smooth animation"),
                params.get("steps", 6),
                VIDEO_NEGATIVE_PROMPT,
                params.get("duration", 3),
                guidance,
                guidance,
                seed,
                False,
            ],
            credential,
        )
        video = data[0] if isinstance(data, list) and data else data
        if isinstance(video, dict):
            url = (video.get("video") or {}).get("url") or video.get("url")
        else:
            url = video
        if not isinstance(url, str) or not url:
            raise ProviderRequestError(INVALID_RESPONSE_KEY)
        return ProviderResult(url=url, metadata={"seed": seed})


def _first_url(data: Any) -> str:
    try:
        url = data[0]["url"]
    except (IndexError, KeyError, TypeError):
        raise ProviderRequestError(INVALID_RESPONSE_KEY)
    if not isinstance(url, str) or not url:
        raise ProviderRequestError(INVALID_RESPONSE_KEY)
    return url
