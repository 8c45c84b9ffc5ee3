# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from orchestrator_library import (
    CredentialsRequiredError,
    GenerationService,
    InvalidRequestError,
    ProviderRequestError,
    QuotaExhaustedError,
    RequestCancelledError,
    UnknownProviderError,
    UnsupportedOperationError,
)

# Configure logging
logging.basicConfig(level=logging.INFO)

# Load environment variables from .env file
load_dotenv()

# The library logger does not propagate, so give it the console here
lib_logger = logging.getLogger("orchestrator_library")
lib_logger.setLevel(logging.INFO)
lib_logger.addHandler(logging.StreamHandler())

# Optional; when unset the API is open (single local session)
STUDIO_API_KEY = os.getenv("STUDIO_API_KEY")

# Non-standard "client closed request", used for user cancellations
STATUS_CLIENT_CLOSED_REQUEST = 499


class GenerationRequest(BaseModel):
    provider: str
    kind: str
    params: Dict[str, Any] = Field(default_factory=dict)


class SelectionRequest(BaseModel):
    record_id: Optional[str] = None


# --- Lifespan Management ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """One GenerationService, and so one poller, per application session."""
    service = GenerationService.from_settings()
    app.state.generation_service = service
    await service.start()
    logging.info("GenerationService started.")
    yield
    await service.stop()
    logging.info("GenerationService stopped.")


# --- FastAPI App Setup ---
app = FastAPI(lifespan=lifespan)
api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def get_service(request: Request) -> GenerationService:
    """Dependency to get the generation service from the app state."""
    return request.app.state.generation_service


async def verify_api_key(auth: str = Depends(api_key_header)):
    """Dependency to verify the studio API key, if one is configured."""
    if STUDIO_API_KEY and auth != f"Bearer {STUDIO_API_KEY}":
        raise HTTPException(status_code=401, detail="Invalid or missing API Key")
    return auth


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, (UnknownProviderError, UnsupportedOperationError, InvalidRequestError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, QuotaExhaustedError):
        return HTTPException(status_code=429, detail=str(e))
    if isinstance(e, CredentialsRequiredError):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, RequestCancelledError):
        return HTTPException(status_code=STATUS_CLIENT_CLOSED_REQUEST, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


@app.get("/")
def read_root():
    return {"Status": "Generation Studio is running"}


@app.post("/v1/generations", status_code=201)
async def create_generation(
    body: GenerationRequest,
    service: GenerationService = Depends(get_service),
    _=Depends(verify_api_key),
):
    try:
        record = await service.submit(body.provider, body.kind, body.params)
    except (
        UnknownProviderError,
        UnsupportedOperationError,
        InvalidRequestError,
        QuotaExhaustedError,
        CredentialsRequiredError,
        RequestCancelledError,
        ProviderRequestError,
    ) as e:
        raise _http_error(e)
    return record.to_dict()


@app.get("/v1/generations")
async def list_generations(
    service: GenerationService = Depends(get_service),
    _=Depends(verify_api_key),
):
    return {"data": [record.to_dict() for record in service.history()]}


@app.get("/v1/generations/{record_id}")
async def get_generation(
    record_id: str,
    service: GenerationService = Depends(get_service),
    _=Depends(verify_api_key),
):
    record = service.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Generation {record_id} not found")
    return record.to_dict()


@app.delete("/v1/generations/{record_id}", status_code=204)
async def delete_generation(
    record_id: str,
    service: GenerationService = Depends(get_service),
    _=Depends(verify_api_key),
):
    if not await service.delete(record_id):
        raise HTTPException(status_code=404, detail=f"Generation {record_id} not found")
    return Response(status_code=204)


@app.post("/v1/generations/{record_id}/cancel", status_code=202)
async def cancel_generation(
    record_id: str,
    service: GenerationService = Depends(get_service),
    _=Depends(verify_api_key),
):
    if not service.cancel(record_id):
        raise HTTPException(status_code=404, detail=f"No submission in flight for {record_id}")
    return {"cancelled": record_id}


@app.get("/v1/selection")
async def get_selection(
    service: GenerationService = Depends(get_service),
    _=Depends(verify_api_key),
):
    record = service.current()
    return record.to_dict() if record else None


@app.put("/v1/selection")
async def put_selection(
    body: SelectionRequest,
    service: GenerationService = Depends(get_service),
    _=Depends(verify_api_key),
):
    try:
        record = service.select(body.record_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Generation {body.record_id} not found")
    return record.to_dict() if record else None


@app.get("/v1/providers")
async def list_providers(
    service: GenerationService = Depends(get_service),
    _=Depends(verify_api_key),
):
    return {"data": service.providers}


@app.get("/v1/providers/{provider}/credentials")
async def credential_stats(
    provider: str,
    service: GenerationService = Depends(get_service),
    _=Depends(verify_api_key),
):
    try:
        return service.stats(provider)
    except UnknownProviderError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/v1/providers/{provider}/models")
async def list_provider_models(
    provider: str,
    service: GenerationService = Depends(get_service),
    _=Depends(verify_api_key),
):
    try:
        return await service.list_models(provider)
    except UnknownProviderError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (UnsupportedOperationError, ProviderRequestError) as e:
        raise _http_error(e)
