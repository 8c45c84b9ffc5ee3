import asyncio
import os

# Set required env vars before importing the app module
os.environ.setdefault("STUDIO_API_KEY", "test-studio-key")
os.environ.setdefault("ORCHESTRATOR_STATE_DIR", "memory")

import pytest
from fastapi.testclient import TestClient

from orchestrator_library.errors import ProviderRequestError
from orchestrator_library.models import ProviderResult
from orchestrator_library.persistence import MemoryStateFile
from orchestrator_library.service import GenerationService
from studio_app.main import app, get_service

from conftest import StubProvider


stub_service = GenerationService(
    {
        "stub": StubProvider("stub", behaviors=[ProviderResult(url="https://x/out.png")]),
        "dry": StubProvider("dry", behaviors=[ProviderRequestError.quota("error_quota_exhausted")]),
        "flaky": StubProvider("flaky", behaviors=[ProviderRequestError("Space is sleeping")]),
        "locked": StubProvider("locked", requires_credentials=True),
    },
    credentials={"dry": ["only-key"]},
    credential_state=MemoryStateFile(),
    history_state=MemoryStateFile(),
)


def override_service() -> GenerationService:
    return stub_service


# Override the dependency to avoid real network calls
app.dependency_overrides[get_service] = override_service


@pytest.fixture(scope="module", autouse=True)
def close_stub_service():
    yield
    asyncio.run(stub_service.stop())


def auth_headers():
    return {"Authorization": f"Bearer {os.environ['STUDIO_API_KEY']}"}


def test_root_healthcheck():
    with TestClient(app) as client:
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json().get("Status")


def test_requires_api_key():
    with TestClient(app) as client:
        resp = client.get("/v1/generations")
        assert resp.status_code == 401


def test_generation_lifecycle():
    with TestClient(app) as client:
        resp = client.post(
            "/v1/generations",
            json={"provider": "stub", "kind": "image", "params": {"prompt": "a cat"}},
            headers=auth_headers(),
        )
        assert resp.status_code == 201
        record = resp.json()
        assert record["status"] == "success"
        assert record["result_url"] == "https://x/out.png"

        listed = client.get("/v1/generations", headers=auth_headers()).json()["data"]
        assert any(item["id"] == record["id"] for item in listed)

        resp = client.get(f"/v1/generations/{record['id']}", headers=auth_headers())
        assert resp.status_code == 200

        resp = client.put("/v1/selection", json={"record_id": record["id"]}, headers=auth_headers())
        assert resp.status_code == 200
        assert client.get("/v1/selection", headers=auth_headers()).json()["id"] == record["id"]

        resp = client.delete(f"/v1/generations/{record['id']}", headers=auth_headers())
        assert resp.status_code == 204
        assert client.get(f"/v1/generations/{record['id']}", headers=auth_headers()).status_code == 404
        assert client.get("/v1/selection", headers=auth_headers()).json() is None


def test_submission_errors_map_to_status_codes():
    cases = [
        ({"provider": "nope", "kind": "image"}, 400),
        ({"provider": "stub", "kind": "hologram"}, 400),
        ({"provider": "dry", "kind": "image"}, 429),
        ({"provider": "locked", "kind": "image"}, 401),
        ({"provider": "flaky", "kind": "image"}, 502),
    ]
    with TestClient(app) as client:
        for body, status in cases:
            resp = client.post("/v1/generations", json=body, headers=auth_headers())
            assert resp.status_code == status, body


def test_selection_of_unknown_record_is_404():
    with TestClient(app) as client:
        resp = client.put("/v1/selection", json={"record_id": "missing"}, headers=auth_headers())
        assert resp.status_code == 404


def test_credential_stats():
    with TestClient(app) as client:
        resp = client.get("/v1/providers/dry/credentials", headers=auth_headers())
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        assert client.get("/v1/providers/nope/credentials", headers=auth_headers()).status_code == 404
        assert "stub" in client.get("/v1/providers", headers=auth_headers()).json()["data"]


def test_cancel_without_submission_in_flight():
    with TestClient(app) as client:
        resp = client.post("/v1/generations/missing/cancel", headers=auth_headers())
        assert resp.status_code == 404


def test_model_listing_errors():
    with TestClient(app) as client:
        resp = client.get("/v1/providers/nope/models", headers=auth_headers())
        assert resp.status_code == 404

        resp = client.get("/v1/providers/stub/models", headers=auth_headers())
        assert resp.status_code == 400
