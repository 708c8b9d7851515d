from __future__ import annotations

from httpx import ASGITransport, AsyncClient
import pytest

from docsync.apps.api.deps import get_coordinator, get_db
from docsync.apps.api.main import create_app
from docsync.core.config import get_settings


HEADERS = {"X-Tenant-Id": "T1", "X-Tenant-Tier": "free"}


@pytest.fixture
async def client(monkeypatch, coordinator, session_factory):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    get_settings.cache_clear()
    app = create_app()

    async def _db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_db] = _db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


async def _upload(client: AsyncClient, **body):
    payload = {"path": "notes/a.md", "content": "hello", "sidecar": {}}
    payload.update(body)
    response = await client.post("/v1/sync/documents", json=payload, headers=HEADERS)
    return response


@pytest.mark.asyncio
async def test_missing_tenant_header_is_unauthorized(client) -> None:
    response = await client.get("/v1/sync/status")
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_upload_then_download_round_trip(client) -> None:
    response = await _upload(client)
    assert response.status_code == 200
    created = response.json()["data"]
    assert created["version"] == 1
    assert created["sizeBytes"] == 7
    assert created["path"] == "notes/a.md"

    fetched = await client.get(f"/v1/sync/documents/{created['id']}", headers=HEADERS)
    assert fetched.status_code == 200
    data = fetched.json()["data"]
    assert data["content"] == "hello"
    assert data["sidecar"] == {}
    assert data["contentHash"] == created["contentHash"]


@pytest.mark.asyncio
async def test_upload_without_sidecar_defaults_to_empty(client) -> None:
    response = await client.post(
        "/v1/sync/documents", json={"path": "b.md", "content": "x"}, headers=HEADERS
    )
    assert response.status_code == 200
    assert response.json()["data"]["sizeBytes"] == 3


@pytest.mark.asyncio
async def test_stale_upload_returns_conflict_envelope(client) -> None:
    await _upload(client)
    await _upload(client, content="theirs", baseVersion=1)
    response = await _upload(client, content="mine", baseVersion=1)

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "CONFLICT"
    assert error["details"]["remote"]["content"] == "theirs"
    conflict_id = error["details"]["conflictId"]

    detail = await client.get(f"/v1/sync/conflicts/{conflict_id}", headers=HEADERS)
    assert detail.json()["data"]["local"]["content"] == "mine"

    resolved = await client.post(
        f"/v1/sync/conflicts/{conflict_id}/resolve", json={"resolution": "local"}, headers=HEADERS
    )
    assert resolved.status_code == 200
    data = resolved.json()["data"]
    assert data["conflict"]["resolution"] == "local"
    assert data["document"]["version"] == 3

    again = await client.post(
        f"/v1/sync/conflicts/{conflict_id}/resolve", json={"resolution": "remote"}, headers=HEADERS
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "ALREADY_RESOLVED"


@pytest.mark.asyncio
async def test_invalid_path_uses_error_envelope(client) -> None:
    response = await _upload(client, path="../escape.md")
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "INVALID_PATH"
    assert body["meta"]["request_id"]


@pytest.mark.asyncio
async def test_request_validation_errors(client) -> None:
    response = await client.post(
        "/v1/sync/documents", json={"path": "a.md", "content": "x", "unknown": 1}, headers=HEADERS
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

    bad_resolution = await client.post(
        "/v1/sync/conflicts/any/resolve", json={"resolution": "mine"}, headers=HEADERS
    )
    assert bad_resolution.status_code == 422


@pytest.mark.asyncio
async def test_rename_delete_and_status(client) -> None:
    created = (await _upload(client)).json()["data"]

    renamed = await client.patch(
        f"/v1/sync/documents/{created['id']}", json={"path": "archive/a.md"}, headers=HEADERS
    )
    assert renamed.json()["data"]["path"] == "archive/a.md"
    assert renamed.json()["data"]["version"] == 1

    deleted = await client.delete(f"/v1/sync/documents/{created['id']}", headers=HEADERS)
    assert deleted.json()["data"]["deleted"] is True

    missing = await client.get(f"/v1/sync/documents/{created['id']}", headers=HEADERS)
    assert missing.status_code == 404

    status = await client.get("/v1/sync/status", headers=HEADERS)
    data = status.json()["data"]
    assert data["usage"]["documentCount"] == 0
    assert data["documents"][0]["deleted"] is True
    assert data["backend"] == "memory"


@pytest.mark.asyncio
async def test_bad_cursor_is_rejected(client) -> None:
    response = await client.get("/v1/sync/status", params={"cursor": "garbage"}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_CURSOR"


@pytest.mark.asyncio
async def test_signed_url_unsupported_on_memory_backend(client) -> None:
    created = (await _upload(client)).json()["data"]
    response = await client.get(f"/v1/sync/documents/{created['id']}/url", headers=HEADERS)
    assert response.status_code == 501
    assert response.json()["error"]["code"] == "SIGNED_URL_UNSUPPORTED"


@pytest.mark.asyncio
async def test_usage_reports_tier_limits(client) -> None:
    await _upload(client)
    response = await client.get("/v1/sync/usage", headers=HEADERS)
    usage = response.json()["data"]
    assert usage["tier"] == "free"
    assert usage["documentCount"] == 1
    assert usage["totalSizeBytes"] == 7


@pytest.mark.asyncio
async def test_health_and_request_id_header(client, blob_store) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-123"
    data = response.json()["data"]
    assert data["status"] == "ok"
    assert data["database"] is True
    assert data["backend"] == "memory"
    assert "size" in data["database_pool"]

    blob_store.unavailable = True
    degraded = await client.get("/v1/health")
    assert degraded.json()["data"]["status"] == "degraded"
    assert degraded.json()["data"]["storage"] is False
