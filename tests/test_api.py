import pytest
from fastapi.testclient import TestClient

from syncengine.api import main
from syncengine.errors import ConfigurationError
from syncengine.jobs.sync import SyncResponse, TenantResult

AUTH = {"Authorization": "Bearer secret-token"}


@pytest.fixture()
def client(config, engine):
    main.app.dependency_overrides[main.get_config] = lambda: config
    main.app.dependency_overrides[main.get_engine] = lambda: engine
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture()
def calls(monkeypatch):
    seen = []

    async def fake_run_sync(source, payload=None, **kwargs):
        seen.append((source, payload, kwargs))
        return SyncResponse(source=source, results=[TenantResult(tenant_id="t1", status="succeeded", inserted=2)])

    monkeypatch.setattr(main, "run_sync", fake_run_sync)
    return seen


def test_requires_bearer_token(client, calls):
    assert client.post("/sync/shopify").status_code == 401
    assert client.post("/sync/shopify", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert calls == []


def test_sync_returns_result_array(client, calls):
    response = client.post("/sync/shopify", headers=AUTH, json={"tenantId": "t1", "dateFrom": "2024-03-01", "dateTo": "2024-03-02"})
    assert response.status_code == 200
    assert response.json() == {"source": "shopify", "results": [{"tenantId": "t1", "status": "succeeded", "inserted": 2}]}
    source, payload, _ = calls[0]
    assert source == "shopify"
    assert payload.tenant_id == "t1"
    assert payload.date_from == "2024-03-01"


def test_sync_without_body(client, calls):
    assert client.post("/sync/google_ads", headers=AUTH).status_code == 200
    assert calls[0][1].tenant_id is None


def test_unknown_source(client, calls):
    response = client.post("/sync/facebook", headers=AUTH)
    assert response.status_code == 404
    assert "error" in response.json()


def test_configuration_error_is_500(client, monkeypatch):
    async def broken(source, payload=None, **kwargs):
        raise ConfigurationError("Missing GOOGLE_DEVELOPER_TOKEN environment variable(s).")

    monkeypatch.setattr(main, "run_sync", broken)
    response = client.post("/sync/google_ads", headers=AUTH)
    assert response.status_code == 500
    assert response.json() == {"error": "Missing GOOGLE_DEVELOPER_TOKEN environment variable(s)."}


def test_cleanup_stuck_jobs(client):
    response = client.post("/jobs/cleanup-stuck", headers=AUTH)
    assert response.status_code == 200
    assert response.json() == {"failed": 0, "timeout_minutes": 60}
