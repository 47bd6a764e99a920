from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import maintenance as maintenance_api
from api import memos as memos_api
from runtime_state import RuntimeState


def _build_client(monkeypatch, *, client=("testclient", 50000)) -> TestClient:
    monkeypatch.setenv("RUNTIME_EMBED_WORKER_ENABLED", "false")
    monkeypatch.setattr(maintenance_api, "runtime_state", RuntimeState())

    app = FastAPI()
    app.include_router(maintenance_api.router)
    app.include_router(memos_api.router)
    return TestClient(app, client=client)


def test_maintenance_auth_rejects_when_api_key_not_configured_by_default(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.delenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", raising=False)
    with _build_client(monkeypatch) as client:
        response = client.get("/maintenance/embedding/worker")
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("error") == "maintenance_auth_failed"
    assert detail.get("reason") == "api_key_not_configured"


def test_maintenance_auth_allows_explicit_insecure_local_override(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(monkeypatch, client=("127.0.0.1", 50000)) as client:
        response = client.get("/maintenance/embedding/worker")
    assert response.status_code == 200
    assert response.json().get("enabled") is False


def test_maintenance_auth_rejects_insecure_local_override_for_non_loopback_client(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(monkeypatch, client=("203.0.113.10", 50000)) as client:
        response = client.get("/maintenance/embedding/worker")
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("reason") == "insecure_local_override_requires_loopback"


def test_maintenance_auth_rejects_wrong_key(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "memo-secret")
    with _build_client(monkeypatch) as client:
        response = client.get(
            "/maintenance/embedding/worker", headers={"X-MCP-API-Key": "guess"}
        )
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "invalid_or_missing_api_key"
    assert response.headers.get("WWW-Authenticate") == "Bearer"


def test_maintenance_auth_accepts_x_mcp_api_key_header(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "memo-secret")
    with _build_client(monkeypatch) as client:
        response = client.get(
            "/maintenance/embedding/worker", headers={"X-MCP-API-Key": "memo-secret"}
        )
    assert response.status_code == 200


def test_maintenance_auth_accepts_bearer_token(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "memo-secret")
    with _build_client(monkeypatch) as client:
        response = client.get(
            "/maintenance/embedding/worker", headers={"Authorization": "Bearer memo-secret"}
        )
    assert response.status_code == 200


def test_memo_delete_requires_api_key(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "memo-secret")
    with _build_client(monkeypatch) as client:
        response = client.delete("/memos/some-id")
    assert response.status_code == 401
    assert response.json()["detail"]["error"] == "maintenance_auth_failed"
