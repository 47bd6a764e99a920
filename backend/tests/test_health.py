from fastapi.testclient import TestClient

import main
from runtime_state import RuntimeState


class _HealthyStore:
    async def get_store_status(self):
        return {"counts": {"memos": 2, "fragments": 1, "fragment_edges": 0}}


class _BrokenStore:
    async def get_store_status(self):
        raise RuntimeError("database is locked")


def test_health_reports_store_and_runtime(monkeypatch) -> None:
    monkeypatch.setattr(main, "get_sqlite_client", lambda: _HealthyStore())
    monkeypatch.setattr(main, "runtime_state", RuntimeState())

    payload = TestClient(main.app).get("/health").json()

    assert payload["status"] == "ok"
    assert payload["store"]["counts"]["memos"] == 2
    assert "embedding_worker" in payload["runtime"]
    assert payload["runtime"]["turn_sessions"]["sessions"] == 0


def test_health_degrades_when_store_fails(monkeypatch) -> None:
    monkeypatch.setattr(main, "get_sqlite_client", lambda: _BrokenStore())
    monkeypatch.setattr(main, "runtime_state", RuntimeState())

    payload = TestClient(main.app).get("/health").json()

    assert payload["status"] == "degraded"
    assert payload["store"]["reason"] == "database is locked"
