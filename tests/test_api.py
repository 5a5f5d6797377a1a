import dataclasses
import json

import pytest
from fastapi.testclient import TestClient

from starindex import api
from starindex.config import load_settings
from starindex.errors import ProviderRateOrNetworkError
from starindex.services import build_services
from starindex.models import EmbeddedItem

from .conftest import make_item


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.setattr(api, "settings", dataclasses.replace(api.settings, admin_token="secret"))
    api.app.dependency_overrides[api.get_services] = lambda: services
    yield TestClient(api.app)
    api.app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "running"}


def test_config_round_trip_clamps_values(client):
    assert client.get("/config").json()["indexing"] == {"batch_size": 5, "max_retries": 5, "page_size": 30}

    resp = client.put("/config", json={"batch_size": 999, "max_retries": "lots", "page_size": 0})

    assert resp.status_code == 200
    assert resp.json()["indexing"] == {"batch_size": 50, "max_retries": 5, "page_size": 1}


def test_index_runs_one_page(client, services):
    services.config_manager.update(page_size=2)

    body = client.post("/index", json={"page": 1}).json()

    assert body["indexed"] == 2
    assert body["total"] == 5
    assert body["next_page"] == 2
    assert body["has_more"] is True


def test_index_failure_reports_page_and_phase(client, services):
    services.source.list_error = ProviderRateOrNetworkError("rate limited")

    resp = client.post("/index", json={"page": 2})

    assert resp.status_code == 502
    assert resp.json()["detail"] == {
        "error": "ProviderRateOrNetworkError",
        "message": "rate limited",
        "page": 2,
        "phase": "paging",
    }


def test_index_stream_emits_sse_events(client, services):
    services.config_manager.update(page_size=1)

    resp = client.post("/index/stream", json={"page": 1})

    events = [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]
    assert [event["phase"] for event in events] == ["fetching", "embedding", "done"]
    assert events[-1]["indexed"] == 1


def test_status(client, services):
    services.store.upsert([EmbeddedItem(make_item(1), [1.0, 0.0, 0.0, 0.0])])
    assert client.get("/status").json() == {"indexed": 1, "total": 5, "next_page": 2, "state": "idle"}


def test_query_returns_ranked_results(client, services):
    services.store.upsert(
        [
            EmbeddedItem(make_item(1, name="acme/one"), [1.0, 0.0, 0.0, 0.0]),
            EmbeddedItem(make_item(2, name="acme/two"), None),
        ]
    )

    body = client.post("/query", json={"query": "anything", "num_results": 5}).json()

    assert [r["repository"]["name"] for r in body["results"]] == ["acme/one"]
    assert body["results"][0]["score"] == 1.0


def test_empty_query_is_rejected(client):
    assert client.post("/query", json={"query": "   "}).status_code == 400


def test_repository_lookup(client, services):
    services.store.upsert([EmbeddedItem(make_item(1, name="acme/one"), None)])

    assert client.get("/repositories").json()["count"] == 1
    assert client.get("/repositories/acme/one").json()["id"] == 1
    assert client.get("/repositories/acme/none").status_code == 404


def test_clear_requires_admin_token(client, services):
    services.store.upsert([EmbeddedItem(make_item(1), None)])

    assert client.post("/clear").status_code == 401
    assert services.store.count() == 1

    resp = client.post("/clear", headers={"X-Admin-Token": "secret"})
    assert resp.status_code == 200
    assert services.store.count() == 0


def test_reindex_requires_admin_token(client, services):
    services.store.upsert([EmbeddedItem(make_item(99), None)])

    assert client.post("/reindex", headers={"X-Admin-Token": "wrong"}).status_code == 401

    body = client.post("/reindex", headers={"X-Admin-Token": "secret"}).json()
    assert body["indexed"] == 5
    assert services.store.get(99) is None


def test_clear_is_refused_while_indexing(client, services):
    services.store.upsert([EmbeddedItem(make_item(1), None)])

    with services.orchestrator.run_lock:
        resp = client.post("/clear", headers={"X-Admin-Token": "secret"})

    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "AlreadyIndexingError"
    assert services.store.count() == 1


def test_routes_without_credentials(tmp_path):
    settings = load_settings(tmp_path / "missing.yaml", environ={"STARINDEX_DB_PATH": str(tmp_path / "db")})
    services = build_services(settings)
    api.app.dependency_overrides[api.get_services] = lambda: services
    try:
        client = TestClient(api.app)

        assert client.put("/config", json={"page_size": 12}).json()["indexing"]["page_size"] == 12
        assert client.get("/repositories").json() == {"count": 0, "items": []}

        resp = client.get("/status")
        assert resp.status_code == 503
        assert "STARINDEX_GITHUB_TOKEN" in resp.json()["detail"]["message"]
    finally:
        api.app.dependency_overrides.clear()
        services.store.close()
