"""REST API over an in-process manager."""

import pytest
from fastapi.testclient import TestClient

import app as app_module
from conftest import make_card
from models.schemas import CardType


@pytest.fixture
def client(manager, monkeypatch):
    monkeypatch.setattr(app_module, "manager", manager)
    with TestClient(app_module.app) as test_client:
        yield test_client


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["temporal_connected"] is False


class TestCards:
    def test_process_sync(self, client, store):
        store.insert(make_card(content="remember the milk"))

        response = client.post("/cards/card-1/process", params={"start_async": "false"})

        assert response.status_code == 200
        assert response.json()["classification"]["type"] == "text"

    def test_process_unknown_card(self, client):
        assert client.post("/cards/ghost/process").status_code == 404

    def test_status(self, client, store):
        store.insert(make_card(content="remember the milk"))
        client.post("/cards/card-1/process", params={"start_async": "false"})

        body = client.get("/cards/card-1/status").json()

        assert body["type"] == "text"
        assert body["workflow_id"] == "card_processing-card-1-1"
        assert body["metadata_status"] == "completed"
        assert body["processing_status"]["classify"]["status"] == "completed"

    def test_link_enrichment_sync(self, client, store):
        store.insert(make_card(type=CardType.LINK, url="https://www.imdb.com/title/tt0001"))
        response = client.post("/cards/card-1/link-enrichment", params={"start_async": "false"})
        assert response.json()["category"] == "movie"


class TestAdmin:
    def test_retry_missing_card(self, client):
        body = client.post("/admin/cards/ghost/retry").json()
        assert body["success"] is False
        assert body["reason"] == "not_found"
        assert body["workflow_id"] is None

    def test_cleanup_sync(self, client):
        body = client.post("/admin/cleanup", params={"start_async": "false"}).json()
        assert body == {"cleaned_count": 0, "has_more": False}


class TestRuns:
    def test_list_and_get(self, client, store):
        store.insert(make_card(content="a note"))
        client.post("/cards/card-1/process", params={"start_async": "false"})

        runs = client.get("/runs").json()["runs"]
        assert [r["workflow_id"] for r in runs] == ["card_processing-card-1-1"]

        run = client.get("/runs/card_processing-card-1-1").json()
        assert run["status"] == "completed"
        assert run["result"]["success"] is True

    def test_unknown_status_filter(self, client):
        assert client.get("/runs", params={"status": "sleeping"}).status_code == 400

    def test_unknown_run(self, client):
        assert client.get("/runs/nope").status_code == 404
