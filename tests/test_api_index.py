from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from metaindex.domain.models import EntryState, utcnow
from metaindex.main import app
from metaindex.services.events import get_event_processor
from metaindex.services.repository import RepositoryUnavailableError, get_repository
from tests.fakes import NODE_URL, RecordingPool


@pytest.fixture
def pool() -> RecordingPool:
    return RecordingPool()


@pytest.fixture
def api_client(make_processor, repository, pool):
    processor = make_processor(pool=pool, ping_rate_limit_hits=1)
    app.dependency_overrides[get_event_processor] = lambda: processor
    app.dependency_overrides[get_repository] = lambda: repository
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_ping_returns_no_content(api_client: TestClient, repository, pool) -> None:
    response = api_client.post("/index/ping", json={"clientUrl": NODE_URL + "/"})

    assert response.status_code == 204
    assert response.content == b""
    [entry] = repository.entries.values()
    assert entry.client_url == NODE_URL
    assert len(pool.jobs) == 1


def test_ping_with_malformed_url_returns_400(api_client: TestClient, repository) -> None:
    response = api_client.post("/index/ping", json={"clientUrl": "mailto:someone@example.org"})

    assert response.status_code == 400
    assert "http(s)" in response.json()["detail"]
    assert repository.entries == {}


def test_ping_with_malformed_body_returns_400(api_client: TestClient) -> None:
    response = api_client.post("/index/ping", content=b"{not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400

    response = api_client.post("/index/ping", json={"clientUrl": 42})
    assert response.status_code == 400


def test_ping_over_rate_limit_returns_429(api_client: TestClient) -> None:
    statuses = [api_client.post("/index/ping", json={"clientUrl": NODE_URL}).status_code for _ in range(2)]
    rejected = api_client.post("/index/ping", json={"clientUrl": NODE_URL})

    assert statuses == [204, 204]
    assert rejected.status_code == 429
    assert rejected.headers["Retry-After"] == str(6 * 3600)
    assert rejected.json()["detail"] == "Rate limit reached for testclient (max. 1 per PT6H) - PING ignored"


def test_entries_listing_and_detail(api_client: TestClient, repository) -> None:
    api_client.post("/index/ping", json={"clientUrl": NODE_URL})
    [entry] = repository.entries.values()

    listing = api_client.get("/index/entries", params={"state": "unknown"})
    assert listing.status_code == 200
    assert [row["client_url"] for row in listing.json()] == [NODE_URL]
    assert listing.json()[0]["active"] is False

    assert api_client.get("/index/entries", params={"state": "valid"}).json() == []
    assert api_client.get("/index/entries", params={"limit": 0}).status_code == 400

    detail = api_client.get(f"/index/entries/{entry.id}")
    assert detail.status_code == 200
    assert detail.json()["permit"] == "accepted"

    missing = api_client.get("/index/entries/00000000-0000-0000-0000-000000000000")
    assert missing.status_code == 404


def test_entry_events_are_newest_first(api_client: TestClient, repository) -> None:
    api_client.post("/index/ping", json={"clientUrl": NODE_URL})
    [entry] = repository.entries.values()

    response = api_client.get(f"/index/entries/{entry.id}/events", params={"limit": 5})

    assert response.status_code == 200
    types = {row["type"] for row in response.json()}
    assert types == {"incoming_ping", "metadata_retrieval"}
    ping = next(row for row in response.json() if row["type"] == "incoming_ping")
    assert ping["payload"]["new_entry"] is True
    assert ping["remote_addr"] == "testclient"


def test_stats_count_active_entries(api_client: TestClient, repository) -> None:
    api_client.post("/index/ping", json={"clientUrl": "https://a.example.org"})
    api_client.post("/index/ping", json={"clientUrl": "https://b.example.org"})
    entry = asyncio.run(repository.get_entry_by_client_url("https://a.example.org"))
    entry.state = EntryState.VALID
    entry.last_retrieval_at = utcnow()
    asyncio.run(repository.save_entry(entry))

    response = api_client.get("/index/stats")

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert body["active"] == 1
    assert body["inactive"] == 1
    assert body["by_state"]["valid"] == 1
    assert body["by_state"]["unknown"] == 1


def test_unavailable_repository_returns_503(api_client: TestClient) -> None:
    class DownRepository:
        async def list_entries(self, **_: object):
            raise RepositoryUnavailableError("database unavailable")

    app.dependency_overrides[get_repository] = lambda: DownRepository()

    response = api_client.get("/index/entries")

    assert response.status_code == 503
