from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from metaindex.core.config import Settings, get_settings
from metaindex.core.security import hash_api_key
from metaindex.domain.models import EntryPermit, EventType
from metaindex.main import app
from metaindex.services.events import get_event_processor
from metaindex.services.repository import get_repository
from tests.fakes import NODE_URL, RecordingPool

ADMIN_HEADERS = {"X-API-Key": "local-admin-key"}


@pytest.fixture
def pool() -> RecordingPool:
    return RecordingPool()


@pytest.fixture
def processor(make_processor, pool):
    return make_processor(pool=pool)


@pytest.fixture
def api_client(processor, repository):
    settings = Settings(admin_api_key_hashes=[hash_api_key("local-admin-key")])
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_event_processor] = lambda: processor
    app.dependency_overrides[get_repository] = lambda: repository
    yield TestClient(app)
    app.dependency_overrides.clear()


def _seed(processor, *urls: str) -> None:
    async def run():
        for url in urls:
            await processor.accept_ping(url, "10.0.0.1")

    asyncio.run(run())


def test_admin_routes_require_a_valid_key(api_client: TestClient) -> None:
    missing = api_client.post("/index/admin/trigger", json={})
    invalid = api_client.post("/index/admin/trigger", json={}, headers={"X-API-Key": "wrong"})

    assert missing.status_code == 401
    assert invalid.status_code == 401


def test_admin_routes_are_unavailable_without_configured_keys(api_client: TestClient) -> None:
    app.dependency_overrides[get_settings] = lambda: Settings(admin_api_key_hashes=[])

    response = api_client.post("/index/admin/recover", headers=ADMIN_HEADERS)

    assert response.status_code == 503


def test_trigger_for_known_entry_schedules_retrieval(api_client: TestClient, processor, repository, pool) -> None:
    _seed(processor, NODE_URL)
    pool.jobs.clear()

    response = api_client.post("/index/admin/trigger", json={"clientUrl": NODE_URL}, headers=ADMIN_HEADERS)

    assert response.status_code == 204
    assert len(pool.jobs) == 1
    [trigger] = asyncio.run(repository.list_events_by_type(EventType.ADMIN_TRIGGER))
    assert trigger.finished
    assert trigger.payload.actor.startswith("admin:")


def test_global_trigger_without_body(api_client: TestClient, processor, pool) -> None:
    _seed(processor, "https://a.example.org", "https://b.example.org")
    pool.jobs.clear()

    response = api_client.post("/index/admin/trigger", headers=ADMIN_HEADERS)

    assert response.status_code == 204
    assert len(pool.jobs) == 2


def test_trigger_errors(api_client: TestClient) -> None:
    unknown = api_client.post(
        "/index/admin/trigger",
        json={"clientUrl": "https://unknown.example.org"},
        headers=ADMIN_HEADERS,
    )
    malformed = api_client.post("/index/admin/trigger", json={"clientUrl": "nope nope"}, headers=ADMIN_HEADERS)

    assert unknown.status_code == 404
    assert malformed.status_code == 400


def test_recover_returns_summary(api_client: TestClient, processor) -> None:
    _seed(processor, NODE_URL)

    response = api_client.post("/index/admin/recover", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    # the retrieval queued by the ping is still pending in the pool
    assert response.json() == {"processed": 0, "failed": 0, "unsupported": 0, "skipped": 1}


def test_patch_entry_permit(api_client: TestClient, processor, repository) -> None:
    _seed(processor, NODE_URL)
    [entry] = repository.entries.values()

    response = api_client.patch(
        f"/index/admin/entries/{entry.id}",
        json={"permit": "rejected"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["permit"] == "rejected"
    stored = asyncio.run(repository.get_entry(entry.id))
    assert stored.permit is EntryPermit.REJECTED

    bad = api_client.patch(f"/index/admin/entries/{entry.id}", json={"permit": "maybe"}, headers=ADMIN_HEADERS)
    missing = api_client.patch(
        "/index/admin/entries/00000000-0000-0000-0000-000000000000",
        json={"permit": "accepted"},
        headers=ADMIN_HEADERS,
    )
    assert bad.status_code == 400
    assert missing.status_code == 404
