from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from metaindex.domain.models import EntryPermit, EntryState, Event, EventType, IncomingPingPayload, utcnow
from metaindex.services.repository import PostgresRepository, RepositoryConflictError

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("MI_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require MI_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    async def truncate() -> None:
        repository = PostgresRepository(database_url, 1, 2)
        try:
            # creates the schema on first use
            await repository.count_entries_by_state()
        finally:
            await repository.close()
        conn = await asyncpg.connect(database_url)
        try:
            await conn.execute("truncate index_events, index_entries, index_ping_rejections")
        finally:
            await conn.close()

    asyncio.run(truncate())


def _with_repository(database_url: str, scenario: Callable[[PostgresRepository], Awaitable[T]]) -> T:
    async def run() -> T:
        repository = PostgresRepository(database_url, 1, 2)
        try:
            return await scenario(repository)
        finally:
            await repository.close()

    return asyncio.run(run())


def test_upsert_is_idempotent(database_url: str) -> None:
    async def scenario(repository: PostgresRepository):
        now = utcnow()
        first, first_inserted = await repository.upsert_entry(
            client_url="https://node.example.org", permit=EntryPermit.ACCEPTED, now=now
        )
        second, second_inserted = await repository.upsert_entry(
            client_url="https://node.example.org", permit=EntryPermit.PENDING, now=now + timedelta(seconds=1)
        )
        counts = await repository.count_entries_by_state()
        return first, first_inserted, second, second_inserted, counts

    first, first_inserted, second, second_inserted, counts = _with_repository(database_url, scenario)

    assert first_inserted is True
    assert second_inserted is False
    assert first.id == second.id
    assert second.permit is EntryPermit.ACCEPTED
    assert counts[EntryState.UNKNOWN] == 1


def test_finished_events_are_immutable(database_url: str) -> None:
    async def scenario(repository: PostgresRepository):
        event = await repository.create_event(
            Event(
                type=EventType.INCOMING_PING,
                created_at=utcnow(),
                remote_addr="10.0.0.1",
                payload=IncomingPingPayload(client_url="https://node.example.org"),
            )
        )
        assert [row.id for row in await repository.list_unfinished_events()] == [event.id]

        event.finish(utcnow())
        await repository.save_event(event)
        assert await repository.list_unfinished_events() == []

        with pytest.raises(RepositoryConflictError):
            await repository.save_event(event)
        return await repository.get_event(event.id)

    stored = _with_repository(database_url, scenario)

    assert stored.finished
    assert stored.payload.client_url == "https://node.example.org"


def test_ping_attempts_include_rejections(database_url: str) -> None:
    async def scenario(repository: PostgresRepository):
        now = utcnow()
        await repository.create_event(
            Event(
                type=EventType.INCOMING_PING,
                created_at=now,
                remote_addr="10.0.0.1",
                payload=IncomingPingPayload(),
            )
        )
        await repository.record_ping_rejection("10.0.0.1", now)
        await repository.record_ping_rejection("10.0.0.2", now)
        within = await repository.count_ping_attempts_since("10.0.0.1", now - timedelta(hours=1))
        after = await repository.count_ping_attempts_since("10.0.0.1", now + timedelta(seconds=1))
        return within, after

    assert _with_repository(database_url, scenario) == (2, 0)
