from __future__ import annotations

import asyncio
from datetime import datetime
from uuid import UUID, uuid4

from metaindex.domain.models import EntryPermit, EntryState, Event, EventType, RegistryEntry
from metaindex.services.repository import RepositoryConflictError, RepositoryNotFoundError


class InMemoryRepository:
    """Process-local repository for development and tests; nothing survives a restart."""

    def __init__(self) -> None:
        self.entries: dict[UUID, RegistryEntry] = {}
        self.events: dict[UUID, Event] = {}
        self.ping_rejections: list[tuple[str, datetime]] = []
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    async def get_entry(self, entry_id: UUID) -> RegistryEntry | None:
        entry = self.entries.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def get_entry_by_client_url(self, client_url: str) -> RegistryEntry | None:
        for entry in self.entries.values():
            if entry.client_url == client_url:
                return entry.model_copy(deep=True)
        return None

    async def upsert_entry(
        self,
        *,
        client_url: str,
        permit: EntryPermit,
        now: datetime,
    ) -> tuple[RegistryEntry, bool]:
        async with self._lock:
            for entry in self.entries.values():
                if entry.client_url == client_url:
                    entry.updated_at = now
                    return entry.model_copy(deep=True), False

            entry = RegistryEntry(
                id=uuid4(),
                client_url=client_url,
                state=EntryState.UNKNOWN,
                permit=permit,
                created_at=now,
                updated_at=now,
            )
            self.entries[entry.id] = entry
            return entry.model_copy(deep=True), True

    async def save_entry(self, entry: RegistryEntry) -> RegistryEntry:
        async with self._lock:
            if entry.id not in self.entries:
                raise RepositoryNotFoundError(f"entry not found: {entry.id}")
            self.entries[entry.id] = entry.model_copy(deep=True)
            return entry.model_copy(deep=True)

    async def list_entries(
        self,
        *,
        state: EntryState | None = None,
        permit: EntryPermit | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RegistryEntry]:
        rows = [
            entry
            for entry in self.entries.values()
            if (state is None or entry.state is state) and (permit is None or entry.permit is permit)
        ]
        rows.sort(key=lambda entry: (-entry.updated_at.timestamp(), str(entry.id)))
        return [entry.model_copy(deep=True) for entry in rows[offset : offset + limit]]

    async def list_entries_by_permit(self, permits: set[EntryPermit]) -> list[RegistryEntry]:
        rows = [entry for entry in self.entries.values() if entry.permit in permits]
        rows.sort(key=lambda entry: entry.created_at)
        return [entry.model_copy(deep=True) for entry in rows]

    async def count_entries_by_state(self) -> dict[EntryState, int]:
        counts = {state: 0 for state in EntryState}
        for entry in self.entries.values():
            counts[entry.state] += 1
        return counts

    async def count_active_entries(self, *, valid_since: datetime) -> int:
        return sum(
            1
            for entry in self.entries.values()
            if entry.state is EntryState.VALID
            and entry.last_retrieval_at is not None
            and entry.last_retrieval_at >= valid_since
        )

    async def create_event(self, event: Event) -> Event:
        async with self._lock:
            if event.id in self.events:
                raise RepositoryConflictError(f"event already exists: {event.id}")
            self.events[event.id] = event.model_copy(deep=True)
            return event.model_copy(deep=True)

    async def save_event(self, event: Event) -> Event:
        async with self._lock:
            current = self.events.get(event.id)
            if current is None:
                raise RepositoryNotFoundError(f"event not found: {event.id}")
            if current.finished_at is not None:
                raise RepositoryConflictError(f"event {event.id} is finished and immutable")
            self.events[event.id] = event.model_copy(deep=True)
            return event.model_copy(deep=True)

    async def get_event(self, event_id: UUID) -> Event | None:
        event = self.events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def list_unfinished_events(self) -> list[Event]:
        rows = [event for event in self.events.values() if event.finished_at is None]
        rows.sort(key=lambda event: event.created_at)
        return [event.model_copy(deep=True) for event in rows]

    async def list_events_by_type(self, event_type: EventType) -> list[Event]:
        rows = [event for event in self.events.values() if event.type is event_type]
        rows.sort(key=lambda event: event.created_at)
        return [event.model_copy(deep=True) for event in rows]

    async def list_entry_events(self, entry_id: UUID, *, limit: int = 10) -> list[Event]:
        rows = [event for event in self.events.values() if event.entry_id == entry_id]
        rows.sort(key=lambda event: event.created_at, reverse=True)
        return [event.model_copy(deep=True) for event in rows[:limit]]

    async def count_ping_attempts_since(self, remote_addr: str, since: datetime) -> int:
        pings = sum(
            1
            for event in self.events.values()
            if event.type is EventType.INCOMING_PING and event.remote_addr == remote_addr and event.created_at > since
        )
        rejections = sum(
            1 for addr, attempted_at in self.ping_rejections if addr == remote_addr and attempted_at > since
        )
        return pings + rejections

    async def record_ping_rejection(self, remote_addr: str, attempted_at: datetime) -> None:
        self.ping_rejections.append((remote_addr, attempted_at))
