from __future__ import annotations

import json
import logging
from datetime import datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import asyncpg  # type: ignore[import-untyped]

from metaindex.core.config import get_settings
from metaindex.domain.models import (
    EntryPermit,
    EntryState,
    Event,
    EventType,
    RegistryEntry,
)

if TYPE_CHECKING:
    from metaindex.services.store import InMemoryRepository

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


SCHEMA_SQL = """
create table if not exists index_entries (
  id uuid primary key,
  client_url text not null unique,
  state text not null default 'unknown',
  permit text not null default 'pending',
  created_at timestamptz not null,
  updated_at timestamptz not null,
  last_retrieval_at timestamptz,
  current_metadata jsonb
);

create table if not exists index_events (
  id uuid primary key,
  type text not null,
  entry_id uuid references index_entries(id) on delete set null,
  remote_addr text,
  payload jsonb not null default '{}'::jsonb,
  created_at timestamptz not null,
  finished_at timestamptz
);

create index if not exists index_events_unfinished_idx
  on index_events (created_at) where finished_at is null;
create index if not exists index_events_ping_window_idx
  on index_events (remote_addr, created_at) where type = 'incoming_ping';
create index if not exists index_events_entry_idx
  on index_events (entry_id, created_at desc);

create table if not exists index_ping_rejections (
  id bigserial primary key,
  remote_addr text not null,
  attempted_at timestamptz not null
);

create index if not exists index_ping_rejections_window_idx
  on index_ping_rejections (remote_addr, attempted_at);
"""

ENTRY_COLUMNS = """
  id,
  client_url,
  state,
  permit,
  created_at,
  updated_at,
  last_retrieval_at,
  current_metadata
"""

EVENT_COLUMNS = """
  id,
  type,
  entry_id,
  remote_addr,
  payload,
  created_at,
  finished_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_entry(self, entry_id: UUID) -> RegistryEntry | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {ENTRY_COLUMNS} from index_entries where id = $1", entry_id)
        return self._entry_row_to_model(row) if row else None

    async def get_entry_by_client_url(self, client_url: str) -> RegistryEntry | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {ENTRY_COLUMNS} from index_entries where client_url = $1", client_url)
        return self._entry_row_to_model(row) if row else None

    async def upsert_entry(
        self,
        *,
        client_url: str,
        permit: EntryPermit,
        now: datetime,
    ) -> tuple[RegistryEntry, bool]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into index_entries (id, client_url, state, permit, created_at, updated_at)
            values ($1, $2, $3, $4, $5, $5)
            on conflict (client_url) do update
              set updated_at = excluded.updated_at
            returning {ENTRY_COLUMNS}, (xmax = 0) as inserted
            """,
            uuid4(),
            client_url,
            EntryState.UNKNOWN.value,
            permit.value,
            now,
        )
        return self._entry_row_to_model(row), bool(row["inserted"])

    async def save_entry(self, entry: RegistryEntry) -> RegistryEntry:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update index_entries
            set
              state = $2,
              permit = $3,
              updated_at = $4,
              last_retrieval_at = $5,
              current_metadata = $6::jsonb
            where id = $1
            returning {ENTRY_COLUMNS}
            """,
            entry.id,
            entry.state.value,
            entry.permit.value,
            entry.updated_at,
            entry.last_retrieval_at,
            self._dump_json(entry.current_metadata),
        )
        if not row:
            raise RepositoryNotFoundError(f"entry not found: {entry.id}")
        return self._entry_row_to_model(row)

    async def list_entries(
        self,
        *,
        state: EntryState | None = None,
        permit: EntryPermit | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RegistryEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {ENTRY_COLUMNS}
            from index_entries
            where ($1::text is null or state = $1)
              and ($2::text is null or permit = $2)
            order by updated_at desc, id
            limit $3 offset $4
            """,
            state.value if state else None,
            permit.value if permit else None,
            limit,
            offset,
        )
        return [self._entry_row_to_model(row) for row in rows]

    async def list_entries_by_permit(self, permits: set[EntryPermit]) -> list[RegistryEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {ENTRY_COLUMNS} from index_entries where permit = any($1::text[]) order by created_at",
            [permit.value for permit in permits],
        )
        return [self._entry_row_to_model(row) for row in rows]

    async def count_entries_by_state(self) -> dict[EntryState, int]:
        pool = await self._get_pool()
        rows = await pool.fetch("select state, count(*) as total from index_entries group by state")
        counts = {state: 0 for state in EntryState}
        for row in rows:
            counts[EntryState(row["state"])] = int(row["total"])
        return counts

    async def count_active_entries(self, *, valid_since: datetime) -> int:
        pool = await self._get_pool()
        total = await pool.fetchval(
            """
            select count(*)
            from index_entries
            where state = $1
              and last_retrieval_at >= $2
            """,
            EntryState.VALID.value,
            valid_since,
        )
        return int(total or 0)

    async def create_event(self, event: Event) -> Event:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into index_events (id, type, entry_id, remote_addr, payload, created_at, finished_at)
            values ($1, $2, $3, $4, $5::jsonb, $6, $7)
            returning {EVENT_COLUMNS}
            """,
            event.id,
            event.type.value,
            event.entry_id,
            event.remote_addr,
            self._dump_json(event.payload.model_dump(mode="json")),
            event.created_at,
            event.finished_at,
        )
        return self._event_row_to_model(row)

    async def save_event(self, event: Event) -> Event:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "select finished_at from index_events where id = $1 for update",
                    event.id,
                )
                if current is None:
                    raise RepositoryNotFoundError(f"event not found: {event.id}")
                if current["finished_at"] is not None:
                    raise RepositoryConflictError(f"event {event.id} is finished and immutable")

                row = await conn.fetchrow(
                    f"""
                    update index_events
                    set
                      entry_id = $2,
                      remote_addr = $3,
                      payload = $4::jsonb,
                      finished_at = $5
                    where id = $1
                    returning {EVENT_COLUMNS}
                    """,
                    event.id,
                    event.entry_id,
                    event.remote_addr,
                    self._dump_json(event.payload.model_dump(mode="json")),
                    event.finished_at,
                )
        return self._event_row_to_model(row)

    async def get_event(self, event_id: UUID) -> Event | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {EVENT_COLUMNS} from index_events where id = $1", event_id)
        return self._event_row_to_model(row) if row else None

    async def list_unfinished_events(self) -> list[Event]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {EVENT_COLUMNS} from index_events where finished_at is null order by created_at, id"
        )
        return [self._event_row_to_model(row) for row in rows]

    async def list_events_by_type(self, event_type: EventType) -> list[Event]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {EVENT_COLUMNS} from index_events where type = $1 order by created_at, id",
            event_type.value,
        )
        return [self._event_row_to_model(row) for row in rows]

    async def list_entry_events(self, entry_id: UUID, *, limit: int = 10) -> list[Event]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {EVENT_COLUMNS}
            from index_events
            where entry_id = $1
            order by created_at desc, id
            limit $2
            """,
            entry_id,
            limit,
        )
        return [self._event_row_to_model(row) for row in rows]

    async def count_ping_attempts_since(self, remote_addr: str, since: datetime) -> int:
        pool = await self._get_pool()
        total = await pool.fetchval(
            """
            select
              (select count(*)
                 from index_events
                where type = $1
                  and remote_addr = $2
                  and created_at > $3)
              +
              (select count(*)
                 from index_ping_rejections
                where remote_addr = $2
                  and attempted_at > $3)
            """,
            EventType.INCOMING_PING.value,
            remote_addr,
            since,
        )
        return int(total or 0)

    async def record_ping_rejection(self, remote_addr: str, attempted_at: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "insert into index_ping_rejections (remote_addr, attempted_at) values ($1, $2)",
            remote_addr,
            attempted_at,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("MI_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        self._pool = pool
        return self._pool

    @staticmethod
    def _dump_json(value: Any) -> str | None:
        if value is None:
            return None
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)

    @staticmethod
    def _load_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                logger.warning("discarding undecodable jsonb value")
                return None
        return value

    def _entry_row_to_model(self, row: asyncpg.Record) -> RegistryEntry:
        return RegistryEntry(
            id=row["id"],
            client_url=row["client_url"],
            state=EntryState(row["state"]),
            permit=EntryPermit(row["permit"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_retrieval_at=row["last_retrieval_at"],
            current_metadata=self._load_json(row["current_metadata"]),
        )

    def _event_row_to_model(self, row: asyncpg.Record) -> Event:
        payload = self._load_json(row["payload"]) or {}
        payload.setdefault("kind", row["type"])
        return Event(
            id=row["id"],
            type=EventType(row["type"]),
            entry_id=row["entry_id"],
            remote_addr=row["remote_addr"],
            payload=payload,
            created_at=row["created_at"],
            finished_at=row["finished_at"],
        )


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    from metaindex.services.store import InMemoryRepository

    settings = get_settings()
    if not settings.database_url:
        logger.warning("MI_DATABASE_URL not set; using in-memory repository (events will not survive restarts)")
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
