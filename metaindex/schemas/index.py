from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from metaindex.domain.models import EntryPermit, EntryState, EventType


class PingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_url: str | None = Field(default=None, alias="clientUrl")


class EntryOut(BaseModel):
    id: UUID
    client_url: str
    state: EntryState
    permit: EntryPermit
    active: bool
    created_at: datetime
    updated_at: datetime
    last_retrieval_at: datetime | None = None
    current_metadata: dict[str, Any] | None = None


class EventOut(BaseModel):
    id: UUID
    type: EventType
    created_at: datetime
    finished_at: datetime | None = None
    entry_id: UUID | None = None
    remote_addr: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class StatsOut(BaseModel):
    total: int
    active: int
    inactive: int
    by_state: dict[EntryState, int]
