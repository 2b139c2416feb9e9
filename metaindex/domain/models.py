"""Registry entries, events and exchanges shared by the processor and the repositories."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from metaindex.core.results import FailureKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntryState(str, Enum):
    UNKNOWN = "unknown"
    VALID = "valid"
    INVALID = "invalid"
    UNREACHABLE = "unreachable"


class EntryPermit(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class EventType(str, Enum):
    INCOMING_PING = "incoming_ping"
    METADATA_RETRIEVAL = "metadata_retrieval"
    WEBHOOK_TRIGGER = "webhook_trigger"
    ADMIN_TRIGGER = "admin_trigger"


class ExchangeState(str, Enum):
    PENDING = "pending"
    RETRIEVED = "retrieved"
    FAILED = "failed"


class RegistryEntry(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    client_url: str
    state: EntryState = EntryState.UNKNOWN
    permit: EntryPermit = EntryPermit.PENDING
    created_at: datetime
    updated_at: datetime
    last_retrieval_at: datetime | None = None
    current_metadata: dict[str, Any] | None = None

    def is_active(self, *, now: datetime, valid_duration: timedelta) -> bool:
        if self.state is not EntryState.VALID or self.last_retrieval_at is None:
            return False
        return self.last_retrieval_at >= now - valid_duration


class Exchange(BaseModel):
    remote_addr: str | None = None
    request_url: str | None = None
    request_body: str | None = None
    response_code: int | None = None
    response_body: str | None = None
    state: ExchangeState = ExchangeState.PENDING
    error: str | None = None

    def retrieved(self, code: int, body: str | None = None) -> None:
        self.state = ExchangeState.RETRIEVED
        self.response_code = code
        self.response_body = body
        self.error = None

    def failed(self, error: str, *, code: int | None = None, body: str | None = None) -> None:
        self.state = ExchangeState.FAILED
        self.response_code = code
        self.response_body = body
        self.error = error


class IncomingPingPayload(BaseModel):
    kind: Literal["incoming_ping"] = "incoming_ping"
    client_url: str | None = None
    new_entry: bool = False
    exchange: Exchange = Field(default_factory=Exchange)


class MetadataRetrievalPayload(BaseModel):
    kind: Literal["metadata_retrieval"] = "metadata_retrieval"
    client_url: str
    triggered_by: UUID | None = None
    exchange: Exchange = Field(default_factory=Exchange)
    metadata: dict[str, Any] | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None


class WebhookTriggerPayload(BaseModel):
    kind: Literal["webhook_trigger"] = "webhook_trigger"
    webhook_url: str
    webhook_event: str
    trigger_event_id: UUID
    body: dict[str, Any] = Field(default_factory=dict)
    exchange: Exchange = Field(default_factory=Exchange)


class AdminTriggerPayload(BaseModel):
    kind: Literal["admin_trigger"] = "admin_trigger"
    client_url: str | None = None
    actor: str | None = None


EventPayload = Annotated[
    Union[IncomingPingPayload, MetadataRetrievalPayload, WebhookTriggerPayload, AdminTriggerPayload],
    Field(discriminator="kind"),
]


class Event(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    type: EventType
    created_at: datetime
    finished_at: datetime | None = None
    entry_id: UUID | None = None
    remote_addr: str | None = None
    payload: EventPayload

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    def finish(self, now: datetime) -> None:
        if self.finished_at is not None:
            raise ValueError(f"event {self.id} is already finished")
        self.finished_at = now
