"""Event pipeline: ping ingestion, metadata retrieval and admin triggers.

Every step writes to the event log before doing work, so a crash anywhere in
the pipeline leaves an unfinished event behind for the recovery scanner.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from functools import lru_cache
from typing import Any
from uuid import UUID

from opentelemetry import trace

from metaindex.core.config import Settings, get_settings
from metaindex.core.results import Failure, FailureKind, Success
from metaindex.core.telemetry import annotate_event
from metaindex.core.urls import InvalidClientURLError, normalize_client_url
from metaindex.domain.models import (
    AdminTriggerPayload,
    EntryPermit,
    Event,
    EventType,
    Exchange,
    IncomingPingPayload,
    MetadataRetrievalPayload,
    RegistryEntry,
    utcnow,
)
from metaindex.jobs.pool import WorkerPool
from metaindex.services.harvester import MetadataHarvester
from metaindex.services.rate_limit import PingRateLimiter
from metaindex.services.repository import get_repository
from metaindex.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RETRIEVAL_SKIPPED_ERROR = "Rate limit reached (skipping)"
ENTRY_MISSING_ERROR = "Registry entry no longer exists"


class EventProcessor:
    def __init__(
        self,
        repository: Any,
        settings: Settings,
        *,
        pool: WorkerPool | None = None,
        harvester: MetadataHarvester | None = None,
        dispatcher: WebhookDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.clock = clock
        self.pool = pool or WorkerPool(
            concurrency=settings.worker_concurrency,
            max_queue_size=settings.worker_queue_size,
        )
        self.harvester = harvester or MetadataHarvester(
            timeout_seconds=settings.retrieval_timeout.total_seconds(),
            max_body_bytes=settings.retrieval_max_body_bytes,
            max_redirects=settings.retrieval_max_redirects,
        )
        self.dispatcher = dispatcher or WebhookDispatcher(
            repository,
            self.pool,
            subscriber_urls=settings.webhook_urls,
            secret=settings.webhook_secret,
            timeout_seconds=settings.webhook_timeout.total_seconds(),
            event_filter=settings.webhook_events,
            clock=clock,
        )
        self.rate_limiter = PingRateLimiter(
            repository,
            hits=settings.ping_rate_limit_hits,
            window=settings.ping_rate_limit_duration,
            clock=clock,
        )

    def is_harvest_eligible(self, entry: RegistryEntry) -> bool:
        if entry.permit is EntryPermit.ACCEPTED:
            return True
        return entry.permit is EntryPermit.PENDING and self.settings.auto_permit

    def is_in_flight(self, event_id: UUID) -> bool:
        return self.pool.is_pending(event_id)

    async def close(self) -> None:
        await self.pool.close()

    async def accept_ping(self, client_url: str | None, remote_addr: str) -> Success[Event] | Failure:
        with tracer.start_as_current_span("index.accept_ping") as span:
            span.set_attribute("ping.remote_addr", remote_addr)

            decision = await self.rate_limiter.check(remote_addr)
            if not decision.allowed:
                span.set_attribute("ping.rate_limited", True)
                return Failure(
                    kind=FailureKind.RATE_LIMITED,
                    message=decision.message or "rate limit reached",
                    retry_after_seconds=int(self.rate_limiter.window.total_seconds()),
                )

            now = self.clock()
            event = await self.repository.create_event(
                Event(
                    type=EventType.INCOMING_PING,
                    created_at=now,
                    remote_addr=remote_addr,
                    payload=IncomingPingPayload(
                        client_url=client_url,
                        exchange=Exchange(
                            remote_addr=remote_addr,
                            request_body=json.dumps({"clientUrl": client_url}),
                        ),
                    ),
                )
            )
            payload = event.payload
            assert isinstance(payload, IncomingPingPayload)

            try:
                normalized = normalize_client_url(client_url, deny_list=self.settings.ping_deny_list)
            except InvalidClientURLError as exc:
                message = str(exc)
                payload.exchange.failed(message, code=400, body=json.dumps({"detail": message}))
                event.finish(self.clock())
                await self.repository.save_event(event)
                logger.info("rejected ping remote_addr=%s reason=%s", remote_addr, message)
                return Failure(kind=FailureKind.VALIDATION, message=message)

            permit = EntryPermit.ACCEPTED if self.settings.auto_permit else EntryPermit.PENDING
            entry, inserted = await self.repository.upsert_entry(client_url=normalized, permit=permit, now=now)
            event.entry_id = entry.id
            payload.client_url = normalized
            payload.new_entry = inserted
            payload.exchange.retrieved(204)
            event.finish(self.clock())
            event = await self.repository.save_event(event)
            span.set_attribute("ping.new_entry", inserted)
            logger.info(
                "accepted ping client_url=%s remote_addr=%s new_entry=%s permit=%s",
                normalized,
                remote_addr,
                inserted,
                entry.permit.value,
            )

            await self._follow_up_ping(event, entry, inserted)
            return Success(event)

    async def _follow_up_ping(self, event: Event, entry: RegistryEntry, inserted: bool) -> None:
        # The ping is already finished here; follow-up failures are only logged.
        try:
            if self.is_harvest_eligible(entry):
                await self.schedule_metadata_retrieval(entry, triggered_by=event.id)
            else:
                logger.info("entry not eligible for harvest client_url=%s permit=%s", entry.client_url, entry.permit.value)
            if inserted:
                await self.dispatcher.dispatch(event, entry)
        except Exception:
            logger.exception("follow-up work failed for ping event id=%s", event.id)

    async def schedule_metadata_retrieval(self, entry: RegistryEntry, *, triggered_by: UUID | None) -> Event:
        event = await self.repository.create_event(
            Event(
                type=EventType.METADATA_RETRIEVAL,
                created_at=self.clock(),
                entry_id=entry.id,
                payload=MetadataRetrievalPayload(
                    client_url=entry.client_url,
                    triggered_by=triggered_by,
                    exchange=Exchange(request_url=entry.client_url),
                ),
            )
        )
        if not self.pool.submit(event.id, self._retrieval_job(event)):
            logger.warning("metadata retrieval deferred to recovery id=%s client_url=%s", event.id, entry.client_url)
        return event

    def _retrieval_job(self, event: Event) -> Callable[[], Any]:
        async def job() -> None:
            await self.process_metadata_retrieval(event)

        return job

    async def process_metadata_retrieval(self, event: Event) -> None:
        with tracer.start_as_current_span("index.metadata_retrieval") as span:
            annotate_event(span, event)
            try:
                await self._retrieve(event)
            except Exception:
                logger.exception("metadata retrieval failed id=%s", event.id)

    async def _retrieve(self, event: Event) -> None:
        payload = event.payload
        if not isinstance(payload, MetadataRetrievalPayload):
            logger.warning("event id=%s is not a metadata retrieval; skipping", event.id)
            return
        if await self._finished_elsewhere(event):
            return

        entry = await self._load_entry(event, payload)
        if entry is None:
            payload.error = ENTRY_MISSING_ERROR
            event.finish(self.clock())
            await self.repository.save_event(event)
            logger.warning("metadata retrieval for missing entry id=%s client_url=%s", event.id, payload.client_url)
            return

        now = self.clock()
        last = entry.last_retrieval_at
        if last is not None and now - last < self.settings.retrieval_rate_limit_wait:
            payload.error = RETRIEVAL_SKIPPED_ERROR
            logger.info("metadata retrieval skipped client_url=%s last_retrieval_at=%s", entry.client_url, last.isoformat())
        else:
            result = await self.harvester.harvest(entry.client_url)
            payload.exchange = result.exchange
            payload.metadata = result.metadata
            payload.error = result.error
            payload.failure_kind = result.failure.kind if result.failure else None
            entry.state = result.state
            if result.metadata is not None:
                entry.current_metadata = result.metadata
            logger.info(
                "metadata retrieved client_url=%s state=%s error=%s",
                entry.client_url,
                entry.state.value,
                result.error,
            )

        # a concurrent run of the same event may have finished it during the fetch
        if await self._finished_elsewhere(event):
            return

        entry.last_retrieval_at = now
        entry.updated_at = now
        entry = await self.repository.save_entry(entry)
        event.entry_id = entry.id
        event.finish(self.clock())
        event = await self.repository.save_event(event)
        await self.dispatcher.dispatch(event, entry)

    async def _finished_elsewhere(self, event: Event) -> bool:
        stored = await self.repository.get_event(event.id)
        if stored is not None and not stored.finished:
            return False
        logger.info("metadata retrieval already finished id=%s", event.id)
        return True

    async def _load_entry(self, event: Event, payload: MetadataRetrievalPayload) -> RegistryEntry | None:
        if event.entry_id is not None:
            entry = await self.repository.get_entry(event.entry_id)
            if entry is not None:
                return entry
        return await self.repository.get_entry_by_client_url(payload.client_url)

    async def accept_admin_trigger(
        self,
        client_url: str | None,
        *,
        remote_addr: str | None = None,
        actor: str | None = None,
    ) -> Success[Event] | Failure:
        entry: RegistryEntry | None = None
        normalized: str | None = None
        if client_url is not None and client_url.strip():
            try:
                normalized = normalize_client_url(client_url)
            except InvalidClientURLError as exc:
                return Failure(kind=FailureKind.VALIDATION, message=str(exc))
            entry = await self.repository.get_entry_by_client_url(normalized)
            if entry is None:
                return Failure(kind=FailureKind.NOT_FOUND, message=f"No registry entry for {normalized}")

        event = await self.repository.create_event(
            Event(
                type=EventType.ADMIN_TRIGGER,
                created_at=self.clock(),
                entry_id=entry.id if entry else None,
                remote_addr=remote_addr,
                payload=AdminTriggerPayload(client_url=normalized, actor=actor),
            )
        )
        event.finish(self.clock())
        event = await self.repository.save_event(event)
        logger.info("admin trigger accepted client_url=%s actor=%s", normalized or "*", actor)
        return Success(event)

    async def trigger_metadata_retrieval(self, trigger_event: Event) -> list[Event]:
        """Schedule retrievals for an admin trigger; a bound trigger ignores the entry's permit."""
        with tracer.start_as_current_span("index.admin_trigger") as span:
            entry: RegistryEntry | None = None
            if trigger_event.entry_id is not None:
                entry = await self.repository.get_entry(trigger_event.entry_id)
                entries = [entry] if entry else []
            else:
                candidates = await self.repository.list_entries_by_permit({EntryPermit.ACCEPTED, EntryPermit.PENDING})
                entries = [candidate for candidate in candidates if self.is_harvest_eligible(candidate)]

            scheduled = [
                await self.schedule_metadata_retrieval(candidate, triggered_by=trigger_event.id)
                for candidate in entries
            ]
            span.set_attribute("trigger.scheduled", len(scheduled))
            logger.info("admin trigger scheduled retrievals trigger_id=%s count=%s", trigger_event.id, len(scheduled))

            await self.dispatcher.dispatch(trigger_event, entry)
            return scheduled


@lru_cache
def get_event_processor() -> EventProcessor:
    return EventProcessor(get_repository(), get_settings())
