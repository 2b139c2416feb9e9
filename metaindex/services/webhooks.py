"""Webhook fan-out for finished events.

Every delivery is its own ``webhook_trigger`` event: it is persisted unfinished
before the POST is queued, so a crash between dispatch and delivery leaves it
for the recovery scanner.
"""
from __future__ import annotations

import hmac
import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from hashlib import sha256
from typing import Any

import httpx
from opentelemetry import trace

from metaindex.core.telemetry import annotate_event
from metaindex.domain.models import (
    EntryState,
    Event,
    EventType,
    Exchange,
    IncomingPingPayload,
    RegistryEntry,
    WebhookTriggerPayload,
    utcnow,
)
from metaindex.jobs.pool import WorkerPool

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

WEBHOOK_EVENT_NEW_ENTRY = "entry_new"
WEBHOOK_EVENT_ADMIN_TRIGGER = "admin_trigger"
STATE_WEBHOOK_EVENTS = {
    EntryState.VALID: "entry_valid",
    EntryState.INVALID: "entry_invalid",
    EntryState.UNREACHABLE: "entry_unreachable",
    EntryState.UNKNOWN: "entry_unknown",
}
MAX_RECORDED_RESPONSE_CHARS = 2000


def webhook_event_for(event: Event, entry: RegistryEntry | None) -> str | None:
    if event.type is EventType.INCOMING_PING:
        payload = event.payload
        if isinstance(payload, IncomingPingPayload) and payload.new_entry:
            return WEBHOOK_EVENT_NEW_ENTRY
        return None
    if event.type is EventType.METADATA_RETRIEVAL:
        return STATE_WEBHOOK_EVENTS[entry.state] if entry else None
    if event.type is EventType.ADMIN_TRIGGER:
        return WEBHOOK_EVENT_ADMIN_TRIGGER
    return None


def build_summary(event: Event, entry: RegistryEntry | None, webhook_event: str, *, now: datetime) -> dict[str, Any]:
    return {
        "event_id": str(event.id),
        "event_type": event.type.value,
        "webhook_event": webhook_event,
        "client_url": entry.client_url if entry else None,
        "state": entry.state.value if entry else None,
        "timestamp": (event.finished_at or now).isoformat(),
    }


def signature(secret: str, body_bytes: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body_bytes, sha256).hexdigest()
    return f"sha256={digest}"


class WebhookDispatcher:
    def __init__(
        self,
        repository: Any,
        pool: WorkerPool,
        *,
        subscriber_urls: Iterable[str],
        secret: str | None = None,
        timeout_seconds: float = 5.0,
        event_filter: Iterable[str] = (),
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.pool = pool
        self.subscriber_urls = [url.strip() for url in subscriber_urls if url.strip()]
        self.secret = secret
        self.timeout_seconds = timeout_seconds
        self.event_filter = {name.strip() for name in event_filter if name.strip()}
        self.transport = transport
        self.clock = clock

    async def dispatch(self, event: Event, entry: RegistryEntry | None) -> list[Event]:
        """Queue one delivery per subscriber; failures are logged, never raised."""
        webhook_event = webhook_event_for(event, entry)
        if webhook_event is None or not self.subscriber_urls:
            return []
        if self.event_filter and webhook_event not in self.event_filter:
            return []

        now = self.clock()
        body = build_summary(event, entry, webhook_event, now=now)
        triggers: list[Event] = []
        for url in self.subscriber_urls:
            try:
                trigger = await self.repository.create_event(
                    Event(
                        type=EventType.WEBHOOK_TRIGGER,
                        created_at=now,
                        entry_id=entry.id if entry else None,
                        payload=WebhookTriggerPayload(
                            webhook_url=url,
                            webhook_event=webhook_event,
                            trigger_event_id=event.id,
                            body=body,
                            exchange=Exchange(request_url=url),
                        ),
                    )
                )
            except Exception:
                logger.exception("failed to record webhook trigger url=%s event_id=%s", url, event.id)
                continue
            triggers.append(trigger)
            self.pool.submit(trigger.id, _bind(self.process_webhook_trigger, trigger))
        logger.info("dispatched webhooks event_id=%s webhook_event=%s deliveries=%s", event.id, webhook_event, len(triggers))
        return triggers

    async def process_webhook_trigger(self, event: Event) -> None:
        with tracer.start_as_current_span("index.webhook_delivery") as span:
            annotate_event(span, event)
            try:
                await self._deliver_and_finish(event)
            except Exception:
                logger.exception("webhook trigger failed id=%s", event.id)

    async def _deliver_and_finish(self, event: Event) -> None:
        payload = event.payload
        if not isinstance(payload, WebhookTriggerPayload):
            logger.warning("event id=%s is not a webhook trigger; skipping", event.id)
            return
        stored = await self.repository.get_event(event.id)
        if stored is None or stored.finished:
            logger.info("webhook trigger already finished id=%s", event.id)
            return

        body_bytes = json.dumps(payload.body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": payload.webhook_event,
            "X-Webhook-Delivery-Id": str(event.id),
        }
        if self.secret:
            headers["X-Webhook-Signature"] = signature(self.secret, body_bytes)

        exchange = payload.exchange
        exchange.request_url = payload.webhook_url
        exchange.request_body = body_bytes.decode("utf-8")

        client_kwargs: dict[str, Any] = {"timeout": self.timeout_seconds}
        if self.transport is not None:
            client_kwargs["transport"] = self.transport
        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                response = await client.post(payload.webhook_url, content=body_bytes, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            exchange.failed(f"{type(exc).__name__}: {exc}")
            logger.warning("webhook delivery failed url=%s id=%s error=%s", payload.webhook_url, event.id, exc)
        else:
            text = response.text[:MAX_RECORDED_RESPONSE_CHARS]
            if response.is_success:
                exchange.retrieved(response.status_code, text)
                logger.info("webhook delivered url=%s id=%s status=%s", payload.webhook_url, event.id, response.status_code)
            else:
                exchange.failed(f"HTTP {response.status_code}", code=response.status_code, body=text)
                logger.warning(
                    "webhook delivery rejected url=%s id=%s status=%s",
                    payload.webhook_url,
                    event.id,
                    response.status_code,
                )

        event.finish(self.clock())
        await self.repository.save_event(event)


def _bind(handler: Callable[[Event], Any], event: Event) -> Callable[[], Any]:
    async def job() -> None:
        await handler(event)

    return job
