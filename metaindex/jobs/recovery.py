from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from opentelemetry import trace

from metaindex.jobs.executor import execute_event

if TYPE_CHECKING:
    from metaindex.services.events import EventProcessor

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class RecoverySummary:
    processed: int = 0
    failed: int = 0
    unsupported: int = 0
    skipped: int = 0


class RecoveryScanner:
    """Resume events left unfinished by a crash, one at a time and oldest first.

    An event counts as failed when its handler raises or when it is still
    unfinished afterwards. Ids already queued or running in the worker pool are
    skipped, and each event is re-read before it runs so one finished after the
    listing is skipped too. A delivery is never executed twice.
    """

    def __init__(self, processor: EventProcessor) -> None:
        self.processor = processor

    async def run(self) -> RecoverySummary:
        summary = RecoverySummary()
        with tracer.start_as_current_span("index.recovery") as span:
            events = await self.processor.repository.list_unfinished_events()
            logger.info("recovery scan started unfinished=%s", len(events))

            for event in events:
                if self.processor.is_in_flight(event.id):
                    summary.skipped += 1
                    continue

                try:
                    # a live worker may have finished it after the listing
                    current = await self.processor.repository.get_event(event.id)
                    if current is None or current.finished:
                        summary.skipped += 1
                        continue
                    supported = await execute_event(self.processor, current)
                    refreshed = await self.processor.repository.get_event(event.id) if supported else None
                except Exception:
                    logger.exception("recovery failed for event id=%s type=%s", event.id, event.type.value)
                    summary.failed += 1
                    continue

                if not supported:
                    summary.unsupported += 1
                    continue

                if refreshed is not None and refreshed.finished:
                    summary.processed += 1
                else:
                    summary.failed += 1

            span.set_attribute("recovery.processed", summary.processed)
            span.set_attribute("recovery.failed", summary.failed)
            span.set_attribute("recovery.skipped", summary.skipped)
            logger.info(
                "recovery scan finished processed=%s failed=%s unsupported=%s skipped=%s",
                summary.processed,
                summary.failed,
                summary.unsupported,
                summary.skipped,
            )
        return summary
