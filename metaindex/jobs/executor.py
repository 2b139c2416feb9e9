from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from metaindex.domain.models import Event, EventType

if TYPE_CHECKING:
    from metaindex.services.events import EventProcessor

logger = logging.getLogger(__name__)

RESUMABLE_EVENT_TYPES = frozenset({EventType.METADATA_RETRIEVAL, EventType.WEBHOOK_TRIGGER})


async def execute_event(processor: EventProcessor, event: Event) -> bool:
    """Run the handler for ``event``; returns False when its type cannot be resumed."""
    if event.type not in RESUMABLE_EVENT_TYPES:
        logger.warning("cannot resume event of type=%s id=%s", event.type.value, event.id)
        return False

    if event.type is EventType.METADATA_RETRIEVAL:
        await processor.process_metadata_retrieval(event)
    else:
        await processor.dispatcher.process_webhook_trigger(event)
    return True
