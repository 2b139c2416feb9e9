from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

os.environ.setdefault("MI_OTEL_ENABLED", "false")
os.environ.setdefault("MI_RECOVER_ON_STARTUP", "false")

import httpx
import pytest

from metaindex.core.config import Settings
from metaindex.services.events import EventProcessor
from metaindex.services.harvester import MetadataHarvester
from metaindex.services.store import InMemoryRepository
from tests.fakes import FakeClock, RecordingPool, turtle_handler


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def make_processor(repository: InMemoryRepository, clock: FakeClock):
    def factory(
        *,
        handler: Callable[[httpx.Request], httpx.Response] | None = None,
        pool: Any | None = None,
        **overrides: Any,
    ) -> EventProcessor:
        settings = Settings(**overrides)
        harvester = MetadataHarvester(
            timeout_seconds=settings.retrieval_timeout.total_seconds(),
            transport=httpx.MockTransport(handler or turtle_handler()),
        )
        return EventProcessor(repository, settings, pool=pool or RecordingPool(), harvester=harvester, clock=clock)

    return factory
