from __future__ import annotations

import asyncio
from datetime import timedelta

from metaindex.domain.models import Event, EventType, IncomingPingPayload
from metaindex.services.rate_limit import PingRateLimiter, format_duration
from metaindex.services.store import InMemoryRepository


def _record_pings(repository: InMemoryRepository, clock, remote_addr: str, count: int) -> None:
    async def run() -> None:
        for _ in range(count):
            await repository.create_event(
                Event(
                    type=EventType.INCOMING_PING,
                    created_at=clock(),
                    remote_addr=remote_addr,
                    payload=IncomingPingPayload(client_url="https://node.example.org"),
                )
            )

    asyncio.run(run())


def test_format_duration_renders_iso_8601() -> None:
    assert format_duration(timedelta(hours=6)) == "PT6H"
    assert format_duration(timedelta(days=7)) == "P7D"
    assert format_duration(timedelta(days=1, minutes=30)) == "P1DT30M"
    assert format_duration(timedelta(seconds=0)) == "PT0S"


def test_threshold_compares_prior_attempts_strictly(repository, clock) -> None:
    limiter = PingRateLimiter(repository, hits=2, window=timedelta(hours=1), clock=clock)

    _record_pings(repository, clock, "10.0.0.1", 2)
    decision = asyncio.run(limiter.check("10.0.0.1"))
    assert decision.allowed is True
    assert decision.previous_attempts == 2

    _record_pings(repository, clock, "10.0.0.1", 1)
    decision = asyncio.run(limiter.check("10.0.0.1"))
    assert decision.allowed is False
    assert decision.previous_attempts == 3
    assert decision.message == "Rate limit reached for 10.0.0.1 (max. 2 per PT1H) - PING ignored"
    assert repository.ping_rejections == [("10.0.0.1", clock())]


def test_rejections_keep_counting_inside_the_window(repository, clock) -> None:
    limiter = PingRateLimiter(repository, hits=1, window=timedelta(hours=1), clock=clock)
    _record_pings(repository, clock, "10.0.0.1", 1)

    assert asyncio.run(limiter.check("10.0.0.1")).allowed is True

    repository.ping_rejections.append(("10.0.0.1", clock()))
    rejected = asyncio.run(limiter.check("10.0.0.1"))
    assert rejected.allowed is False
    assert rejected.previous_attempts == 2

    # the rejected check above is itself recorded
    assert asyncio.run(limiter.check("10.0.0.1")).previous_attempts == 3


def test_attempts_outside_the_window_and_other_addresses_are_ignored(repository, clock) -> None:
    limiter = PingRateLimiter(repository, hits=1, window=timedelta(hours=1), clock=clock)
    _record_pings(repository, clock, "10.0.0.1", 5)
    _record_pings(repository, clock, "10.0.0.2", 1)

    assert asyncio.run(limiter.check("10.0.0.2")).allowed is True

    clock.advance(hours=1, seconds=1)
    decision = asyncio.run(limiter.check("10.0.0.1"))
    assert decision.allowed is True
    assert decision.previous_attempts == 0
