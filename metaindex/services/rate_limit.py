from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from metaindex.domain.models import utcnow

logger = logging.getLogger(__name__)


def format_duration(duration: timedelta) -> str:
    """Render a timedelta as an ISO-8601 duration, e.g. ``PT6H`` or ``P7DT30M``."""
    total_seconds = int(duration.total_seconds())
    if total_seconds <= 0:
        return "PT0S"

    days, remainder = divmod(total_seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)

    rendered = "P"
    if days:
        rendered += f"{days}D"
    if hours or minutes or seconds:
        rendered += "T"
        if hours:
            rendered += f"{hours}H"
        if minutes:
            rendered += f"{minutes}M"
        if seconds:
            rendered += f"{seconds}S"
    return rendered


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    allowed: bool
    previous_attempts: int
    message: str | None = None


class PingRateLimiter:
    """Sliding-window limit on pings per remote address, evaluated against the event log."""

    def __init__(
        self,
        repository: Any,
        *,
        hits: int,
        window: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.hits = max(0, hits)
        self.window = window
        self.clock = clock

    async def check(self, remote_addr: str) -> RateLimitDecision:
        now = self.clock()
        previous = await self.repository.count_ping_attempts_since(remote_addr, now - self.window)
        # The current attempt is not part of the count: with hits=N the (N+2)-th ping is rejected.
        if previous > self.hits:
            await self.repository.record_ping_rejection(remote_addr, now)
            logger.warning("rate limit for ping reached remote_addr=%s previous=%s", remote_addr, previous)
            return RateLimitDecision(
                allowed=False,
                previous_attempts=previous,
                message=(
                    f"Rate limit reached for {remote_addr} "
                    f"(max. {self.hits} per {format_duration(self.window)}) - PING ignored"
                ),
            )
        return RateLimitDecision(allowed=True, previous_attempts=previous)
